"""
Builders for the storefront config entities (categories, property groups and
options, manufacturers, units). Each returns a typed payload model.
"""

from typing import Dict, List, Optional

from catalog_sync.models.sink import (
    DisplayType,
    SinkCategory,
    SinkManufacturer,
    SinkPropertyGroup,
    SinkPropertyOption,
    SinkUnit,
)
from catalog_sync.models.source import (
    SourceAttribute,
    SourceAttributeValue,
    SourceCategory,
    SourceManufacturer,
    SourceProperty,
    SourcePropertySelection,
    SourceUnit,
)
from catalog_sync.transformers.product_transformer import to_locale
from catalog_sync.utils.helpers import pick_localized

# Source "type of selection in online store" -> storefront display type
DISPLAY_TYPES: Dict[str, DisplayType] = {
    "image": DisplayType.MEDIA,
    "dropdown": DisplayType.SELECT,
}

def display_type_for(selection_type: Optional[str]) -> DisplayType:
    return DISPLAY_TYPES.get((selection_type or "").lower(), DisplayType.TEXT)

def name_translations(names: Dict[str, str]) -> Optional[Dict[str, Dict[str, str]]]:
    translations = {to_locale(lang): {"name": name} for lang, name in names.items() if name}
    return translations or None

def category_name(category: SourceCategory, languages: List[str]) -> str:
    return pick_localized(category.names(), languages) or f"Category {category.id}"

def build_category(
    category: SourceCategory,
    sink_id: str,
    parent_id: Optional[str],
    languages: List[str],
    cms_page_id: Optional[str] = None,
) -> SinkCategory:
    return SinkCategory(
        id=sink_id,
        name=category_name(category, languages),
        parent_id=parent_id,
        active=True,
        visible=category.is_visible,
        cms_page_id=cms_page_id,
        translations=name_translations(category.names()),
    )

def build_property_group(attribute: SourceAttribute, sink_id: str, languages: List[str]) -> SinkPropertyGroup:
    return SinkPropertyGroup(
        id=sink_id,
        name=pick_localized(attribute.names(), languages) or attribute.backend_name or f"Attribute {attribute.id}",
        display_type=display_type_for(attribute.type_of_selection_in_online_store),
        sorting_type="alphanumeric",
        position=attribute.position,
        translations=name_translations(attribute.names()),
    )

def build_property_option(
    value: SourceAttributeValue,
    sink_id: str,
    group_id: str,
    languages: List[str],
    media_id: Optional[str] = None,
) -> SinkPropertyOption:
    return SinkPropertyOption(
        id=sink_id,
        group_id=group_id,
        name=pick_localized(value.names(), languages) or value.backend_name or f"Value {value.id}",
        position=value.position,
        media_id=media_id,
        translations=name_translations(value.names()),
    )

def build_selection_group(prop: SourceProperty, sink_id: str, languages: List[str]) -> SinkPropertyGroup:
    names = prop.localized_names()
    return SinkPropertyGroup(
        id=sink_id,
        name=pick_localized(names, languages) or f"Property {prop.id}",
        display_type=DisplayType.TEXT,
        sorting_type="alphanumeric",
        position=prop.position,
        translations=name_translations(names),
    )

def build_selection_option(
    selection: SourcePropertySelection,
    sink_id: str,
    group_id: str,
    languages: List[str],
) -> SinkPropertyOption:
    names = selection.names()
    return SinkPropertyOption(
        id=sink_id,
        group_id=group_id,
        name=pick_localized(names, languages) or f"Selection {selection.id}",
        position=selection.position,
        translations=name_translations(names),
    )

def build_manufacturer(manufacturer: SourceManufacturer, sink_id: str, media_id: Optional[str] = None) -> SinkManufacturer:
    return SinkManufacturer(
        id=sink_id,
        name=manufacturer.external_name or manufacturer.name or f"Manufacturer {manufacturer.id}",
        link=manufacturer.url or None,
        description=manufacturer.comment or None,
        media_id=media_id,
    )

def build_unit(unit: SourceUnit, sink_id: str, languages: List[str]) -> SinkUnit:
    names = {n.lang: n.name for n in unit.names if n.name}
    return SinkUnit(
        id=sink_id,
        short_code=unit.unit_of_measurement,
        name=pick_localized(names, languages) or unit.unit_of_measurement or f"Unit {unit.id}",
        translations=name_translations(names),
    )
