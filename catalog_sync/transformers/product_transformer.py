from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
import math
import structlog

from catalog_sync.models.sink import (
    SinkIdRef,
    SinkListPrice,
    SinkPrice,
    SinkProduct,
    SinkProductMedia,
    SinkVisibility,
)
from catalog_sync.models.source import SourceItemImage, SourceText, SourceVariation, SourceVariationSalesPrice
from catalog_sync.utils.helpers import pick_localized, unique
from catalog_sync.utils.identifiers import product_media_id

logger = structlog.get_logger()

LOCALE_MAP: Dict[str, str] = {
    "de": "de-DE",
    "en": "en-GB",
    "fr": "fr-FR",
    "it": "it-IT",
    "es": "es-ES",
    "nl": "nl-NL",
    "pl": "pl-PL",
    "cz": "cs-CZ",
    "pt": "pt-PT",
    "da": "da-DK",
    "sv": "sv-SE",
    "no": "nb-NO",
    "fi": "fi-FI",
    "ro": "ro-RO",
    "ru": "ru-RU",
    "tr": "tr-TR",
}

def to_locale(lang: str) -> str:
    """Storefront locale code for a source language code"""
    lang = (lang or "").lower()
    if lang in LOCALE_MAP:
        return LOCALE_MAP[lang]
    return f"{lang}-{lang.upper()}"

def net_from_gross(gross: float, tax_rate: float) -> float:
    return round(gross / (1 + tax_rate / 100), 2)

@dataclass
class TransformContext:
    """Everything the transformer needs besides the variation itself"""
    tenant_id: str
    languages: List[str]
    tax_id: Optional[str]
    tax_rate: float
    currency_id: str
    sales_channel_id: Optional[str] = None
    default_sales_price_id: Optional[int] = None
    rrp_sales_price_id: Optional[int] = None
    # sales price id -> price type ("default", "rrp", ...)
    sales_price_types: Dict[int, str] = field(default_factory=dict)
    # source id -> sink id lookups
    category_ids: Dict[str, str] = field(default_factory=dict)
    manufacturer_ids: Dict[str, str] = field(default_factory=dict)
    unit_ids: Dict[str, str] = field(default_factory=dict)
    attribute_value_ids: Dict[str, str] = field(default_factory=dict)
    property_selection_ids: Dict[str, str] = field(default_factory=dict)
    # image id -> uploaded sink media id
    media_ids: Dict[int, str] = field(default_factory=dict)
    # item id -> item images
    images: Dict[int, List[SourceItemImage]] = field(default_factory=dict)

class ProductTransformer:
    """Turns source variations into storefront parent and child products"""

    def __init__(self, context: TransformContext):
        self.context = context

    # Names and texts

    def _texts(self, variation: SourceVariation) -> List[SourceText]:
        texts = list(variation.variation_texts)
        if variation.item:
            known = {text.lang for text in texts}
            texts.extend(text for text in variation.item.item_texts if text.lang not in known)
        return texts

    def product_name(self, variation: SourceVariation) -> str:
        name = pick_localized(
            {text.lang: text.name for text in variation.variation_texts if text.name},
            self.context.languages,
        )
        if not name and variation.item:
            name = pick_localized(
                {text.lang: text.name for text in variation.item.item_texts if text.name},
                self.context.languages,
            )
        return name or f"Product {variation.id}"

    def product_description(self, variation: SourceVariation) -> Optional[str]:
        return pick_localized(
            {t.lang: t.description or t.short_description for t in self._texts(variation) if t.description or t.short_description},
            self.context.languages,
        )

    def build_translations(self, variation: SourceVariation) -> Dict[str, Dict[str, Any]]:
        translations: Dict[str, Dict[str, Any]] = {}
        for text in self._texts(variation):
            values = {
                "name": text.name,
                "description": text.description or text.short_description,
                "metaDescription": text.meta_description,
                "keywords": text.keywords or text.meta_keywords,
            }
            values = {key: value for key, value in values.items() if value}
            if values:
                translations[to_locale(text.lang)] = values
        return translations

    # Prices

    def select_prices(
        self, variation: SourceVariation
    ) -> Tuple[Optional[SourceVariationSalesPrice], Optional[SourceVariationSalesPrice]]:
        """(main price, RRP price) of a variation"""
        prices = variation.variation_sales_prices
        if not prices:
            return None, None

        by_id = {price.sales_price_id: price for price in prices}
        types = self.context.sales_price_types

        main = by_id.get(self.context.default_sales_price_id) if self.context.default_sales_price_id else None
        if main is None:
            main = next((p for p in prices if types.get(p.sales_price_id) == "default"), None)
        if main is None:
            main = prices[0]

        rrp = by_id.get(self.context.rrp_sales_price_id) if self.context.rrp_sales_price_id else None
        if rrp is None:
            rrp = next((p for p in prices if types.get(p.sales_price_id) == "rrp"), None)
        if rrp is main:
            rrp = None
        return main, rrp

    def build_price(self, variation: SourceVariation) -> List[SinkPrice]:
        main, rrp = self.select_prices(variation)
        if main is None:
            logger.debug("Variation has no sales prices", variation_id=variation.id)
        rate = self.context.tax_rate
        gross = float(main.price) if main else 0.0

        price = SinkPrice(
            currency_id=self.context.currency_id,
            gross=gross,
            net=net_from_gross(gross, rate),
            linked=True,
        )
        if rrp is not None and float(rrp.price) > gross:
            price.list_price = SinkListPrice(
                currency_id=self.context.currency_id,
                gross=float(rrp.price),
                net=net_from_gross(float(rrp.price), rate),
                linked=True,
            )
        return [price]

    # Relations

    def _refs(self, source_ids: Iterable[Any], lookup: Dict[str, str]) -> List[SinkIdRef]:
        sink_ids = unique(lookup[str(sid)] for sid in source_ids if sid is not None and str(sid) in lookup)
        return [SinkIdRef(id=sink_id) for sink_id in sink_ids]

    def option_refs(self, variation: SourceVariation) -> List[SinkIdRef]:
        """Variant-defining options from attribute values"""
        return self._refs(
            (value.resolved_value_id for value in variation.variation_attribute_values),
            self.context.attribute_value_ids,
        )

    def property_refs(self, variation: SourceVariation) -> List[SinkIdRef]:
        return self._refs(
            (prop.property_selection_id for prop in variation.variation_properties),
            self.context.property_selection_ids,
        )

    def category_refs(self, variation: SourceVariation) -> List[SinkIdRef]:
        return self._refs(
            (category.category_id for category in variation.variation_categories),
            self.context.category_ids,
        )

    def build_media(self, variation: SourceVariation, linked_only: bool) -> List[SinkProductMedia]:
        """Product media entries; children only get images linked to them"""
        media = []
        for image in self.context.images.get(variation.item_id, []):
            media_id = self.context.media_ids.get(image.id)
            if not media_id:
                continue
            if linked_only and variation.id not in image.linked_variation_ids():
                continue
            media.append(SinkProductMedia(
                id=product_media_id(variation.id, image.id),
                media_id=media_id,
                position=image.position,
            ))
        return sorted(media, key=lambda m: m.position)

    def _base_product(self, variation: SourceVariation, product_id: str) -> SinkProduct:
        ctx = self.context
        manufacturer_id = None
        if variation.item and variation.item.manufacturer_id:
            manufacturer_id = ctx.manufacturer_ids.get(str(variation.item.manufacturer_id))
        unit_id = ctx.unit_ids.get(str(variation.unit.unit_id)) if variation.unit else None
        stock = int(math.floor(sum(entry.net_stock for entry in variation.stock)))

        return SinkProduct(
            id=product_id,
            product_number=variation.number or f"PLY-{variation.id}",
            name=self.product_name(variation),
            description=self.product_description(variation),
            stock=stock,
            active=variation.is_active,
            price=self.build_price(variation),
            tax_id=ctx.tax_id,
            ean=variation.variation_barcodes[0].code if variation.variation_barcodes else None,
            manufacturer_id=manufacturer_id,
            unit_id=unit_id,
            categories=self.category_refs(variation) or None,
            visibilities=[SinkVisibility(sales_channel_id=ctx.sales_channel_id)] if ctx.sales_channel_id else None,
            translations=self.build_translations(variation) or None,
        )

    def transform_as_parent(self, variation: SourceVariation, product_id: str) -> SinkProduct:
        product = self._base_product(variation, product_id)
        # Attribute values are informational on the parent
        properties = unique(
            ref.id for ref in [*self.option_refs(variation), *self.property_refs(variation)]
        )
        product.properties = [SinkIdRef(id=sink_id) for sink_id in properties]
        product.media = self.build_media(variation, linked_only=False)
        return product

    def transform_as_child(self, variation: SourceVariation, product_id: str, parent_id: str) -> SinkProduct:
        product = self._base_product(variation, product_id)
        product.parent_id = parent_id
        product.options = self.option_refs(variation)
        product.properties = self.property_refs(variation)
        product.media = self.build_media(variation, linked_only=True)
        return product
