from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import List, Dict, Optional, Any, Union
from datetime import datetime
import calendar

class SourceModel(BaseModel):
    """Source API records use camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

class SourcePage(SourceModel):
    page: int = 1
    totals_count: int = 0
    is_last_page: bool = True
    last_page_number: Optional[int] = None
    entries: List[Dict[str, Any]] = Field(default_factory=list)

class LocalizedName(SourceModel):
    lang: str
    name: str = ""

# Variations

class SourceText(SourceModel):
    lang: str
    name: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None
    keywords: Optional[str] = None

class SourceItem(SourceModel):
    id: int
    manufacturer_id: Optional[int] = None
    item_texts: List[SourceText] = Field(default_factory=list)

class SourceVariationSalesPrice(SourceModel):
    sales_price_id: int
    price: float = 0.0

class SourceVariationBarcode(SourceModel):
    barcode_id: int
    code: str

class SourceVariationStock(SourceModel):
    warehouse_id: Optional[int] = None
    net_stock: float = 0.0

class SourceVariationAttributeValue(SourceModel):
    attribute_id: int
    value_id: Optional[int] = None
    attribute_value_id: Optional[int] = None  # Older API responses

    @property
    def resolved_value_id(self) -> Optional[int]:
        return self.value_id if self.value_id is not None else self.attribute_value_id

class SourceVariationCategory(SourceModel):
    category_id: int
    position: int = 0

class SourceVariationProperty(SourceModel):
    property_id: int
    property_selection_id: Optional[int] = None

class SourceVariationUnit(SourceModel):
    unit_id: int
    content: float = 1.0

class SourceVariation(SourceModel):
    id: int
    item_id: int
    number: Optional[str] = None
    main_variation_id: Optional[int] = None
    is_main: bool = False
    is_active: bool = True
    updated_at: Optional[str] = None
    item: Optional[SourceItem] = None
    variation_sales_prices: List[SourceVariationSalesPrice] = Field(default_factory=list)
    variation_barcodes: List[SourceVariationBarcode] = Field(default_factory=list)
    stock: List[SourceVariationStock] = Field(default_factory=list)
    variation_attribute_values: List[SourceVariationAttributeValue] = Field(default_factory=list)
    variation_categories: List[SourceVariationCategory] = Field(default_factory=list)
    variation_properties: List[SourceVariationProperty] = Field(default_factory=list)
    variation_texts: List[SourceText] = Field(default_factory=list)
    unit: Optional[SourceVariationUnit] = None

class VariationQuery(BaseModel):
    """Typed request options for the variations endpoint"""
    with_sales_prices: bool = True
    with_barcodes: bool = True
    with_attribute_values: bool = True
    with_categories: bool = True
    with_properties: bool = True
    with_texts: bool = True
    with_item: bool = True
    with_unit: bool = True
    with_stock: bool = True
    updated_since: Optional[datetime] = None
    item_id: Optional[int] = None
    is_active: Optional[bool] = None
    lang: Optional[str] = None
    items_per_page: int = 100

    def relations(self) -> List[str]:
        flags = [
            (self.with_sales_prices, "variationSalesPrices"),
            (self.with_barcodes, "variationBarcodes"),
            (self.with_attribute_values, "variationAttributeValues"),
            (self.with_categories, "variationCategories"),
            (self.with_properties, "variationProperties"),
            (self.with_texts, "variationTexts"),
            (self.with_item, "item"),
            (self.with_unit, "unit"),
            (self.with_stock, "stock"),
        ]
        return [relation for enabled, relation in flags if enabled]

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"itemsPerPage": self.items_per_page}
        relations = self.relations()
        if relations:
            params["with"] = ",".join(relations)
        if self.updated_since is not None:
            # Unix timestamp avoids any encoding issues with ISO offsets
            params["updatedBetween"] = str(calendar.timegm(self.updated_since.utctimetuple()))
        if self.item_id is not None:
            params["itemId"] = self.item_id
        if self.is_active is not None:
            params["isActive"] = str(self.is_active).lower()
        if self.lang:
            params["lang"] = self.lang
        return params

# Config entities

class SourceCategoryDetail(SourceModel):
    lang: str
    name: str = ""
    description: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None

class SourceCategory(SourceModel):
    id: int
    parent_category_id: Optional[int] = None
    level: int = 0
    type: Optional[str] = None
    linklist: Union[bool, str, None] = None
    details: List[SourceCategoryDetail] = Field(default_factory=list)

    @property
    def is_visible(self) -> bool:
        return self.linklist is True or self.linklist == "Y"

    def names(self) -> Dict[str, str]:
        return {detail.lang: detail.name for detail in self.details if detail.name}

class SourceAttributeValueName(SourceModel):
    lang: str
    name: str = ""

class SourceAttributeValue(SourceModel):
    id: int
    attribute_id: int
    backend_name: str = ""
    position: int = 0
    image: Optional[str] = None
    value_names: List[SourceAttributeValueName] = Field(default_factory=list)

    def names(self) -> Dict[str, str]:
        return {name.lang: name.name for name in self.value_names if name.name}

class SourceAttribute(SourceModel):
    id: int
    backend_name: str = ""
    position: int = 0
    type_of_selection_in_online_store: Optional[str] = None
    attribute_names: List[LocalizedName] = Field(default_factory=list)
    values: List[SourceAttributeValue] = Field(default_factory=list)

    def names(self) -> Dict[str, str]:
        return {name.lang: name.name for name in self.attribute_names if name.name}

class SourceSalesPriceName(SourceModel):
    lang: str
    name_internal: str = ""
    name_external: str = ""

class SourceSalesPrice(SourceModel):
    id: int
    type: str = "default"
    position: int = 0
    names: List[SourceSalesPriceName] = Field(default_factory=list)

class SourceManufacturer(SourceModel):
    id: int
    name: str = ""
    external_name: Optional[str] = None
    logo: Optional[str] = None
    url: Optional[str] = None
    comment: Optional[str] = None

class SourceUnit(SourceModel):
    id: int
    unit_of_measurement: str = ""
    position: int = 0
    names: List[LocalizedName] = Field(default_factory=list)

class SourcePropertyName(SourceModel):
    lang: str
    name: str = ""
    description: Optional[str] = None

class SourcePropertyOptionValue(SourceModel):
    value: str

class SourcePropertyOption(SourceModel):
    type_option_identifier: str
    property_option_values: List[SourcePropertyOptionValue] = Field(default_factory=list)

class SourcePropertySelectionValue(SourceModel):
    lang: str
    value: str = ""

class SourcePropertySelectionRelation(SourceModel):
    relation_values: List[SourcePropertySelectionValue] = Field(default_factory=list)

class SourcePropertySelection(SourceModel):
    id: int
    position: int = 0
    relation: Optional[SourcePropertySelectionRelation] = None

    def names(self) -> Dict[str, str]:
        if not self.relation:
            return {}
        return {value.lang: value.value for value in self.relation.relation_values if value.value}

class SourceProperty(SourceModel):
    id: int
    cast: str = "empty"
    type_identifier: str = "item"
    position: int = 0
    property_group_id: Optional[int] = None
    names: List[SourcePropertyName] = Field(default_factory=list)
    options: List[SourcePropertyOption] = Field(default_factory=list)
    selections: List[SourcePropertySelection] = Field(default_factory=list)

    def localized_names(self) -> Dict[str, str]:
        return {name.lang: name.name for name in self.names if name.name}

    def option_values(self, identifier: str) -> List[str]:
        return [
            value.value
            for option in self.options
            if option.type_option_identifier == identifier
            for value in option.property_option_values
        ]

# Stock and images

class SourceStockEntry(SourceModel):
    variation_id: int
    item_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    stock_net: float = 0.0

class SourceImageName(SourceModel):
    lang: str
    name: str = ""
    alternate: str = ""

class SourceImageVariationLink(SourceModel):
    variation_id: int

class SourceItemImage(SourceModel):
    id: int
    item_id: int
    url: Optional[str] = None
    position: int = 0
    names: List[SourceImageName] = Field(default_factory=list)
    variation_links: List[SourceImageVariationLink] = Field(default_factory=list)

    def linked_variation_ids(self) -> List[int]:
        return [link.variation_id for link in self.variation_links]
