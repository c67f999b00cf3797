from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import List, Dict, Optional, Any
from enum import Enum

class SinkEntity(str, Enum):
    PRODUCT = "product"
    CATEGORY = "category"
    PROPERTY_GROUP = "property_group"
    PROPERTY_GROUP_OPTION = "property_group_option"
    MANUFACTURER = "product_manufacturer"
    UNIT = "unit"
    PRODUCT_MEDIA = "product_media"
    MEDIA = "media"
    MEDIA_FOLDER = "media_folder"
    TAX = "tax"
    CURRENCY = "currency"

    @property
    def api_path(self) -> str:
        return self.value.replace("_", "-")

class DisplayType(str, Enum):
    TEXT = "text"
    SELECT = "select"
    MEDIA = "media"
    COLOR = "color"

class SinkModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

class SinkIdRef(SinkModel):
    id: str

class SinkListPrice(SinkModel):
    currency_id: str
    gross: float
    net: float
    linked: bool = True

class SinkPrice(SinkModel):
    currency_id: str
    gross: float
    net: float
    linked: bool = True
    list_price: Optional[SinkListPrice] = None

class SinkProductMedia(SinkModel):
    id: str
    media_id: str
    position: int = 0

class SinkVisibility(SinkModel):
    sales_channel_id: str
    visibility: int = 30  # All

class SinkProduct(SinkModel):
    id: str
    product_number: str
    name: str
    stock: int = 0
    active: bool = True
    price: List[SinkPrice] = Field(default_factory=list)
    tax_id: Optional[str] = None
    description: Optional[str] = None
    ean: Optional[str] = None
    manufacturer_id: Optional[str] = None
    unit_id: Optional[str] = None
    parent_id: Optional[str] = None
    options: Optional[List[SinkIdRef]] = None
    properties: Optional[List[SinkIdRef]] = None
    categories: Optional[List[SinkIdRef]] = None
    visibilities: Optional[List[SinkVisibility]] = None
    translations: Optional[Dict[str, Dict[str, Any]]] = None
    # None leaves sink media untouched, [] clears it
    media: Optional[List[SinkProductMedia]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True, exclude={"media"})
        if self.media is not None:
            ordered = sorted(self.media, key=lambda m: m.position)
            payload["media"] = [m.to_payload() for m in ordered]
            payload["coverId"] = ordered[0].id if ordered else None
        return payload

class SinkCategory(SinkModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    active: bool = True
    visible: bool = True
    cms_page_id: Optional[str] = None
    translations: Optional[Dict[str, Dict[str, Any]]] = None

class SinkPropertyGroup(SinkModel):
    id: str
    name: str
    display_type: DisplayType = DisplayType.TEXT
    sorting_type: str = "alphanumeric"
    position: int = 0
    translations: Optional[Dict[str, Dict[str, Any]]] = None

class SinkPropertyOption(SinkModel):
    id: str
    group_id: str
    name: str
    position: int = 0
    media_id: Optional[str] = None
    translations: Optional[Dict[str, Dict[str, Any]]] = None

class SinkManufacturer(SinkModel):
    id: str
    name: str
    link: Optional[str] = None
    description: Optional[str] = None
    media_id: Optional[str] = None

class SinkUnit(SinkModel):
    id: str
    short_code: str
    name: str
    translations: Optional[Dict[str, Dict[str, Any]]] = None

class SinkStockUpdate(SinkModel):
    id: str
    stock: int
    product_number: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        # Addressed by id only, never by product number
        return {"id": self.id, "stock": self.stock}

class BulkItemResult(BaseModel):
    id: str
    action: str
    success: bool
    error: Optional[str] = None

class SinkMedia(BaseModel):
    id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None

class SinkTax(BaseModel):
    id: str
    tax_rate: float
    name: str = ""

class SinkCurrency(BaseModel):
    id: str
    iso_code: str = ""
    factor: float = 1.0
