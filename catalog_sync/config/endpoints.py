"""
Centralized API endpoint management for the source ERP and the storefront.
Base URLs are per tenant, so each adapter builds its own endpoint tree.
"""

from dataclasses import dataclass


@dataclass
class APIEndpoints:
    """Base class for API endpoint management"""
    base_url: str

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from base URL and endpoint path"""
        return f"{self.base_url.rstrip('/')}{endpoint}"


class SourceAPI(APIEndpoints):
    """
    Source ERP REST endpoints.

    Every list endpoint answers with the paginated envelope
    {page, totalsCount, isLastPage, lastPageNumber, entries}.
    """

    def __init__(self, base_url: str):
        super().__init__(base_url)
        self.auth = SourceAuthEndpoints()
        self.items = SourceItemEndpoints()
        self.config = SourceConfigEndpoints()
        self.stock = SourceStockEndpoints()


class SourceAuthEndpoints:
    LOGIN = "/rest/login"


class SourceItemEndpoints:
    """Variations and item images"""

    VARIATIONS = "/rest/items/variations"

    def item_images(self, item_id: int) -> str:
        return f"/rest/items/{item_id}/images"

    def image_variation_links(self, item_id: int, image_id: int) -> str:
        return f"/rest/items/{item_id}/images/{image_id}/variation_images"


class SourceConfigEndpoints:
    CATEGORIES = "/rest/categories"
    ATTRIBUTES = "/rest/items/attributes"
    SALES_PRICES = "/rest/items/sales_prices"
    MANUFACTURERS = "/rest/items/manufacturers"
    UNITS = "/rest/items/units"
    PROPERTIES = "/rest/properties"


class SourceStockEndpoints:
    # No updated-since filter is available on this endpoint
    STOCK_MANAGEMENT = "/rest/stockmanagement/stock"


class SinkAPI(APIEndpoints):
    """
    Storefront Admin API endpoints.

    Writes go through the bulk sync action; reads use the generic entity and
    search routes.
    """

    def __init__(self, base_url: str):
        super().__init__(base_url)
        self.auth = SinkAuthEndpoints()
        self.entities = SinkEntityEndpoints()
        self.media = SinkMediaEndpoints()


class SinkAuthEndpoints:
    TOKEN = "/api/oauth/token"


class SinkEntityEndpoints:
    SYNC = "/api/_action/sync"

    def entity_url(self, api_path: str, entity_id: str = None) -> str:
        if entity_id:
            return f"/api/{api_path}/{entity_id}"
        return f"/api/{api_path}"

    def search_url(self, api_path: str) -> str:
        return f"/api/search/{api_path}"


class SinkMediaEndpoints:
    MEDIA = "/api/media"
    MEDIA_FOLDER = "/api/media-folder"

    def upload_url(self, media_id: str) -> str:
        return f"/api/_action/media/{media_id}/upload"
