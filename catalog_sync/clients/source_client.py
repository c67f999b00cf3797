import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel

from catalog_sync.clients.base_client import BaseAPIClient
from catalog_sync.config.endpoints import SourceAPI
from catalog_sync.config.settings import Settings
from catalog_sync.core.exceptions import AuthError, SourceAPIError, TransientNetworkError
from catalog_sync.models.source import (
    SourceAttribute,
    SourceCategory,
    SourceImageVariationLink,
    SourceItemImage,
    SourceManufacturer,
    SourcePage,
    SourceProperty,
    SourceSalesPrice,
    SourceStockEntry,
    SourceUnit,
    SourceVariation,
    VariationQuery,
)
from catalog_sync.models.sync import SourceCredentials
from catalog_sync.utils.helpers import chunked

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

class SourceClient(BaseAPIClient):
    """Client for the source ERP REST API"""

    error_class = SourceAPIError
    token_leeway = timedelta(minutes=5)

    def __init__(
        self,
        base_url: str,
        credentials: SourceCredentials,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, settings=settings, transport=transport)
        self.endpoints = SourceAPI(self.base_url)
        self.credentials = credentials

    async def _fetch_token(self) -> Tuple[str, int]:
        self.log.info("🔐 Authenticating with source API")
        data = await self._post_for_token(
            self.endpoints.auth.LOGIN,
            {"username": self.credentials.username, "password": self.credentials.password},
        )
        token = data.get("accessToken") or data.get("access_token")
        if not token:
            raise SourceAPIError("Access token not found in login response", response_body=str(data))
        return token, int(data.get("expiresIn") or data.get("expires_in") or 3600)

    async def test_connection(self) -> bool:
        """Check credentials and reachability with a one-entry request"""
        try:
            await self.authenticate()
            await self.get_page(self.endpoints.config.UNITS, {"itemsPerPage": 1})
            logger.info("✅ Source connection successful", url=self.base_url)
            return True
        except (AuthError, SourceAPIError, TransientNetworkError) as e:
            logger.error("❌ Source connection failed", url=self.base_url, error=str(e))
            return False

    # Pagination

    async def get_page(self, path: str, params: Optional[Dict[str, Any]] = None) -> SourcePage:
        """Fetch one page of a paginated collection"""
        data = await self._request_json(path, params=params)
        if isinstance(data, list):
            return SourcePage(entries=data, is_last_page=True, totals_count=len(data))
        return SourcePage.model_validate(data)

    async def _get_all(
        self,
        path: str,
        model: Type[ModelT],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ModelT]:
        """Drive pagination until the last page and parse every entry"""
        params = dict(params or {})
        params.setdefault("itemsPerPage", self.settings.SOURCE_PAGE_SIZE)
        page_number = 1
        results: List[ModelT] = []

        while True:
            params["page"] = page_number
            page = await self.get_page(path, params)
            results.extend(model.model_validate(entry) for entry in page.entries)

            logger.debug(
                "Fetched source page",
                path=path,
                page=page_number,
                entries=len(page.entries),
                total=page.totals_count,
            )

            if page.is_last_page or not page.entries:
                break
            if page.last_page_number and page_number >= page.last_page_number:
                break
            page_number += 1
            await asyncio.sleep(self.settings.SOURCE_PAGE_DELAY_SECONDS)

        return results

    # Variations

    async def get_variations(self, query: Optional[VariationQuery] = None, page: int = 1) -> SourcePage:
        query = query or VariationQuery(items_per_page=self.settings.SOURCE_PAGE_SIZE)
        params = query.to_params()
        params["page"] = page
        return await self.get_page(self.endpoints.items.VARIATIONS, params)

    async def get_all_variations(self, query: Optional[VariationQuery] = None) -> List[SourceVariation]:
        query = query or VariationQuery(items_per_page=self.settings.SOURCE_PAGE_SIZE)
        variations = await self._get_all(self.endpoints.items.VARIATIONS, SourceVariation, query.to_params())
        logger.info("Fetched source variations", count=len(variations), delta=query.updated_since is not None)
        return variations

    async def get_variations_delta(
        self,
        since: datetime,
        query: Optional[VariationQuery] = None,
    ) -> List[SourceVariation]:
        """Variations updated since the given watermark"""
        query = (query or VariationQuery(items_per_page=self.settings.SOURCE_PAGE_SIZE)).model_copy(
            update={"updated_since": since}
        )
        return await self.get_all_variations(query)

    # Config collections

    async def get_all_categories(self) -> List[SourceCategory]:
        return await self._get_all(
            self.endpoints.config.CATEGORIES,
            SourceCategory,
            {"with": "details", "type": "item"},
        )

    async def get_all_attributes(self) -> List[SourceAttribute]:
        return await self._get_all(
            self.endpoints.config.ATTRIBUTES,
            SourceAttribute,
            {"with": "names,values", "itemsPerPage": 250},
        )

    async def get_all_sales_prices(self) -> List[SourceSalesPrice]:
        return await self._get_all(
            self.endpoints.config.SALES_PRICES,
            SourceSalesPrice,
            {"with": "names"},
        )

    async def get_all_manufacturers(self) -> List[SourceManufacturer]:
        return await self._get_all(self.endpoints.config.MANUFACTURERS, SourceManufacturer)

    async def get_all_units(self) -> List[SourceUnit]:
        return await self._get_all(self.endpoints.config.UNITS, SourceUnit, {"with": "names"})

    async def get_all_properties(self) -> List[SourceProperty]:
        return await self._get_all(
            self.endpoints.config.PROPERTIES,
            SourceProperty,
            {"with": "names,options,selections", "typeIdentifier": "item"},
        )

    @staticmethod
    def filter_properties(
        properties: Iterable[SourceProperty],
        referrers: Iterable[str],
        clients: Optional[Iterable[str]] = None,
    ) -> List[SourceProperty]:
        """Keep properties enabled for one of the referrers (and clients, when given)"""
        referrer_set = {str(r) for r in referrers}
        client_set = {str(c) for c in clients} if clients else None

        filtered = []
        for prop in properties:
            if not referrer_set.intersection(prop.option_values("referrers")):
                continue
            if client_set is not None and not client_set.intersection(prop.option_values("clients")):
                continue
            filtered.append(prop)
        return filtered

    # Images

    async def get_image_variation_links(self, item_id: int, image_id: int) -> List[SourceImageVariationLink]:
        data = await self._request_json(self.endpoints.items.image_variation_links(item_id, image_id))
        entries = data if isinstance(data, list) else data.get("entries", [])
        return [SourceImageVariationLink.model_validate(entry) for entry in entries]

    async def get_item_images(self, item_id: int) -> List[SourceItemImage]:
        """Images of one item with their variation links; failures degrade to no images"""
        try:
            data = await self._request_json(self.endpoints.items.item_images(item_id), params={"with": "names"})
            entries = data if isinstance(data, list) else data.get("entries", [])
            images = [SourceItemImage.model_validate(entry) for entry in entries]

            for image in images:
                if not image.variation_links:
                    image.variation_links = await self.get_image_variation_links(item_id, image.id)
            return images
        except (SourceAPIError, TransientNetworkError, ValueError) as e:
            logger.warning("Failed to fetch item images", item_id=item_id, error=str(e))
            return []

    async def get_batch_item_images(self, item_ids: Iterable[int]) -> Dict[int, List[SourceItemImage]]:
        """Fetch images for many items with bounded concurrency"""
        item_ids = list(dict.fromkeys(item_ids))
        concurrency = self.settings.IMAGE_FETCH_CONCURRENCY
        images: Dict[int, List[SourceItemImage]] = {}

        for batch in chunked(item_ids, concurrency):
            results = await asyncio.gather(*(self.get_item_images(item_id) for item_id in batch))
            images.update(zip(batch, results))
            if len(images) < len(item_ids):
                await asyncio.sleep(self.settings.IMAGE_FETCH_DELAY_SECONDS)

        logger.info(
            "Fetched item images",
            items=len(item_ids),
            images=sum(len(item_images) for item_images in images.values()),
        )
        return images

    # Stock

    async def get_stock_management(self) -> List[SourceStockEntry]:
        """Full per-warehouse stock snapshot"""
        return await self._get_all(self.endpoints.stock.STOCK_MANAGEMENT, SourceStockEntry)
