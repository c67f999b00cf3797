from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
import os

import httpx
import structlog

from catalog_sync.clients.base_client import BaseAPIClient
from catalog_sync.config.endpoints import SinkAPI
from catalog_sync.config.settings import Settings
from catalog_sync.core.exceptions import AuthError, SinkAPIError, TransientNetworkError
from catalog_sync.models.sink import (
    BulkItemResult,
    SinkCategory,
    SinkCurrency,
    SinkEntity,
    SinkManufacturer,
    SinkMedia,
    SinkModel,
    SinkProduct,
    SinkPropertyGroup,
    SinkPropertyOption,
    SinkStockUpdate,
    SinkTax,
    SinkUnit,
)
from catalog_sync.models.sync import SinkCredentials, SyncAction
from catalog_sync.utils.identifiers import deterministic_uuid
from catalog_sync.utils.rate_limiter import RateLimiter

logger = structlog.get_logger()

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
}

MEDIA_FOLDER_CONFIGURATION = {
    "createThumbnails": True,
    "keepAspectRatio": True,
    "thumbnailQuality": 80,
    "private": False,
}

class SinkClient(BaseAPIClient):
    """Client for the storefront Admin API"""

    error_class = SinkAPIError
    token_leeway = timedelta(seconds=60)

    def __init__(
        self,
        base_url: str,
        credentials: SinkCredentials,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, settings=settings, transport=transport)
        self.endpoints = SinkAPI(self.base_url)
        self.credentials = credentials
        self.rate_limiter = RateLimiter(
            max_requests=self.settings.SINK_RATE_LIMIT,
            time_window=10  # 10 seconds
        )

    async def _fetch_token(self) -> Tuple[str, int]:
        self.log.info("🔐 Authenticating with sink API")
        data = await self._post_for_token(
            self.endpoints.auth.TOKEN,
            {
                "grant_type": "client_credentials",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
            },
        )
        token = data.get("access_token")
        if not token:
            raise SinkAPIError("Access token not found in token response", response_body=str(data))
        return token, int(data.get("expires_in") or 600)

    async def test_connection(self) -> bool:
        try:
            await self.authenticate()
            await self.search(SinkEntity.CURRENCY, limit=1)
            logger.info("✅ Sink connection successful", url=self.base_url)
            return True
        except (AuthError, SinkAPIError, TransientNetworkError) as e:
            logger.error("❌ Sink connection failed", url=self.base_url, error=str(e))
            return False

    # Bulk writes

    @staticmethod
    def _item_errors(body: Dict[str, Any], operation_key: str) -> Dict[int, str]:
        """Per-index error messages of one sync operation"""
        errors = body.get("errors") or {}
        if not isinstance(errors, dict):
            return {}
        operation_errors = errors.get(operation_key) or {}

        if isinstance(operation_errors, list):
            indexed = enumerate(operation_errors)
        else:
            indexed = operation_errors.items()

        result = {}
        for index, error in indexed:
            if not error:
                continue
            try:
                position = int(index)
            except (TypeError, ValueError):
                continue
            if isinstance(error, list):
                error = "; ".join(str(e.get("detail", e)) if isinstance(e, dict) else str(e) for e in error)
            elif isinstance(error, dict):
                error = str(error.get("detail") or error)
            result[position] = str(error)
        return result

    async def _sync_operation(
        self,
        operation_key: str,
        entity: SinkEntity,
        action: str,
        payload: List[Dict[str, Any]],
    ) -> Dict[int, str]:
        body = await self._request_json(
            self.endpoints.entities.SYNC,
            method="POST",
            json_data={operation_key: {"entity": entity.value, "action": action, "payload": payload}},
            headers={"fail-on-error": "false", "single-operation": "0"},
        )
        return self._item_errors(body if isinstance(body, dict) else {}, operation_key)

    async def bulk_upsert(
        self,
        entity: SinkEntity,
        payloads: Sequence[Union[SinkModel, Dict[str, Any]]],
        existing_ids: Optional[Iterable[str]] = None,
    ) -> List[BulkItemResult]:
        """Upsert many records of one entity; one result per input, in order"""
        if not payloads:
            return []

        existing = set(existing_ids or ())
        payload = [p.to_payload() if isinstance(p, SinkModel) else dict(p) for p in payloads]
        item_errors = await self._sync_operation(f"upsert-{entity.value}", entity, "upsert", payload)

        results = []
        for index, item in enumerate(payload):
            item_id = item["id"]
            action = SyncAction.UPDATE.value if item_id in existing else SyncAction.CREATE.value
            error = item_errors.get(index)
            results.append(BulkItemResult(id=item_id, action=action, success=error is None, error=error))

        failed = sum(1 for r in results if not r.success)
        logger.info("Bulk sync completed", entity=entity.value, total=len(results), failed=failed)
        return results

    async def upsert_products(self, products: Sequence[SinkProduct], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.PRODUCT, products, existing_ids)

    async def upsert_categories(self, categories: Sequence[SinkCategory], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.CATEGORY, categories, existing_ids)

    async def upsert_property_groups(self, groups: Sequence[SinkPropertyGroup], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.PROPERTY_GROUP, groups, existing_ids)

    async def upsert_property_options(self, options: Sequence[SinkPropertyOption], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.PROPERTY_GROUP_OPTION, options, existing_ids)

    async def upsert_manufacturers(self, manufacturers: Sequence[SinkManufacturer], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.MANUFACTURER, manufacturers, existing_ids)

    async def upsert_units(self, units: Sequence[SinkUnit], existing_ids: Optional[Iterable[str]] = None) -> List[BulkItemResult]:
        return await self.bulk_upsert(SinkEntity.UNIT, units, existing_ids)

    async def batch_update_stock(self, updates: Sequence[SinkStockUpdate]) -> List[BulkItemResult]:
        """Stock updates addressed by sink product id"""
        if not updates:
            return []
        payload = [update.to_payload() for update in updates]
        item_errors = await self._sync_operation("update-stock", SinkEntity.PRODUCT, "upsert", payload)
        return [
            BulkItemResult(
                id=item["id"],
                action=SyncAction.UPDATE.value,
                success=index not in item_errors,
                error=item_errors.get(index),
            )
            for index, item in enumerate(payload)
        ]

    # Reads

    async def get_by_id(self, entity: SinkEntity, entity_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._request_json(self.endpoints.entities.entity_url(entity.api_path, entity_id))
        except SinkAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return data.get("data") if isinstance(data, dict) and "data" in data else data

    async def exists(self, entity: SinkEntity, entity_id: str) -> bool:
        return await self.get_by_id(entity, entity_id) is not None

    async def search(
        self,
        entity: SinkEntity,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 25,
    ) -> List[Dict[str, Any]]:
        """Equality search; every filter must match"""
        body: Dict[str, Any] = {"limit": limit}
        if filters:
            body["filter"] = [
                {"type": "equals", "field": field, "value": value}
                for field, value in filters.items()
            ]
        data = await self._request_json(
            self.endpoints.entities.search_url(entity.api_path),
            method="POST",
            json_data=body,
        )
        return data.get("data", []) if isinstance(data, dict) else []

    async def get_default_tax(self, tax_rate: Optional[float] = None) -> Optional[SinkTax]:
        """Tax matching the rate, else the first tax record"""
        taxes = await self.search(SinkEntity.TAX, limit=100)
        if not taxes:
            return None
        chosen = taxes[0]
        if tax_rate is not None:
            for tax in taxes:
                if float(tax.get("taxRate", -1)) == float(tax_rate):
                    chosen = tax
                    break
        return SinkTax(id=chosen["id"], tax_rate=float(chosen.get("taxRate", 0)), name=chosen.get("name", ""))

    async def get_default_currency(self) -> Optional[SinkCurrency]:
        """The system currency has factor 1"""
        currencies = await self.search(SinkEntity.CURRENCY, limit=100)
        if not currencies:
            return None
        chosen = next((c for c in currencies if float(c.get("factor", 0)) == 1.0), currencies[0])
        return SinkCurrency(
            id=chosen["id"],
            iso_code=chosen.get("isoCode", ""),
            factor=float(chosen.get("factor", 1)),
        )

    # Media

    async def get_or_create_media_folder(self, name: str) -> str:
        existing = await self.search(SinkEntity.MEDIA_FOLDER, {"name": name}, limit=1)
        if existing:
            return existing[0]["id"]

        folder_id = deterministic_uuid("media_folder", name)
        await self._make_request(
            self.endpoints.media.MEDIA_FOLDER,
            method="POST",
            json_data={
                "id": folder_id,
                "name": name,
                "useParentConfiguration": False,
                "configuration": MEDIA_FOLDER_CONFIGURATION,
            },
        )
        logger.info("Created media folder", name=name, folder_id=folder_id)
        return folder_id

    async def find_media_by_file_name(self, file_name: str) -> Optional[SinkMedia]:
        stem = os.path.splitext(file_name)[0]
        found = await self.search(SinkEntity.MEDIA, {"fileName": stem}, limit=1)
        if not found:
            return None
        media = found[0]
        return SinkMedia(
            id=media["id"],
            file_name=media.get("fileName"),
            mime_type=media.get("mimeType"),
            file_size=media.get("fileSize"),
        )

    async def create_media(self, media_id: str, folder_id: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"id": media_id}
        if folder_id:
            body["mediaFolderId"] = folder_id
        await self._make_request(self.endpoints.media.MEDIA, method="POST", json_data=body)
        return media_id

    async def _download(self, url: str) -> Tuple[bytes, str]:
        try:
            response = await self._client.get(url, headers={"Accept": "*/*"})
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Download of {url} failed: {e}") from e
        if response.status_code >= 400:
            raise SinkAPIError(f"Download of {url} failed with {response.status_code}", status_code=response.status_code)
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip().lower()
        return response.content, mime_type

    async def upload_media_from_url(self, media_id: str, url: str, file_name: str) -> SinkMedia:
        """Download the file and upload its bytes to an existing media record"""
        content, mime_type = await self._download(url)
        extension = MIME_EXTENSIONS.get(mime_type, "jpg")
        stem = os.path.splitext(file_name)[0]

        await self._make_request(
            self.endpoints.media.upload_url(media_id),
            method="POST",
            params={"extension": extension, "fileName": stem},
            content=content,
            headers={"Content-Type": mime_type},
        )
        logger.debug("Uploaded media", media_id=media_id, file_name=stem, size=len(content))
        return SinkMedia(id=media_id, file_name=f"{stem}.{extension}", mime_type=mime_type, file_size=len(content))

    async def create_media_from_url(
        self,
        url: str,
        file_name: str,
        folder_id: Optional[str] = None,
        media_id: Optional[str] = None,
    ) -> SinkMedia:
        """Create and upload media, reusing an existing file with the same name"""
        existing = await self.find_media_by_file_name(file_name)
        if existing:
            logger.debug("Reusing existing media", media_id=existing.id, file_name=file_name)
            return existing

        media_id = media_id or deterministic_uuid("media", url)
        if not await self.exists(SinkEntity.MEDIA, media_id):
            await self.create_media(media_id, folder_id)
        return await self.upload_media_from_url(media_id, url, file_name)

    async def get_product_media(self, product_id: str) -> List[Dict[str, Any]]:
        return await self.search(SinkEntity.PRODUCT_MEDIA, {"productId": product_id}, limit=500)

    async def delete_product_media(self, product_media_ids: Sequence[str]) -> None:
        if not product_media_ids:
            return
        await self._sync_operation(
            "delete-product-media",
            SinkEntity.PRODUCT_MEDIA,
            "delete",
            [{"id": pm_id} for pm_id in product_media_ids],
        )

    async def sync_product_media(self, product_id: str, keep_ids: Iterable[str]) -> int:
        """Remove media associations of a product that are no longer wanted"""
        keep: Set[str] = set(keep_ids)
        current = await self.get_product_media(product_id)
        orphaned = [pm["id"] for pm in current if pm.get("id") not in keep]
        if orphaned:
            await self.delete_product_media(orphaned)
            logger.info("Removed orphaned product media", product_id=product_id, removed=len(orphaned))
        return len(orphaned)
