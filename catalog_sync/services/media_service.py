from typing import Any, Dict, Optional
import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.core.exceptions import AuthError, SinkAPIError, TransientNetworkError
from catalog_sync.models.sync import MediaSourceType
from catalog_sync.services.mapping_service import MediaMappingService
from catalog_sync.utils.helpers import file_name_from_url
from catalog_sync.utils.identifiers import sink_entity_id, url_hash

logger = structlog.get_logger()

PRODUCT_MEDIA_FOLDER = "Product Media"
PROPERTY_OPTION_MEDIA_FOLDER = "Property Option Images"
MANUFACTURER_LOGO_FOLDER = "Manufacturer Logos"

class MediaUploadResult(BaseModel):
    success: bool
    media_id: Optional[str] = None
    reused: bool = False
    error: Optional[str] = None

class MediaService:
    """Uploads source images to the storefront once per URL"""

    def __init__(self, db: AsyncSession, sink: SinkClient, tenant_id: str):
        self.sink = sink
        self.tenant_id = tenant_id
        self.mappings = MediaMappingService(db)
        self._folders: Dict[str, str] = {}

    async def get_folder_id(self, folder_name: str) -> str:
        if folder_name not in self._folders:
            self._folders[folder_name] = await self.sink.get_or_create_media_folder(folder_name)
        return self._folders[folder_name]

    async def upload_from_url(
        self,
        url: str,
        source_type: MediaSourceType,
        source_entity_id: Optional[Any] = None,
        folder_name: str = PRODUCT_MEDIA_FOLDER,
        file_name: Optional[str] = None,
    ) -> MediaUploadResult:
        """Upload an image, or reuse the media already uploaded for this URL.

        Failures are reported in the result and never raised: the entity the
        image belongs to is synced without it.
        """
        existing = await self.mappings.get_by_url(self.tenant_id, url)
        if existing:
            return MediaUploadResult(success=True, media_id=existing.sink_media_id, reused=True)

        file_name = file_name or file_name_from_url(url)
        try:
            folder_id = await self.get_folder_id(folder_name)
            media = await self.sink.create_media_from_url(
                url,
                file_name,
                folder_id=folder_id,
                media_id=sink_entity_id("media", self.tenant_id, url_hash(url)),
            )
        except (SinkAPIError, TransientNetworkError, AuthError) as e:
            logger.warning("Media upload failed", url=url, source_type=MediaSourceType(source_type).value, error=str(e))
            return MediaUploadResult(success=False, error=str(e))

        await self.mappings.save(
            self.tenant_id,
            url,
            source_type,
            media.id,
            source_entity_id=source_entity_id,
            folder_id=folder_id,
            file_name=media.file_name or file_name,
            mime_type=media.mime_type,
            file_size=media.file_size,
        )
        return MediaUploadResult(success=True, media_id=media.id)
