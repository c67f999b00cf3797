from typing import Dict, Iterable, List, Tuple
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.models.source import SourceAttribute
from catalog_sync.services.mapping_service import MappingKind, MappingRecord, MappingService
from catalog_sync.services.source_cache_service import SourceConfigCache
from catalog_sync.transformers.config_transformer import build_property_group, build_property_option
from catalog_sync.utils.identifiers import sink_entity_id

logger = structlog.get_logger()

class AttributeSyncService:
    """Creates missing property groups and options for variation attribute values"""

    def __init__(self, db: AsyncSession, sink: SinkClient, tenant_id: str, languages: List[str]):
        self.sink = sink
        self.tenant_id = tenant_id
        self.languages = languages
        self.cache = SourceConfigCache(db)
        self.group_mappings = MappingService(db, MappingKind.ATTRIBUTE)
        self.value_mappings = MappingService(db, MappingKind.ATTRIBUTE_VALUE)

    async def _ensure_groups(self, attribute_ids: List[str], attributes: Dict[str, SourceAttribute]) -> Dict[str, str]:
        existing = await self.group_mappings.get_batch_mappings(self.tenant_id, attribute_ids)
        groups = {attribute_id: mapping.sink_id for attribute_id, mapping in existing.items()}

        to_create = [a for a in attribute_ids if a not in groups and a in attributes]
        if not to_create:
            return groups

        payloads = [
            build_property_group(
                attributes[attribute_id],
                sink_entity_id(MappingKind.ATTRIBUTE.value, self.tenant_id, attribute_id),
                self.languages,
            )
            for attribute_id in to_create
        ]
        results = await self.sink.upsert_property_groups(payloads)

        records = []
        for attribute_id, result in zip(to_create, results):
            if result.success:
                groups[attribute_id] = result.id
                records.append(MappingRecord(source_id=attribute_id, sink_id=result.id, action=result.action))
            else:
                logger.warning("Failed to create property group", attribute_id=attribute_id, error=result.error)
        await self.group_mappings.upsert_mappings(self.tenant_id, records)
        return groups

    async def ensure_attribute_values_exist(self, pairs: Iterable[Tuple[object, object]]) -> Dict[str, str]:
        """Value id -> sink option id for every (attribute id, value id) pair that resolves"""
        wanted = {str(value_id): str(attribute_id) for attribute_id, value_id in pairs if value_id is not None}
        if not wanted:
            return {}

        existing = await self.value_mappings.get_batch_mappings(self.tenant_id, wanted)
        options = {value_id: mapping.sink_id for value_id, mapping in existing.items()}
        missing = {value_id: attribute_id for value_id, attribute_id in wanted.items() if value_id not in options}
        if not missing:
            return options

        attribute_ids = sorted(set(missing.values()))
        cached = await self.cache.get_attributes(self.tenant_id, attribute_ids)
        attributes = {attribute_id: SourceAttribute.model_validate(row.raw) for attribute_id, row in cached.items()}
        groups = await self._ensure_groups(attribute_ids, attributes)

        payloads, value_ids = [], []
        for value_id, attribute_id in missing.items():
            attribute = attributes.get(attribute_id)
            value = next((v for v in attribute.values if str(v.id) == value_id), None) if attribute else None
            if value is None or attribute_id not in groups:
                logger.warning("Attribute value cannot be resolved", attribute_id=attribute_id, value_id=value_id)
                continue
            payloads.append(build_property_option(
                value,
                sink_entity_id(MappingKind.ATTRIBUTE_VALUE.value, self.tenant_id, value_id),
                groups[attribute_id],
                self.languages,
            ))
            value_ids.append(value_id)

        results = await self.sink.upsert_property_options(payloads)
        records = []
        for value_id, payload, result in zip(value_ids, payloads, results):
            if result.success:
                options[value_id] = result.id
                records.append(MappingRecord(
                    source_id=value_id,
                    sink_id=result.id,
                    action=result.action,
                    extra={"source_attribute_id": missing[value_id], "sink_group_id": payload.group_id},
                ))
            else:
                logger.warning("Failed to create property option", value_id=value_id, error=result.error)
        await self.value_mappings.upsert_mappings(self.tenant_id, records)

        logger.info("Created missing attribute values", created=len(records), requested=len(missing))
        return options
