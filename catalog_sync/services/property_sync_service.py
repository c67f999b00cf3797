from typing import Dict, Iterable, List, Tuple
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.models.source import SourceProperty
from catalog_sync.services.mapping_service import MappingKind, MappingRecord, MappingService
from catalog_sync.services.source_cache_service import SourceConfigCache
from catalog_sync.transformers.config_transformer import build_selection_group, build_selection_option
from catalog_sync.utils.identifiers import sink_entity_id

logger = structlog.get_logger()

class PropertySyncService:
    """Selection properties become property groups, their selections become options"""

    def __init__(self, db: AsyncSession, sink: SinkClient, tenant_id: str, languages: List[str]):
        self.sink = sink
        self.tenant_id = tenant_id
        self.languages = languages
        self.cache = SourceConfigCache(db)
        self.group_mappings = MappingService(db, MappingKind.PROPERTY)
        self.selection_mappings = MappingService(db, MappingKind.PROPERTY_SELECTION)

    async def ensure_selections_exist(self, pairs: Iterable[Tuple[object, object]]) -> Dict[str, str]:
        """Selection id -> sink option id for every (property id, selection id) pair that resolves"""
        wanted = {str(selection_id): str(property_id) for property_id, selection_id in pairs if selection_id is not None}
        if not wanted:
            return {}

        existing = await self.selection_mappings.get_batch_mappings(self.tenant_id, wanted)
        options = {selection_id: mapping.sink_id for selection_id, mapping in existing.items()}
        missing = {s: p for s, p in wanted.items() if s not in options}
        if not missing:
            return options

        property_ids = sorted(set(missing.values()))
        cached = await self.cache.get_properties(self.tenant_id, property_ids)
        properties = {property_id: SourceProperty.model_validate(row.raw) for property_id, row in cached.items()}

        group_rows = await self.group_mappings.get_batch_mappings(self.tenant_id, property_ids)
        groups = {property_id: mapping.sink_id for property_id, mapping in group_rows.items()}
        new_groups = [p for p in property_ids if p not in groups and p in properties]
        if new_groups:
            results = await self.sink.upsert_property_groups([
                build_selection_group(
                    properties[property_id],
                    sink_entity_id(MappingKind.PROPERTY.value, self.tenant_id, property_id),
                    self.languages,
                )
                for property_id in new_groups
            ])
            group_records = []
            for property_id, result in zip(new_groups, results):
                if result.success:
                    groups[property_id] = result.id
                    group_records.append(MappingRecord(source_id=property_id, sink_id=result.id, action=result.action))
                else:
                    logger.warning("Failed to create property group", property_id=property_id, error=result.error)
            await self.group_mappings.upsert_mappings(self.tenant_id, group_records)

        payloads, selection_ids = [], []
        for selection_id, property_id in missing.items():
            prop = properties.get(property_id)
            selection = next((s for s in prop.selections if str(s.id) == selection_id), None) if prop else None
            if selection is None or property_id not in groups:
                logger.warning("Property selection cannot be resolved", property_id=property_id, selection_id=selection_id)
                continue
            payloads.append(build_selection_option(
                selection,
                sink_entity_id(MappingKind.PROPERTY_SELECTION.value, self.tenant_id, selection_id),
                groups[property_id],
                self.languages,
            ))
            selection_ids.append(selection_id)

        results = await self.sink.upsert_property_options(payloads)
        records = []
        for selection_id, payload, result in zip(selection_ids, payloads, results):
            if result.success:
                options[selection_id] = result.id
                records.append(MappingRecord(
                    source_id=selection_id,
                    sink_id=result.id,
                    action=result.action,
                    extra={"source_property_id": missing[selection_id], "sink_group_id": payload.group_id},
                ))
            else:
                logger.warning("Failed to create property selection", selection_id=selection_id, error=result.error)
        await self.selection_mappings.upsert_mappings(self.tenant_id, records)
        return options
