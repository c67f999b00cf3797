from typing import Dict, Iterable, List, Optional, Set
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.core.exceptions import CircularReferenceError
from catalog_sync.models.database import CachedCategory
from catalog_sync.models.source import SourceCategory
from catalog_sync.services.mapping_service import MappingKind, MappingRecord, MappingService
from catalog_sync.services.source_cache_service import SourceConfigCache
from catalog_sync.transformers.config_transformer import build_category
from catalog_sync.utils.identifiers import sink_entity_id

logger = structlog.get_logger()

def resolve_chain(category_id: str, graph: Dict[str, CachedCategory], resolved: Dict[str, str]) -> List[str]:
    """Unresolved ancestors of a category, the category itself first.

    Walks parent links iteratively until a category with a sink mapping (or
    the top level) is reached. A category seen twice means a cycle.
    """
    chain: List[str] = []
    visited: Set[str] = set()
    current: Optional[str] = category_id

    while current and current not in resolved:
        if current in visited:
            raise CircularReferenceError(chain + [current])
        visited.add(current)

        node = graph.get(current)
        if node is None:
            raise KeyError(current)
        chain.append(current)
        current = node.parent_id

    return chain

class CategorySyncService:
    """Creates categories a product references but the storefront lacks"""

    def __init__(
        self,
        db: AsyncSession,
        sink: SinkClient,
        tenant_id: str,
        languages: List[str],
        root_category_id: Optional[str] = None,
        cms_page_id: Optional[str] = None,
    ):
        self.sink = sink
        self.tenant_id = tenant_id
        self.languages = languages
        self.root_category_id = root_category_id
        self.cms_page_id = cms_page_id
        self.mappings = MappingService(db, MappingKind.CATEGORY)
        self.cache = SourceConfigCache(db)

    async def ensure_categories_exist(self, category_ids: Iterable[object]) -> Dict[str, str]:
        """Source id -> sink id for every requested category that could be resolved"""
        requested = [str(category_id) for category_id in dict.fromkeys(category_ids)]
        if not requested:
            return {}

        resolved = await self.mappings.get_all_active_mappings(self.tenant_id)
        missing = [category_id for category_id in requested if category_id not in resolved]
        if not missing:
            return {category_id: resolved[category_id] for category_id in requested}

        graph = await self.cache.get_category_graph(self.tenant_id)
        to_create: Set[str] = set()
        for category_id in missing:
            try:
                to_create.update(resolve_chain(category_id, graph, resolved))
            except CircularReferenceError as e:
                logger.error("Circular category hierarchy", category_id=category_id, chain=e.chain)
            except KeyError as e:
                logger.warning("Category not in source cache", category_id=category_id, missing=str(e))

        if to_create:
            await self._create_level_by_level(to_create, graph, resolved)

        return {category_id: resolved[category_id] for category_id in requested if category_id in resolved}

    async def _create_level_by_level(
        self,
        pending: Set[str],
        graph: Dict[str, CachedCategory],
        resolved: Dict[str, str],
    ) -> None:
        """Breadth-first: each wave holds categories whose parent is already in the storefront"""
        level = 0
        while pending:
            wave = sorted(
                (category_id for category_id in pending
                 if not graph[category_id].parent_id or graph[category_id].parent_id in resolved),
                key=lambda category_id: (graph[category_id].level or 0, category_id),
            )
            if not wave:
                logger.warning("Categories left without a resolvable parent", category_ids=sorted(pending))
                return
            pending.difference_update(wave)

            payloads = []
            for category_id in wave:
                node = graph[category_id]
                parent_id = resolved[node.parent_id] if node.parent_id else self.root_category_id
                payloads.append(build_category(
                    SourceCategory.model_validate(node.raw),
                    sink_entity_id(MappingKind.CATEGORY.value, self.tenant_id, category_id),
                    parent_id,
                    self.languages,
                    self.cms_page_id,
                ))

            results = await self.sink.upsert_categories(payloads)
            records = []
            for category_id, result in zip(wave, results):
                if result.success:
                    resolved[category_id] = result.id
                    records.append(MappingRecord(source_id=category_id, sink_id=result.id, action=result.action))
                else:
                    logger.warning("Failed to create category", category_id=category_id, error=result.error)
            await self.mappings.upsert_mappings(self.tenant_id, records)

            logger.info("Created missing categories", wave=level, created=len(records), failed=len(wave) - len(records))
            level += 1
