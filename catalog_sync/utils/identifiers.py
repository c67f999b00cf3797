import hashlib
from typing import Any

def deterministic_uuid(namespace: str, *parts: Any) -> str:
    """32-char hex id derived from stable inputs.

    The same namespace and parts always produce the same id, so a repeated
    sync upserts the record it created last time instead of a duplicate.
    """
    seed = ":".join([namespace, *(str(part) for part in parts)])
    return hashlib.md5(seed.encode("utf-8")).hexdigest()

def url_hash(url: str) -> str:
    return hashlib.md5(url.strip().encode("utf-8")).hexdigest()

def product_media_id(variation_id: Any, image_id: Any) -> str:
    return deterministic_uuid("product_media", variation_id, image_id)

def sink_entity_id(entity: str, tenant_id: str, source_id: Any) -> str:
    return deterministic_uuid(entity, tenant_id, source_id)
