import re
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar
from datetime import datetime, timezone
from urllib.parse import urlparse
import os

T = TypeVar("T")

def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive fixed-size batches"""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])

def pick_localized(values: Dict[str, str], languages: Iterable[str]) -> Optional[str]:
    """First non-empty value along the language chain, else the first available"""
    for lang in languages:
        value = values.get(lang)
        if value:
            return value
    for value in values.values():
        if value:
            return value
    return None

def unique(values: Iterable[T]) -> List[T]:
    """De-duplicate while keeping first-seen order"""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result

def sanitize_file_name(name: str) -> str:
    """Lowercase name safe for storefront media file names"""
    sanitized = re.sub(r'[^a-zA-Z0-9\-_]', '_', name.strip().lower())
    sanitized = re.sub(r'_+', '_', sanitized)
    return sanitized.strip('_') or "file"

def file_name_from_url(url: str, default_extension: str = ".jpg") -> str:
    """File name from the last URL path segment, with an extension"""
    path = urlparse(url).path
    base = os.path.basename(path) or "image"
    stem, extension = os.path.splitext(base)
    return f"{sanitize_file_name(stem)}{extension.lower() or default_extension}"
