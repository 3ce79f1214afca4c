"""
Process-lifetime memo of resolved image URLs, keyed by normalized keyword.
"""
import logging
from typing import Dict, Optional

from lesson_illustrations.utils.keywords import normalize_keyword

logger = logging.getLogger(__name__)


class ResolutionCache:
    """Keyword -> final URL (placeholders included). No eviction."""

    def __init__(self):
        self._entries: Dict[str, str] = {}

    def get(self, keywords: str) -> Optional[str]:
        return self._entries.get(normalize_keyword(keywords))

    def set(self, keywords: str, url: str) -> None:
        key = normalize_keyword(keywords)
        if not key:
            return
        self._entries[key] = url

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, keywords: str) -> bool:
        return normalize_keyword(keywords) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# Global singleton
_resolution_cache: Optional[ResolutionCache] = None


def get_resolution_cache() -> ResolutionCache:
    """Get or create the process-wide cache"""
    global _resolution_cache
    if _resolution_cache is None:
        _resolution_cache = ResolutionCache()
    return _resolution_cache


def clear_resolution_cache() -> None:
    """Forget every cached resolution"""
    get_resolution_cache().clear()
    logger.info("Image resolution cache cleared")
