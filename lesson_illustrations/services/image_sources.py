"""
Image source service - candidate search against Wikimedia Commons and Pixabay.
"""
import logging
import re
from typing import Any, Dict, List, Optional

import requests

from lesson_illustrations.types import ImageCandidate
from lesson_illustrations.config import config
from lesson_illustrations.utils.keywords import is_nature_topic, strip_quotes

logger = logging.getLogger(__name__)

THUMB_WIDTH_PATTERN = re.compile(r'/(\d+)px-')
PIXABAY_QUERY_PATTERN = re.compile(r'[^a-zA-Z0-9\s]')


class ImageSourceService:
    """Service for finding candidate images for a slide keyword"""

    def __init__(self):
        self.wikimedia_url = config.wikimedia_api_url
        self.pixabay_url = config.pixabay_api_url
        self.pixabay_key = config.pixabay_api_key
        self.timeout = config.search_timeout
        self.analysis_width = config.analysis_width_px
        self.display_width = config.display_width_px
        self.headers = {"User-Agent": config.user_agent}

    def _get_json(self, url: str, params: Dict[str, Any], source: str) -> Optional[Dict[str, Any]]:
        """GET a JSON document; any failure is logged and returned as None."""
        try:
            response = requests.get(
                url,
                params=params,
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"{source} search failed: {exc}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"{source} returned unexpected payload type: {type(data).__name__}")
            return None
        return data

    def _display_variant(self, analysis_url: str) -> str:
        """Rewrite a Wikimedia thumbnail URL to the display width."""
        return THUMB_WIDTH_PATTERN.sub(f'/{self.display_width}px-', analysis_url, count=1)

    def search_wikimedia(self, keywords: str, count: int) -> List[ImageCandidate]:
        """
        Search Wikimedia Commons for bitmap files.

        Asks for a few more results than needed since non-image files and
        entries without a URL are filtered out afterwards.
        """
        clean = strip_quotes(keywords)
        if not clean:
            return []

        logger.info(f"  Wikimedia search: '{clean}'")
        params = {
            "origin": "*",
            "action": "query",
            "generator": "search",
            "gsrsearch": f"{clean} filetype:bitmap -fileres:0",
            "gsrnamespace": "6",
            "gsrlimit": str(min(count + 3, 8)),
            "prop": "imageinfo",
            "iiprop": "url|mime|size|mediatype",
            "iiurlwidth": str(self.analysis_width),
            "format": "json",
        }
        data = self._get_json(self.wikimedia_url, params, "Wikimedia")
        if not data:
            return []

        pages = (data.get("query") or {}).get("pages") or {}
        if not isinstance(pages, dict) or not pages:
            logger.info("  Wikimedia: no results")
            return []

        candidates: List[ImageCandidate] = []
        for page in pages.values():
            if not isinstance(page, dict):
                continue
            imageinfo = page.get("imageinfo") or []
            info = imageinfo[0] if imageinfo and isinstance(imageinfo[0], dict) else None
            if not info:
                continue

            mime = str(info.get("mime") or "")
            if not mime.startswith("image/"):
                continue

            analysis_url = info.get("thumburl") or info.get("url")
            if not analysis_url:
                continue

            candidates.append(ImageCandidate(
                analysis_url=analysis_url,
                display_url=self._display_variant(analysis_url),
                source="wikimedia",
            ))
            if len(candidates) >= count:
                break

        logger.info(f"  Wikimedia: {len(candidates)} candidates from {len(pages)} pages")
        return candidates

    def search_pixabay(self, keywords: str, count: int) -> List[ImageCandidate]:
        """Search Pixabay stock photos (skipped when no API key is configured)."""
        if not self.pixabay_key:
            logger.debug("Pixabay API key is not configured")
            return []

        words = PIXABAY_QUERY_PATTERN.sub('', strip_quotes(keywords)).split()
        if not words:
            return []
        # requests encodes spaces as '+', matching Pixabay's query format
        query = " ".join(words[:5])

        logger.info(f"  Pixabay search: '{query}'")
        params = {
            "key": self.pixabay_key,
            "q": query,
            "orientation": "horizontal",
            "per_page": count + 2,
            "safesearch": "true",
        }
        data = self._get_json(self.pixabay_url, params, "Pixabay")
        if not data:
            return []

        candidates: List[ImageCandidate] = []
        for hit in data.get("hits") or []:
            if not isinstance(hit, dict):
                continue
            preview = hit.get("previewURL")
            web = hit.get("webformatURL")
            if not preview or not web:
                continue
            candidates.append(ImageCandidate(
                analysis_url=preview,
                display_url=web,
                source="pixabay",
            ))
            if len(candidates) >= count:
                break

        logger.info(f"  Pixabay: {len(candidates)} candidates")
        return candidates

    def fetch_candidates(self, keywords: str, count: Optional[int] = None) -> List[ImageCandidate]:
        """
        Find candidate images for a keyword.

        Nature/landscape style keywords try Pixabay first; everything else
        tries Wikimedia first. The other source is only queried when the first
        one comes back empty.

        Args:
            keywords: Search keyword (quotes are stripped)
            count: Number of candidates wanted; defaults per source

        Returns:
            List of ImageCandidate, empty when nothing was found
        """
        if count is None:
            wiki_count = config.wikimedia_fetch_count
            pixabay_count = config.pixabay_fetch_count
        elif count <= 0:
            return []
        else:
            wiki_count = pixabay_count = count

        if is_nature_topic(keywords):
            order = [
                (self.search_pixabay, pixabay_count),
                (self.search_wikimedia, wiki_count),
            ]
        else:
            order = [
                (self.search_wikimedia, wiki_count),
                (self.search_pixabay, pixabay_count),
            ]

        for search, wanted in order:
            candidates = search(keywords, wanted)
            if candidates:
                return candidates

        logger.info(f"  No candidates found for '{keywords}'")
        return []


# Global singleton
_image_source_service: Optional[ImageSourceService] = None


def get_image_source_service() -> ImageSourceService:
    """Get or create the global image source service"""
    global _image_source_service
    if _image_source_service is None:
        _image_source_service = ImageSourceService()
    return _image_source_service


# Convenience function
def fetch_candidates(keywords: str, count: Optional[int] = None) -> List[ImageCandidate]:
    """Find candidate images for a keyword"""
    return get_image_source_service().fetch_candidates(keywords, count)
