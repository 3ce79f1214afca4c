"""
Image resolution pipeline.

Resolves one slide keyword to a displayable image URL:
1. Cache lookup (normalized keyword)
2. Candidate search via ImageSourceService
3. Download + encode candidates
4. Vision model verification (may reject and propose a new keyword)
5. Bounded retries with alternate keywords, placeholder when exhausted
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from lesson_illustrations.types import (
    ImageCandidate,
    EncodedCandidate,
    ResolutionOutcome,
    Selected,
    RejectedWithSuggestion,
    Exhausted,
)
from lesson_illustrations.config import config
from lesson_illustrations.services.image_sources import ImageSourceService, get_image_source_service
from lesson_illustrations.services.image_fetch import encode_candidates
from lesson_illustrations.services.image_verifier import ImageVerifier, get_image_verifier
from lesson_illustrations.services.keyword_suggester import KeywordSuggester, get_keyword_suggester
from lesson_illustrations.services.resolution_cache import ResolutionCache, get_resolution_cache
from lesson_illustrations.utils.keywords import (
    is_placeholder_url,
    normalize_keyword,
    placeholder_url,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 4


class ImageResolver:
    """Keyword negotiation loop with memoization"""

    def __init__(
        self,
        source: Optional[ImageSourceService] = None,
        verifier: Optional[ImageVerifier] = None,
        suggester: Optional[KeywordSuggester] = None,
        cache: Optional[ResolutionCache] = None,
        encode: Optional[Callable[[Sequence[ImageCandidate]], Awaitable[List[EncodedCandidate]]]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.source = source or get_image_source_service()
        self.verifier = verifier or get_image_verifier()
        self.suggester = suggester or get_keyword_suggester()
        self.cache = cache if cache is not None else get_resolution_cache()
        self.encode = encode or encode_candidates
        if max_attempts is None:
            max_attempts = config.max_selection_attempts or MAX_ATTEMPTS
        self.max_attempts = max_attempts

    async def _fetch_candidates(self, keywords: str) -> List[ImageCandidate]:
        try:
            return await asyncio.to_thread(self.source.fetch_candidates, keywords)
        except Exception as e:
            logger.warning(f"[Resolver] Candidate search failed for '{keywords}': {e}")
            return []

    def _finish(self, outcome: ResolutionOutcome, result: Union[Selected, Exhausted]) -> ResolutionOutcome:
        outcome.result = result
        outcome.url = result.url
        outcome.is_placeholder = isinstance(result, Exhausted)
        self.cache.set(outcome.keywords, result.url)
        return outcome

    async def resolve_detailed(
        self,
        slide_title: str,
        slide_context: str,
        keywords: str,
    ) -> ResolutionOutcome:
        """
        Resolve a keyword and report how the loop got there.

        Keyword suggestions from the vision model are only accepted on the
        first attempt; later attempts must commit to one of the candidates
        found. Attempts are capped at ``max_attempts`` whatever branch is taken.

        Args:
            slide_title: Title of the slide the image belongs to
            slide_context: Slide text (first 200 chars are used)
            keywords: Keyword authored with the slide

        Returns:
            ResolutionOutcome whose ``url`` is a real image or a placeholder
        """
        cached = self.cache.get(keywords)
        if cached is not None:
            logger.info(f"[Resolver] Cache hit for: '{keywords}'")
            placeholder = is_placeholder_url(cached)
            return ResolutionOutcome(
                url=cached,
                keywords=keywords,
                from_cache=True,
                is_placeholder=placeholder,
                result=Exhausted(url=cached) if placeholder else Selected(url=cached),
            )

        logger.info(f"[Resolver] Image selection for: '{slide_title}' (keywords='{keywords}')")

        outcome = ResolutionOutcome(url="", keywords=keywords)
        current = keywords
        failed_keywords: List[str] = []
        attempt = 1

        while attempt <= self.max_attempts:
            outcome.attempts = attempt
            outcome.keywords_tried.append(current)
            logger.info(f"[Resolver] Attempt {attempt}: ({current})")

            candidates = await self._fetch_candidates(current)

            if not candidates:
                logger.info(f"[Resolver] No images found for '{current}'")
                current = await self._after_failed_search(
                    current, failed_keywords, attempt, slide_title, slide_context
                )
                attempt += 1
                continue

            if len(candidates) == 1:
                logger.info("[Resolver] Single candidate, selecting without verification")
                return self._finish(outcome, Selected(url=candidates[0].display_url))

            encoded = await self.encode(candidates)
            if encoded:
                outcome.oracle_calls += 1
            result = await self.verifier.verify(
                encoded,
                slide_title,
                slide_context,
                current,
                allow_keyword_suggestion=(attempt == 1),
            )

            if isinstance(result, Selected):
                logger.info(f"[Resolver] ✅ Selected image for '{keywords}'")
                return self._finish(outcome, result)

            if isinstance(result, RejectedWithSuggestion):
                if normalize_keyword(result.keyword) != normalize_keyword(current):
                    logger.info(f"[Resolver] Retrying with: '{result.keyword}'")
                    current = result.keyword
                    attempt += 1
                    continue
                if not encoded:
                    # Nothing could be downloaded: same as an empty search
                    current = await self._after_failed_search(
                        current, failed_keywords, attempt, slide_title, slide_context
                    )
                    attempt += 1
                    continue

            break

        logger.info(f"[Resolver] ⚠️ Using placeholder for '{keywords}'")
        return self._finish(outcome, Exhausted(url=placeholder_url(keywords)))

    async def _after_failed_search(
        self,
        current: str,
        failed_keywords: List[str],
        attempt: int,
        slide_title: str,
        slide_context: str,
    ) -> str:
        """Remember ``current`` as failed and return the keyword for the next attempt."""
        failed_keywords.append(current)
        if attempt >= self.max_attempts:
            return current
        suggestion = await self.suggester.suggest(failed_keywords, slide_title, slide_context)
        return suggestion or current

    async def resolve(self, slide_title: str, slide_context: str, keywords: str) -> str:
        """Resolve a keyword to a final URL (real image or placeholder)."""
        outcome = await self.resolve_detailed(slide_title, slide_context, keywords)
        return outcome.url


# Global singleton
_image_resolver: Optional[ImageResolver] = None


def get_image_resolver() -> ImageResolver:
    """Get or create the global image resolver"""
    global _image_resolver
    if _image_resolver is None:
        _image_resolver = ImageResolver()
    return _image_resolver


# Convenience function
async def resolve_image(slide_title: str, slide_context: str, keywords: str) -> str:
    """Resolve a slide keyword to an image URL"""
    return await get_image_resolver().resolve(slide_title, slide_context, keywords)
