"""
Image verification service - asks a vision model to pick the best candidate.

The model's reply is free text. It is parsed with a tolerant pattern match
and anything unrecognized falls back to the first submitted candidate.
"""
import logging
import re
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from google.genai import types

from lesson_illustrations.types import (
    EncodedCandidate,
    ResolutionResult,
    Selected,
    RejectedWithSuggestion,
    RejectedNoSuggestion,
)
from lesson_illustrations.config import config
from lesson_illustrations.services.gemini_client import (
    IntervalLimiter,
    generate_text,
    get_analysis_limiter,
)
from lesson_illustrations.utils.keywords import strip_edge_quotes

logger = logging.getLogger(__name__)

NONE_WITH_KEYWORD_PATTERN = re.compile(r'NONE\s*:\s*(.+)', re.IGNORECASE)
BARE_NONE_PATTERN = re.compile(r'\bNONE\b', re.IGNORECASE)
NUMBER_PATTERN = re.compile(r'(\d+)')

MAX_SUGGESTION_CHARS = 50
MAX_SUGGESTION_WORDS = 5


def select_oracle_candidates(
    encoded: Sequence[EncodedCandidate],
    limit: Optional[int] = None,
) -> List[EncodedCandidate]:
    """
    Cap the candidates sent to the model, keeping the smallest payloads.

    The kept candidates stay in their original order.
    """
    cap = config.max_oracle_candidates if limit is None else max(limit, 0)
    if len(encoded) <= cap:
        return list(encoded)
    by_size = sorted(range(len(encoded)), key=lambda i: (encoded[i].size, i))
    keep = sorted(by_size[:cap])
    return [encoded[i] for i in keep]


def _usable_suggestion(raw: str) -> Optional[str]:
    suggestion = strip_edge_quotes(raw.strip().splitlines()[0] if raw.strip() else "")
    suggestion = suggestion.rstrip('.').strip()
    if not suggestion:
        return None
    if len(suggestion) > MAX_SUGGESTION_CHARS:
        return None
    if len(suggestion.split()) > MAX_SUGGESTION_WORDS:
        return None
    if ',' in suggestion:
        return None
    return suggestion


def parse_selection_response(
    text: str,
    candidates: Sequence[EncodedCandidate],
    allow_keyword_suggestion: bool,
) -> ResolutionResult:
    """
    Interpret the model's reply.

    Accepted forms (extra prose around them is tolerated):
        "2"                -> Selected(candidate 2)
        "NONE: atom model" -> RejectedWithSuggestion (only when allowed)
        "NONE" / "NONE: <long explanation>" -> RejectedNoSuggestion (only when allowed)

    Anything else selects the first candidate.
    """
    if not candidates:
        return RejectedNoSuggestion()

    reply = (text or "").strip()

    if allow_keyword_suggestion:
        none_match = NONE_WITH_KEYWORD_PATTERN.search(reply)
        if none_match:
            suggestion = _usable_suggestion(none_match.group(1))
            if suggestion:
                logger.info(f"      No match. Model suggests: '{suggestion}'")
                return RejectedWithSuggestion(keyword=suggestion)
            logger.info("      Model rejected all images without a usable keyword")
            return RejectedNoSuggestion()
        if BARE_NONE_PATTERN.search(reply) and not NUMBER_PATTERN.search(reply):
            logger.info("      Model rejected all images without a keyword")
            return RejectedNoSuggestion()

    number_match = NUMBER_PATTERN.search(reply)
    if number_match:
        idx = int(number_match.group(1)) - 1
        if 0 <= idx < len(candidates):
            logger.info(f"      Selected image {idx + 1}")
            return Selected(url=candidates[idx].candidate.display_url)

    logger.info("      Unrecognized reply, using first available image")
    return Selected(url=candidates[0].candidate.display_url)


def build_verification_contents(
    candidates: Sequence[EncodedCandidate],
    slide_title: str,
    slide_context: str,
    keywords: str,
    allow_keyword_suggestion: bool,
) -> List[Any]:
    """Build the ordered text/image parts of one verification request."""
    parts: List[Any] = [
        types.Part.from_text(text=(
            f'Select the best image for an educational slide about: "{slide_title}"\n'
            f'Keywords: "{keywords}"\n'
            f'Context: {slide_context[:200]}\n\n'
        )),
    ]

    for i, item in enumerate(candidates, 1):
        parts.append(types.Part.from_text(text=f"Image {i}: "))
        parts.append(types.Part.from_bytes(data=item.data, mime_type=item.mime_type))
        parts.append(types.Part.from_text(text="\n"))

    n = len(candidates)
    if allow_keyword_suggestion:
        instruction = (
            f'\nWhich image best matches "{slide_title}"?\n'
            f'Current search: "{keywords}"\n\n'
            "RESPOND WITH ONLY ONE OF:\n"
            f"- A number (1-{n}) - pick the most relevant image for the topic/slide/keyword\n"
            '- "NONE: [different 2-4 word search term]" - ONLY if nothing is remotely relevant\n\n'
            f'IMPORTANT: If you say NONE, you must suggest a DIFFERENT keyword than "{keywords}".\n'
            'Good examples: "atom diagram", "neural network visualization", "database schema"\n'
            "DO NOT repeat the current keyword. DO NOT explain. Just number or NONE with new keyword."
        )
    else:
        instruction = f"\nBest image? Reply with ONLY a number (1-{n}):"
    parts.append(types.Part.from_text(text=instruction))
    return parts


class ImageVerifier:
    """Service that asks a vision model to choose among encoded candidates"""

    def __init__(
        self,
        generate: Optional[Callable[..., Awaitable[str]]] = None,
        limiter: Optional[IntervalLimiter] = None,
    ):
        self.model = config.image_analysis_model
        self.max_candidates = config.max_oracle_candidates
        self._generate = generate or generate_text
        self._limiter = limiter
        self.calls = 0

    @property
    def limiter(self) -> IntervalLimiter:
        return self._limiter or get_analysis_limiter()

    async def verify(
        self,
        encoded: Sequence[EncodedCandidate],
        slide_title: str,
        slide_context: str,
        keywords: str,
        allow_keyword_suggestion: bool,
    ) -> ResolutionResult:
        """
        Choose the best candidate for a slide, or reject them all.

        Args:
            encoded: Successfully encoded candidates (may be empty)
            slide_title: Slide title
            slide_context: Slide text used as context
            keywords: Keyword the candidates were found with
            allow_keyword_suggestion: Whether the model may answer NONE with a new keyword

        Returns:
            Selected, RejectedWithSuggestion or RejectedNoSuggestion. Never raises.
        """
        logger.info(f"   AI analysis for: '{slide_title[:40]}' ({len(encoded)} images)")

        if not encoded:
            logger.info("      No images could be loaded")
            if allow_keyword_suggestion:
                return RejectedWithSuggestion(keyword=keywords)
            return RejectedNoSuggestion()

        submitted = select_oracle_candidates(encoded, self.max_candidates)
        contents = build_verification_contents(
            submitted,
            slide_title,
            slide_context,
            keywords,
            allow_keyword_suggestion,
        )

        await self.limiter.wait()
        self.calls += 1
        try:
            reply = await self._generate(
                self.model,
                contents,
                operation_name="image_analysis",
            )
        except Exception as exc:
            logger.warning(f"      AI selection failed: {exc}")
            return Selected(url=submitted[0].candidate.display_url)

        logger.info(f"      AI: {reply[:120]}")
        return parse_selection_response(reply, submitted, allow_keyword_suggestion)


# Global singleton
_image_verifier: Optional[ImageVerifier] = None


def get_image_verifier() -> ImageVerifier:
    """Get or create the global image verifier"""
    global _image_verifier
    if _image_verifier is None:
        _image_verifier = ImageVerifier()
    return _image_verifier


# Convenience function
async def verify(
    encoded: Sequence[EncodedCandidate],
    slide_title: str,
    slide_context: str,
    keywords: str,
    allow_keyword_suggestion: bool,
) -> ResolutionResult:
    """Verify candidates with the global verifier"""
    return await get_image_verifier().verify(
        encoded, slide_title, slide_context, keywords, allow_keyword_suggestion
    )
