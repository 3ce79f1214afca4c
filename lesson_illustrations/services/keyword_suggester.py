"""
Alternate keyword requests for searches that returned nothing usable.
"""
import logging
from typing import Awaitable, Callable, Optional, Sequence

from lesson_illustrations.config import config
from lesson_illustrations.services.gemini_client import generate_text
from lesson_illustrations.utils.keywords import normalize_keyword, strip_edge_quotes

logger = logging.getLogger(__name__)


def build_suggestion_prompt(
    failed_keywords: Sequence[str],
    slide_title: str,
    slide_context: str,
) -> str:
    failed_list = '", "'.join(failed_keywords)
    return (
        f"Finding images from Wikimedia Commons for: {slide_title}\n"
        f"Context: {slide_context[:200]}\n\n"
        f'FAILED SEARCHES (returned 0 results): "{failed_list}"\n\n'
        "These keywords didn't work. Suggest ONE different search phrase (2-4 words, no commas).\n"
        "Try a more specific real object, historical photo, or well-known visual.\n"
        "Reply with ONLY the search phrase, nothing else."
    )


def clean_suggestion(text: str, failed_keywords: Sequence[str]) -> Optional[str]:
    """
    Validate a suggested phrase.

    Returns None when the reply is empty, contains a comma (the model ignored
    the single-phrase instruction) or repeats a keyword that already failed.
    """
    lines = (text or "").strip().splitlines()
    suggestion = strip_edge_quotes(lines[0] if lines else "")
    if not suggestion or ',' in suggestion:
        return None
    failed = {normalize_keyword(k) for k in failed_keywords}
    if normalize_keyword(suggestion) in failed:
        return None
    return suggestion


class KeywordSuggester:
    """Asks a text model for a replacement search phrase"""

    def __init__(self, generate: Optional[Callable[..., Awaitable[str]]] = None):
        self.model = config.keyword_model
        self._generate = generate or generate_text

    async def suggest(
        self,
        failed_keywords: Sequence[str],
        slide_title: str,
        slide_context: str,
    ) -> Optional[str]:
        """
        Request a new 2-4 word search phrase avoiding every failed keyword.

        Returns:
            The phrase, or None when the model failed or gave nothing usable
        """
        prompt = build_suggestion_prompt(failed_keywords, slide_title, slide_context)
        try:
            reply = await self._generate(
                self.model,
                prompt,
                operation_name="keyword_suggestion",
                disable_thinking=True,
            )
        except Exception as exc:
            logger.warning(f"   Could not get AI keyword suggestion: {exc}")
            return None

        suggestion = clean_suggestion(reply, failed_keywords)
        if suggestion:
            logger.info(f"   AI suggests: '{suggestion}'")
        else:
            logger.info(f"   Ignoring unusable suggestion: '{reply[:60]}'")
        return suggestion


# Global singleton
_keyword_suggester: Optional[KeywordSuggester] = None


def get_keyword_suggester() -> KeywordSuggester:
    """Get or create the global keyword suggester"""
    global _keyword_suggester
    if _keyword_suggester is None:
        _keyword_suggester = KeywordSuggester()
    return _keyword_suggester
