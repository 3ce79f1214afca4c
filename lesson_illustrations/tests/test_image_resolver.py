"""
Unit tests for lesson_illustrations/pipelines/image_resolver.py

Tests the keyword negotiation loop with mocked search, download and model
calls. No real API calls are made.

Run with: python -m pytest lesson_illustrations/tests/test_image_resolver.py -v
"""
import unittest
from unittest.mock import AsyncMock, MagicMock
from typing import Dict, List, Optional, Sequence

from lesson_illustrations.types import ImageCandidate, EncodedCandidate, Exhausted, Selected
from lesson_illustrations.pipelines.image_resolver import ImageResolver
from lesson_illustrations.services.gemini_client import IntervalLimiter
from lesson_illustrations.services.image_verifier import ImageVerifier
from lesson_illustrations.services.resolution_cache import ResolutionCache
from lesson_illustrations.utils.keywords import placeholder_url


# =============================================================================
# Test Fixtures
# =============================================================================

def make_candidates(keyword: str, count: int = 3) -> List[ImageCandidate]:
    slug = keyword.replace(" ", "_")
    return [
        ImageCandidate(
            analysis_url=f"https://example.com/{slug}/200px-{i}.jpg",
            display_url=f"https://example.com/{slug}/600px-{i}.jpg",
            source="wikimedia",
        )
        for i in range(count)
    ]


def encode_all(candidates: Sequence[ImageCandidate]) -> List[EncodedCandidate]:
    return [EncodedCandidate(candidate=c, data=b"x" * 1000, mime_type="image/jpeg") for c in candidates]


def make_source(results: Dict[str, List[ImageCandidate]]) -> MagicMock:
    source = MagicMock()
    source.fetch_candidates.side_effect = lambda keywords: results.get(keywords, [])
    return source


def make_suggester(suggestions: Optional[List[Optional[str]]] = None) -> MagicMock:
    suggester = MagicMock()
    if suggestions is None:
        suggester.suggest = AsyncMock(return_value=None)
    else:
        suggester.suggest = AsyncMock(side_effect=suggestions)
    return suggester


def make_resolver(
    results: Dict[str, List[ImageCandidate]],
    replies: Optional[List[str]] = None,
    suggestions: Optional[List[Optional[str]]] = None,
    encode=None,
    cache: Optional[ResolutionCache] = None,
    max_attempts: Optional[int] = None,
) -> ImageResolver:
    verifier = ImageVerifier(
        generate=AsyncMock(side_effect=list(replies or [])),
        limiter=IntervalLimiter(0),
    )
    return ImageResolver(
        source=make_source(results),
        verifier=verifier,
        suggester=make_suggester(suggestions),
        cache=cache if cache is not None else ResolutionCache(),
        encode=encode or AsyncMock(side_effect=encode_all),
        max_attempts=max_attempts,
    )


# =============================================================================
# Test Cases
# =============================================================================

class TestFirstAttemptSelection(unittest.IsolatedAsyncioTestCase):
    """Tests for the happy path."""

    async def test_selects_model_choice(self):
        resolver = make_resolver({"mitochondria": make_candidates("mitochondria")}, replies=["2"])

        outcome = await resolver.resolve_detailed("Cell Energy", "Mitochondria make ATP", "mitochondria")

        self.assertEqual(outcome.url, "https://example.com/mitochondria/600px-1.jpg")
        self.assertEqual(outcome.result, Selected(outcome.url))
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(outcome.oracle_calls, 1)
        self.assertFalse(outcome.is_placeholder)
        self.assertEqual(resolver.cache.get("Mitochondria"), outcome.url)

    async def test_single_candidate_shortcut(self):
        """One candidate is used as-is: no download and no model call."""
        resolver = make_resolver({"rare fossil": make_candidates("rare fossil", 1)})

        url = await resolver.resolve("Fossils", "ctx", "rare fossil")

        self.assertEqual(url, "https://example.com/rare_fossil/600px-0.jpg")
        resolver.encode.assert_not_called()
        self.assertEqual(resolver.verifier.calls, 0)

    async def test_rejection_without_keyword_gives_placeholder(self):
        resolver = make_resolver({"atom": make_candidates("atom")}, replies=["NONE"])

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertEqual(outcome.url, placeholder_url("atom"))
        self.assertTrue(outcome.is_placeholder)
        self.assertEqual(outcome.oracle_calls, 1)

    async def test_suggestion_equal_to_current_keyword_gives_placeholder(self):
        resolver = make_resolver({"atom": make_candidates("atom")}, replies=["NONE: Atom"])

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertEqual(outcome.url, placeholder_url("atom"))
        self.assertEqual(outcome.attempts, 1)


class TestKeywordNegotiation(unittest.IsolatedAsyncioTestCase):
    """Tests for retries with alternate keywords."""

    async def test_retries_with_model_suggested_keyword(self):
        results = {
            "atom": make_candidates("atom"),
            "bohr model": make_candidates("bohr model"),
        }
        resolver = make_resolver(results, replies=["NONE: bohr model", "3"])

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertEqual(outcome.url, "https://example.com/bohr_model/600px-2.jpg")
        self.assertEqual(outcome.keywords_tried, ["atom", "bohr model"])
        self.assertEqual(outcome.oracle_calls, 2)
        # Only the first attempt may suggest a keyword
        second_prompt = resolver.verifier._generate.call_args_list[1].args[1][-1].text
        self.assertNotIn("NONE", second_prompt)
        # Cached under the keyword that was asked for
        self.assertEqual(resolver.cache.get("atom"), outcome.url)
        self.assertNotIn("bohr model", resolver.cache)

    async def test_empty_search_asks_for_alternate_keyword(self):
        results = {"spacetime curvature": make_candidates("spacetime curvature")}
        resolver = make_resolver(results, replies=["1"], suggestions=["spacetime curvature"])

        outcome = await resolver.resolve_detailed("Relativity", "ctx", "gravity well")

        self.assertEqual(outcome.url, "https://example.com/spacetime_curvature/600px-0.jpg")
        self.assertEqual(outcome.keywords_tried, ["gravity well", "spacetime curvature"])
        failed, title, _context = resolver.suggester.suggest.call_args.args
        self.assertEqual(failed, ["gravity well"])
        self.assertEqual(title, "Relativity")

    async def test_all_downloads_failing_is_treated_as_empty_search(self):
        """Three candidates that all fail to encode lead to an alternate keyword on attempt 2."""
        results = {
            "atom": make_candidates("atom"),
            "atom diagram": make_candidates("atom diagram"),
        }

        async def encode(candidates):
            if "/atom/" in candidates[0].analysis_url:
                return []
            return encode_all(candidates)

        resolver = make_resolver(results, replies=["2"], suggestions=["atom diagram"], encode=encode)

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertEqual(outcome.url, "https://example.com/atom_diagram/600px-1.jpg")
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(outcome.oracle_calls, 1)
        self.assertEqual(resolver.verifier.calls, 1)
        resolver.suggester.suggest.assert_awaited_once()

    async def test_search_failure_treated_as_empty(self):
        resolver = make_resolver({})
        resolver.source.fetch_candidates.side_effect = RuntimeError("DNS failure")

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertEqual(outcome.url, placeholder_url("atom"))


class TestUnfindableKeyword(unittest.IsolatedAsyncioTestCase):
    """Tests for exhaustion."""

    async def test_placeholder_after_four_attempts_without_model_calls(self):
        resolver = make_resolver({})

        outcome = await resolver.resolve_detailed("Quantum Gravity", "ctx", "quantum foam")

        self.assertEqual(outcome.url, "https://placehold.co/800x450/27272a/71717a?text=quantum%20foam")
        self.assertIsInstance(outcome.result, Exhausted)
        self.assertEqual(outcome.attempts, 4)
        self.assertEqual(outcome.oracle_calls, 0)
        self.assertEqual(resolver.verifier.calls, 0)
        self.assertEqual(resolver.source.fetch_candidates.call_count, 4)
        # No suggestion requested after the last attempt
        self.assertEqual(resolver.suggester.suggest.await_count, 3)

    async def test_zero_attempts_gives_placeholder_without_search(self):
        resolver = make_resolver({"atom": make_candidates("atom")}, max_attempts=0)

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "atom")

        self.assertTrue(outcome.is_placeholder)
        self.assertEqual(outcome.attempts, 0)
        resolver.source.fetch_candidates.assert_not_called()

    async def test_attempts_bounded_with_endless_suggestions(self):
        resolver = make_resolver({}, suggestions=[f"idea {i}" for i in range(10)])

        outcome = await resolver.resolve_detailed("Topic", "ctx", "nothing")

        self.assertEqual(outcome.attempts, 4)
        self.assertEqual(outcome.keywords_tried, ["nothing", "idea 0", "idea 1", "idea 2"])
        self.assertTrue(outcome.is_placeholder)

    async def test_oracle_calls_bounded(self):
        """Even when every attempt reaches the model, at most four calls are made."""
        results = {k: make_candidates(k) for k in ["a", "b"]}
        resolver = make_resolver(results, replies=["NONE: b"] + ["NONE: c"] * 10)

        outcome = await resolver.resolve_detailed("Topic", "ctx", "a")

        self.assertLessEqual(outcome.oracle_calls, 4)
        self.assertLessEqual(resolver.verifier.calls, 4)
        # Second attempt may not reject, so the first candidate is used
        self.assertEqual(outcome.url, "https://example.com/b/600px-0.jpg")


class TestResolutionCache(unittest.IsolatedAsyncioTestCase):
    """Tests for memoization."""

    async def test_cache_hit_skips_all_work(self):
        cache = ResolutionCache()
        cache.set("atom", "https://example.com/cached.jpg")
        resolver = make_resolver({"atom": make_candidates("atom")}, cache=cache)

        outcome = await resolver.resolve_detailed("Atoms", "ctx", "  ATOM ")

        self.assertTrue(outcome.from_cache)
        self.assertEqual(outcome.url, "https://example.com/cached.jpg")
        resolver.source.fetch_candidates.assert_not_called()
        self.assertEqual(resolver.verifier.calls, 0)

    async def test_placeholder_is_cached(self):
        resolver = make_resolver({})

        first = await resolver.resolve("Quantum Gravity", "ctx", "quantum foam")
        second = await resolver.resolve_detailed("Other slide", "ctx", "Quantum Foam")

        self.assertEqual(first, second.url)
        self.assertTrue(second.from_cache)
        self.assertTrue(second.is_placeholder)
        self.assertEqual(resolver.source.fetch_candidates.call_count, 4)


if __name__ == "__main__":
    unittest.main()
