"""
Unit tests for lesson_illustrations/services/image_sources.py

All HTTP calls are mocked; no real API calls are made.

Run with: python -m pytest lesson_illustrations/tests/test_image_sources.py -v
"""
import unittest
from unittest.mock import patch, MagicMock
from typing import Any, Dict, List

import requests

from lesson_illustrations.services.image_sources import ImageSourceService


# =============================================================================
# Test Fixtures
# =============================================================================

def make_mock_response(payload: Any) -> MagicMock:
    """Create a mock requests response returning ``payload`` as JSON."""
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    return response


def make_wikimedia_payload(pages: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"query": {"pages": {str(i): p for i, p in enumerate(pages)}}}


def make_wikimedia_page(name: str, mime: str = "image/jpeg", thumb: bool = True) -> Dict[str, Any]:
    info = {
        "url": f"https://upload.wikimedia.org/wikipedia/commons/a/ab/{name}",
        "mime": mime,
    }
    if thumb:
        info["thumburl"] = f"https://upload.wikimedia.org/wikipedia/commons/thumb/a/ab/{name}/200px-{name}"
    return {"title": f"File:{name}", "imageinfo": [info]}


def make_pixabay_payload(count: int) -> Dict[str, Any]:
    return {
        "hits": [
            {
                "previewURL": f"https://cdn.pixabay.com/photo/preview_{i}.jpg",
                "webformatURL": f"https://pixabay.com/get/web_{i}.jpg",
            }
            for i in range(count)
        ]
    }


def make_service(pixabay_key: str = "") -> ImageSourceService:
    service = ImageSourceService()
    service.pixabay_key = pixabay_key
    return service


# =============================================================================
# Test Cases
# =============================================================================

class TestWikimediaSearch(unittest.TestCase):
    """Tests for Wikimedia Commons search."""

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_builds_bitmap_query(self, mock_get):
        """Should request bitmap files in the file namespace at analysis width."""
        mock_get.return_value = make_mock_response(make_wikimedia_payload([]))

        make_service().search_wikimedia('"cell membrane"', 3)

        params = mock_get.call_args.kwargs["params"]
        self.assertEqual(params["gsrsearch"], "cell membrane filetype:bitmap -fileres:0")
        self.assertEqual(params["gsrnamespace"], "6")
        self.assertEqual(params["gsrlimit"], "6")
        self.assertEqual(params["iiurlwidth"], "200")
        self.assertIn("User-Agent", mock_get.call_args.kwargs["headers"])

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_gsrlimit_is_capped(self, mock_get):
        mock_get.return_value = make_mock_response(make_wikimedia_payload([]))

        make_service().search_wikimedia("atom", 10)

        self.assertEqual(mock_get.call_args.kwargs["params"]["gsrlimit"], "8")

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_display_variant_is_rewritten(self, mock_get):
        """Thumbnail width in the URL path should become the display width."""
        mock_get.return_value = make_mock_response(
            make_wikimedia_payload([make_wikimedia_page("Cell.jpg")])
        )

        candidates = make_service().search_wikimedia("cell", 3)

        self.assertEqual(len(candidates), 1)
        self.assertIn("/200px-", candidates[0].analysis_url)
        self.assertIn("/600px-", candidates[0].display_url)
        self.assertNotIn("/200px-", candidates[0].display_url)
        self.assertEqual(candidates[0].source, "wikimedia")

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_filters_non_images_and_missing_urls(self, mock_get):
        pages = [
            make_wikimedia_page("Doc.pdf", mime="application/pdf"),
            {"title": "File:Broken.jpg"},
            make_wikimedia_page("Full.png", thumb=False),
            make_wikimedia_page("Good.jpg"),
        ]
        mock_get.return_value = make_mock_response(make_wikimedia_payload(pages))

        candidates = make_service().search_wikimedia("anything", 3)

        self.assertEqual(len(candidates), 2)
        # No thumbnail: the original URL serves as both variants
        self.assertTrue(candidates[0].analysis_url.endswith("Full.png"))
        self.assertEqual(candidates[0].analysis_url, candidates[0].display_url)

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_truncates_to_count(self, mock_get):
        pages = [make_wikimedia_page(f"Img{i}.jpg") for i in range(6)]
        mock_get.return_value = make_mock_response(make_wikimedia_payload(pages))

        candidates = make_service().search_wikimedia("anything", 3)

        self.assertEqual(len(candidates), 3)

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_network_error_returns_empty(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")

        self.assertEqual(make_service().search_wikimedia("atom", 3), [])

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_malformed_payload_returns_empty(self, mock_get):
        mock_get.return_value = make_mock_response(["not", "a", "dict"])

        self.assertEqual(make_service().search_wikimedia("atom", 3), [])

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_empty_keyword_skips_request(self, mock_get):
        self.assertEqual(make_service().search_wikimedia('""', 3), [])
        mock_get.assert_not_called()


class TestPixabaySearch(unittest.TestCase):
    """Tests for Pixabay search."""

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_skipped_without_key(self, mock_get):
        self.assertEqual(make_service().search_pixabay("forest", 2), [])
        mock_get.assert_not_called()

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_query_is_sanitized(self, mock_get):
        """Only alphanumerics and the first five words are sent."""
        mock_get.return_value = make_mock_response(make_pixabay_payload(0))

        make_service("key").search_pixabay("rain-forest: canopy, layers of green trees today", 2)

        params = mock_get.call_args.kwargs["params"]
        self.assertEqual(params["q"], "rainforest canopy layers of green")
        self.assertEqual(params["per_page"], 4)
        self.assertEqual(params["orientation"], "horizontal")
        self.assertEqual(params["safesearch"], "true")

    @patch("lesson_illustrations.services.image_sources.requests.get")
    def test_maps_preview_and_webformat(self, mock_get):
        mock_get.return_value = make_mock_response(make_pixabay_payload(4))

        candidates = make_service("key").search_pixabay("forest", 2)

        self.assertEqual(len(candidates), 2)
        self.assertEqual(candidates[0].analysis_url, "https://cdn.pixabay.com/photo/preview_0.jpg")
        self.assertEqual(candidates[0].display_url, "https://pixabay.com/get/web_0.jpg")
        self.assertEqual(candidates[0].source, "pixabay")


class TestFetchCandidates(unittest.TestCase):
    """Tests for source ordering and fallback."""

    def test_technical_keyword_tries_wikimedia_first(self):
        service = make_service("key")
        service.search_wikimedia = MagicMock(return_value=["wiki"])
        service.search_pixabay = MagicMock(return_value=["pix"])

        self.assertEqual(service.fetch_candidates("transistor"), ["wiki"])
        service.search_pixabay.assert_not_called()
        service.search_wikimedia.assert_called_once_with("transistor", 3)

    def test_nature_keyword_tries_pixabay_first(self):
        service = make_service("key")
        service.search_wikimedia = MagicMock(return_value=["wiki"])
        service.search_pixabay = MagicMock(return_value=["pix"])

        self.assertEqual(service.fetch_candidates("forest canopy"), ["pix"])
        service.search_wikimedia.assert_not_called()
        service.search_pixabay.assert_called_once_with("forest canopy", 2)

    def test_falls_back_to_other_source(self):
        service = make_service("key")
        service.search_wikimedia = MagicMock(return_value=[])
        service.search_pixabay = MagicMock(return_value=["pix"])

        self.assertEqual(service.fetch_candidates("transistor"), ["pix"])

    def test_both_empty(self):
        service = make_service()
        service.search_wikimedia = MagicMock(return_value=[])
        service.search_pixabay = MagicMock(return_value=[])

        self.assertEqual(service.fetch_candidates("xyzzy"), [])

    def test_zero_count_searches_nothing(self):
        service = make_service("key")
        service.search_wikimedia = MagicMock(return_value=["wiki"])
        service.search_pixabay = MagicMock(return_value=["pix"])

        self.assertEqual(service.fetch_candidates("transistor", count=0), [])
        service.search_wikimedia.assert_not_called()
        service.search_pixabay.assert_not_called()

    def test_explicit_count_used_for_both_sources(self):
        service = make_service("key")
        service.search_wikimedia = MagicMock(return_value=[])
        service.search_pixabay = MagicMock(return_value=[])

        service.fetch_candidates("transistor", count=5)

        service.search_wikimedia.assert_called_once_with("transistor", 5)
        service.search_pixabay.assert_called_once_with("transistor", 5)


if __name__ == "__main__":
    unittest.main()
