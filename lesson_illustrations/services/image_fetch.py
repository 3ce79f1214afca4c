"""
Download candidate images and validate them as inline payloads for the vision model.

Every failure here is absorbed: a candidate that cannot be downloaded or
validated is simply missing from the result.
"""
import asyncio
import io
import logging
from typing import List, Optional, Sequence

import requests
from PIL import Image, UnidentifiedImageError

from lesson_illustrations.types import ImageCandidate, EncodedCandidate
from lesson_illustrations.config import config

logger = logging.getLogger(__name__)


def _is_decodable_image(data: bytes) -> bool:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        return True
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        logger.debug(f"      Not a decodable image: {exc}")
        return False


def _download(url: str) -> Optional[tuple]:
    """Download ``url``; returns (bytes, mime_type) or None when validation fails."""
    headers = {"User-Agent": config.user_agent}
    with requests.get(url, headers=headers, timeout=config.image_fetch_timeout, stream=True) as response:
        if not response.ok:
            logger.debug(f"      HTTP {response.status_code} for {url[-50:]}")
            return None

        content_type = response.headers.get('content-type') or 'image/jpeg'
        mime_type = content_type.split(';')[0].strip().lower()
        if not mime_type.startswith('image/'):
            logger.debug(f"      Not an image ({mime_type}): {url[-50:]}")
            return None

        buffer = bytearray()
        for chunk in response.iter_content(chunk_size=64 * 1024):
            buffer.extend(chunk)
            if len(buffer) >= config.max_image_bytes:
                logger.debug(f"      Too large (>{config.max_image_bytes} bytes): {url[-50:]}")
                return None

    if len(buffer) <= config.min_image_bytes:
        logger.debug(f"      Too small ({len(buffer)} bytes): {url[-50:]}")
        return None
    return bytes(buffer), mime_type


def encode_candidate_sync(candidate: ImageCandidate) -> Optional[EncodedCandidate]:
    """
    Download and validate a candidate's analysis variant.

    Returns:
        EncodedCandidate, or None on any failure (timeout, non-2xx, wrong
        content type, undersized/oversized or undecodable payload)
    """
    url = candidate.analysis_url
    logger.debug(f"      [Fetch] {url[-50:]}")
    try:
        downloaded = _download(url)
    except requests.RequestException as exc:
        logger.debug(f"      Fetch failed for {url[-50:]}: {exc}")
        return None

    if downloaded is None:
        return None
    data, mime_type = downloaded

    if not _is_decodable_image(data):
        return None

    logger.debug(f"      [OK] {len(data) / 1024:.0f}KB {mime_type}")
    return EncodedCandidate(
        candidate=candidate,
        data=data,
        mime_type=mime_type,
    )


async def encode_candidate(candidate: ImageCandidate) -> Optional[EncodedCandidate]:
    """Async wrapper around :func:`encode_candidate_sync`."""
    try:
        return await asyncio.to_thread(encode_candidate_sync, candidate)
    except Exception as exc:
        logger.warning(f"      Unexpected encode failure for {candidate.analysis_url[-50:]}: {exc}")
        return None


async def encode_candidates(candidates: Sequence[ImageCandidate]) -> List[EncodedCandidate]:
    """
    Encode candidates concurrently.

    Order of the input is preserved; failed candidates are dropped.
    """
    if not candidates:
        return []
    results = await asyncio.gather(*(encode_candidate(c) for c in candidates))
    encoded = [r for r in results if r is not None]
    logger.info(f"      Encoded {len(encoded)}/{len(candidates)} candidates")
    return encoded
