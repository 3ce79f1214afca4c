"""
Per-module image selection.

Walks a module's image blocks one at a time, resolving each keyword and
emitting an ImageResolvedEvent as soon as it is known. A fixed cooldown
between images keeps the vision model from being hit in bursts.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from lesson_illustrations.types import (
    ImageBlock,
    ImageRequest,
    ImageResolvedEvent,
    Slide,
    IMAGE_PENDING,
)
from lesson_illustrations.config import config
from lesson_illustrations.pipelines.image_resolver import ImageResolver, get_image_resolver
from lesson_illustrations.utils.keywords import is_placeholder_url, placeholder_url

logger = logging.getLogger(__name__)

ImageReadyCallback = Callable[[ImageResolvedEvent], None]

SLIDE_CONTEXT_CHARS = 200


def slide_context(slide: Slide) -> str:
    """Text blocks of a slide joined, truncated to the context size."""
    texts = [b.text for b in slide.blocks if getattr(b, "type", None) == "text"]
    return " ".join(texts)[:SLIDE_CONTEXT_CHARS]


def extract_image_requests(
    module_index: int,
    slides: Sequence[Slide],
    include_pending: bool = True,
) -> List[ImageRequest]:
    """
    Collect every image block that has keywords and no resolved URL.

    Pending blocks are included by default: a block can be left pending by a
    session that ended before its image arrived. Pass
    ``include_pending=False`` when their requests are still in flight.
    """
    requests: List[ImageRequest] = []
    for slide_idx, slide in enumerate(slides):
        context = slide_context(slide)
        for block_idx, block in enumerate(slide.blocks):
            if not isinstance(block, ImageBlock):
                continue
            if not block.keywords.strip() or block.is_resolved:
                continue
            if block.status == IMAGE_PENDING and not include_pending:
                continue
            requests.append(ImageRequest(
                module_index=module_index,
                slide_index=slide_idx,
                block_index=block_idx,
                keywords=block.keywords,
                slide_title=slide.title,
                slide_context=context,
            ))
    return requests


async def resolve_requests(
    requests: Sequence[ImageRequest],
    on_image_ready: ImageReadyCallback,
    resolver: Optional[ImageResolver] = None,
    cooldown_seconds: Optional[float] = None,
) -> List[ImageResolvedEvent]:
    """
    Resolve requests sequentially, emitting one event per request.

    Never raises for a single image: an unexpected failure yields a
    placeholder event so the slot is still filled.
    """
    image_resolver = resolver or get_image_resolver()
    cooldown = config.image_cooldown if cooldown_seconds is None else cooldown_seconds
    events: List[ImageResolvedEvent] = []

    for i, req in enumerate(requests):
        if i > 0 and cooldown > 0:
            logger.info(f"   Cooldown: waiting {cooldown:.0f}s before next image...")
            await asyncio.sleep(cooldown)

        try:
            url = await image_resolver.resolve(req.slide_title, req.slide_context, req.keywords)
        except Exception as e:
            logger.warning(f"Failed to load image for slide {req.slide_index}: {e}")
            url = placeholder_url(req.keywords)

        event = ImageResolvedEvent(
            module_index=req.module_index,
            slide_index=req.slide_index,
            block_index=req.block_index,
            keywords=req.keywords,
            url=url,
            is_placeholder=is_placeholder_url(url),
        )
        events.append(event)
        try:
            on_image_ready(event)
        except Exception as e:
            logger.error(f"Image-ready callback failed for slide {req.slide_index}: {e}")

    return events


async def select_images_for_module(
    module_index: int,
    slides: Sequence[Slide],
    on_image_ready: ImageReadyCallback,
    resolver: Optional[ImageResolver] = None,
    cooldown_seconds: Optional[float] = None,
) -> List[ImageResolvedEvent]:
    """
    Select images for every unresolved image block of a module.

    Args:
        module_index: Index of the module within the course
        slides: The module's slides
        on_image_ready: Called with each ImageResolvedEvent as it is produced
        resolver: Optional resolver, defaults to the global one
        cooldown_seconds: Pause between images, defaults to config.image_cooldown

    Returns:
        The emitted events, in emission order
    """
    requests = extract_image_requests(module_index, slides)
    if not requests:
        logger.info(f"No images to select for module {module_index + 1}")
        return []

    logger.info(f"On-demand image selection: {len(requests)} images for module {module_index + 1}")
    events = await resolve_requests(requests, on_image_ready, resolver, cooldown_seconds)
    logger.info(f"✅ Module {module_index + 1} image selection complete")
    return events
