"""
Shared course state and the progressive merge rules.

The course is held as an immutable snapshot. Every writer (module loaded,
image resolved, images requested) derives a new snapshot from the current
one, so readers always see a complete version and concurrent writers never
clobber each other's work.
"""
import dataclasses
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from lesson_illustrations.types import (
    Block,
    Course,
    ImageBlock,
    ImageRequest,
    ImageResolvedEvent,
    Module,
    Slide,
    IMAGE_PENDING,
    IMAGE_RESOLVED,
    IMAGE_UNREQUESTED,
)
from lesson_illustrations.utils.keywords import is_placeholder_url, normalize_keyword

logger = logging.getLogger(__name__)

Subscriber = Callable[[Course, int], None]


def _keep_held_image(held: ImageBlock, fresh: ImageBlock) -> bool:
    if held.has_real_image:
        return True
    # A pending block has its result on the way, matching the held keywords.
    # Like a placeholder it only gives way to a real image.
    return (held.is_resolved or held.status == IMAGE_PENDING) and not fresh.has_real_image


def _merge_blocks(held_blocks: Sequence[Block], fresh_blocks: Sequence[Block]) -> Tuple[Block, ...]:
    merged: List[Block] = []
    for idx, fresh in enumerate(fresh_blocks):
        held = held_blocks[idx] if idx < len(held_blocks) else None
        if (
            isinstance(fresh, ImageBlock)
            and isinstance(held, ImageBlock)
            and _keep_held_image(held, fresh)
        ):
            merged.append(held)
        else:
            merged.append(fresh)
    return tuple(merged)


def merge_module_slides(held: Sequence[Slide], fresh: Sequence[Slide]) -> Tuple[Slide, ...]:
    """
    Merge freshly generated slides with the slides currently held for the same module.

    Slide text and non-image blocks always come from ``fresh``. A held image
    block resolved to a real image is always kept. A held placeholder or
    pending block is kept unless the fresh block brings a real image; a
    pending block's result then lands on the held keywords, so the outcome is
    the same whether that result arrives before or after the merge. Applying
    the merge twice gives the same result as applying it once.
    """
    merged: List[Slide] = []
    for idx, fresh_slide in enumerate(fresh):
        held_slide = held[idx] if idx < len(held) else None
        if held_slide is None:
            merged.append(fresh_slide)
            continue
        merged.append(dataclasses.replace(
            fresh_slide,
            blocks=_merge_blocks(held_slide.blocks, fresh_slide.blocks),
        ))
    return tuple(merged)


def _replace_module(course: Course, module_index: int, module: Module) -> Course:
    modules = list(course.modules)
    modules[module_index] = module
    return dataclasses.replace(course, modules=tuple(modules))


def _replace_block(module: Module, slide_index: int, block_index: int, block: Block) -> Module:
    slide = module.slides[slide_index]
    blocks = list(slide.blocks)
    blocks[block_index] = block
    slides = list(module.slides)
    slides[slide_index] = dataclasses.replace(slide, blocks=tuple(blocks))
    return dataclasses.replace(module, slides=tuple(slides))


def _locate_image_block(
    course: Course,
    module_index: int,
    slide_index: int,
    block_index: int,
) -> Optional[ImageBlock]:
    if not 0 <= module_index < len(course.modules):
        return None
    slides = course.modules[module_index].slides
    if not 0 <= slide_index < len(slides):
        return None
    blocks = slides[slide_index].blocks
    if not 0 <= block_index < len(blocks):
        return None
    block = blocks[block_index]
    return block if isinstance(block, ImageBlock) else None


def with_module_loaded(course: Course, module_index: int, slides: Sequence[Slide]) -> Course:
    """Course with ``slides`` merged into module ``module_index`` and the module marked loaded."""
    module = course.modules[module_index]
    merged = merge_module_slides(module.slides, slides)
    return _replace_module(
        course,
        module_index,
        dataclasses.replace(module, slides=merged, is_loaded=True),
    )


def with_image_resolved(course: Course, event: ImageResolvedEvent) -> Course:
    """
    Course with the event's URL written into its block, when that is allowed.

    The write is skipped (and ``course`` returned unchanged) when the block no
    longer exists, is not an image, carries different keywords (it was
    regenerated since the request was made), already shows a real image, or
    already shows a placeholder and the event only brings another one.
    """
    block = _locate_image_block(course, event.module_index, event.slide_index, event.block_index)
    if block is None:
        logger.debug(
            f"Dropping image for missing block m{event.module_index}/s{event.slide_index}/b{event.block_index}"
        )
        return course
    if normalize_keyword(block.keywords) != normalize_keyword(event.keywords):
        logger.debug(f"Dropping stale image for '{event.keywords}' (block now '{block.keywords}')")
        return course
    if block.has_real_image:
        return course
    if block.is_resolved and is_placeholder_url(event.url):
        return course

    resolved = dataclasses.replace(block, image_url=event.url, status=IMAGE_RESOLVED)
    module = _replace_block(
        course.modules[event.module_index],
        event.slide_index,
        event.block_index,
        resolved,
    )
    return _replace_module(course, event.module_index, module)


def with_images_pending(course: Course, requests: Iterable[ImageRequest]) -> Course:
    """Course with every still-unrequested block of ``requests`` marked pending."""
    updated = course
    for req in requests:
        block = _locate_image_block(updated, req.module_index, req.slide_index, req.block_index)
        if block is None or block.status != IMAGE_UNREQUESTED:
            continue
        module = _replace_block(
            updated.modules[req.module_index],
            req.slide_index,
            req.block_index,
            dataclasses.replace(block, status=IMAGE_PENDING),
        )
        updated = _replace_module(updated, req.module_index, module)
    return updated


class CourseStore:
    """Versioned holder of the current course snapshot"""

    def __init__(self, course: Course):
        self._snapshot = course
        self._version = 0
        self._subscribers: List[Subscriber] = []

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> Course:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(course, version)`` after every change; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def update(self, mutate: Callable[[Course], Course], reason: str = "") -> bool:
        """
        Replace the snapshot with ``mutate(snapshot)``.

        Runs without awaiting, so on the event loop the read-modify-write is atomic.

        Returns:
            True when a new version was published
        """
        current = self._snapshot
        updated = mutate(current)
        if updated is current or updated == current:
            return False

        self._snapshot = updated
        self._version += 1
        logger.debug(f"Course v{self._version}: {reason}")

        for callback in list(self._subscribers):
            try:
                callback(updated, self._version)
            except Exception as e:
                logger.error(f"Course subscriber failed: {e}")
        return True

    def apply_module_loaded(self, module_index: int, slides: Sequence[Slide]) -> bool:
        if not 0 <= module_index < len(self._snapshot.modules):
            logger.warning(f"Ignoring content for unknown module index {module_index}")
            return False
        return self.update(
            lambda course: with_module_loaded(course, module_index, slides),
            reason=f"module {module_index + 1} loaded",
        )

    def apply_image_resolved(self, event: ImageResolvedEvent) -> bool:
        return self.update(
            lambda course: with_image_resolved(course, event),
            reason=f"image m{event.module_index}/s{event.slide_index}/b{event.block_index}",
        )

    def mark_images_pending(self, requests: Sequence[ImageRequest]) -> bool:
        return self.update(
            lambda course: with_images_pending(course, requests),
            reason=f"{len(requests)} images requested",
        )
