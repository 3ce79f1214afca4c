"""
Shared types for the lesson illustration pipeline.

Lesson structures (Course / Module / Slide / blocks) are frozen dataclasses:
every update builds new objects with ``dataclasses.replace`` so a reader that
holds a snapshot never observes a half-applied write.
"""
from typing import Optional, Dict, Any, List, Tuple, Union
from dataclasses import dataclass, field

from lesson_illustrations.utils.keywords import is_placeholder_url


# ImageBlock.status values. JSON imageUrl equivalents:
# missing -> unrequested, null -> pending, string -> resolved.
IMAGE_UNREQUESTED = "unrequested"
IMAGE_PENDING = "pending"
IMAGE_RESOLVED = "resolved"


@dataclass(frozen=True)
class ImageRequest:
    """A single image slot that still needs a URL."""
    module_index: int
    slide_index: int
    block_index: int
    keywords: str
    slide_title: str = ""
    slide_context: str = ""


@dataclass
class ImageCandidate:
    """Image found by a media search, with a cheap and a display variant"""
    analysis_url: str
    display_url: str
    source: Optional[str] = None  # 'wikimedia', 'pixabay'


@dataclass
class EncodedCandidate:
    """Candidate whose analysis variant was downloaded and validated"""
    candidate: ImageCandidate
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


# -----------------------------------------------------------------------------
# Resolution results
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Selected:
    url: str


@dataclass(frozen=True)
class RejectedWithSuggestion:
    keyword: str


@dataclass(frozen=True)
class RejectedNoSuggestion:
    pass


@dataclass(frozen=True)
class Exhausted:
    url: str  # placeholder


ResolutionResult = Union[Selected, RejectedWithSuggestion, RejectedNoSuggestion, Exhausted]


@dataclass
class ResolutionOutcome:
    """Final URL for one request plus how the negotiation loop got there"""
    url: str
    keywords: str
    attempts: int = 0
    oracle_calls: int = 0
    keywords_tried: List[str] = field(default_factory=list)
    from_cache: bool = False
    is_placeholder: bool = False
    result: Optional[Union[Selected, Exhausted]] = None  # terminal state


# -----------------------------------------------------------------------------
# Lesson structure
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageBlock:
    """Image slot inside a slide"""
    keywords: str
    caption: Optional[str] = None
    position: Optional[str] = None  # hero | intro | grid
    image_url: Optional[str] = None
    status: str = IMAGE_UNREQUESTED  # unrequested | pending | resolved

    @property
    def type(self) -> str:
        return "image"

    @property
    def is_resolved(self) -> bool:
        return self.status == IMAGE_RESOLVED and self.image_url is not None

    @property
    def has_real_image(self) -> bool:
        """Resolved to something other than a placeholder."""
        return self.is_resolved and not is_placeholder_url(self.image_url)


@dataclass(frozen=True)
class ContentBlock:
    """Any non-image block (text, quiz, fun_fact, table, ...). Opaque to the pipeline."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.data.get("content") or "")


Block = Union[ImageBlock, ContentBlock]


@dataclass(frozen=True)
class Slide:
    id: str
    title: str
    blocks: Tuple[Block, ...] = ()


@dataclass(frozen=True)
class Module:
    id: str
    title: str
    description: str = ""
    slides: Tuple[Slide, ...] = ()
    is_loaded: bool = False


@dataclass(frozen=True)
class Course:
    id: str
    topic: str
    title: str
    description: str = ""
    modules: Tuple[Module, ...] = ()


@dataclass(frozen=True)
class ModuleGenerationJob:
    """Request handed to the lesson-generation collaborator"""
    course_title: str
    module_index: int
    title: str
    description: str
    slide_titles: Tuple[str, ...] = ()
    preceding_module_summaries: str = ""


@dataclass(frozen=True)
class ImageResolvedEvent:
    """Emitted once per resolved image block"""
    module_index: int
    slide_index: int
    block_index: int
    keywords: str
    url: str
    is_placeholder: bool = False


# Helper functions for type conversions
def image_block_to_dict(block: ImageBlock) -> Dict[str, Any]:
    """Convert ImageBlock to dict; ``imageUrl`` is omitted while unrequested."""
    result: Dict[str, Any] = {
        'type': 'image',
        'keywords': block.keywords,
    }
    if block.caption is not None:
        result['caption'] = block.caption
    if block.position is not None:
        result['position'] = block.position
    if block.status == IMAGE_PENDING:
        result['imageUrl'] = None
    elif block.status == IMAGE_RESOLVED:
        result['imageUrl'] = block.image_url
    return result


def block_to_dict(block: Block) -> Dict[str, Any]:
    """Convert any slide block to dict for serialization"""
    if isinstance(block, ImageBlock):
        return image_block_to_dict(block)
    return {'type': block.type, **block.data}


def slide_to_dict(slide: Slide) -> Dict[str, Any]:
    return {
        'id': slide.id,
        'title': slide.title,
        'blocks': [block_to_dict(b) for b in slide.blocks],
    }


def module_to_dict(module: Module) -> Dict[str, Any]:
    return {
        'id': module.id,
        'title': module.title,
        'description': module.description,
        'slides': [slide_to_dict(s) for s in module.slides],
        'isLoaded': module.is_loaded,
    }


def course_to_dict(course: Course) -> Dict[str, Any]:
    """Convert Course to dict for serialization"""
    return {
        'id': course.id,
        'topic': course.topic,
        'title': course.title,
        'description': course.description,
        'modules': [module_to_dict(m) for m in course.modules],
    }


def image_resolved_event_to_dict(event: ImageResolvedEvent) -> Dict[str, Any]:
    return {
        'moduleIndex': event.module_index,
        'slideIndex': event.slide_index,
        'blockIndex': event.block_index,
        'keywords': event.keywords,
        'url': event.url,
        'isPlaceholder': event.is_placeholder,
    }


def resolution_outcome_to_dict(outcome: ResolutionOutcome) -> Dict[str, Any]:
    return {
        'url': outcome.url,
        'keywords': outcome.keywords,
        'attempts': outcome.attempts,
        'oracle_calls': outcome.oracle_calls,
        'keywords_tried': outcome.keywords_tried,
        'from_cache': outcome.from_cache,
        'is_placeholder': outcome.is_placeholder,
        'state': type(outcome.result).__name__ if outcome.result is not None else None,
    }


def block_from_dict(data: Dict[str, Any]) -> Optional[Block]:
    """
    Build a block from its JSON form. Returns None for entries without a type.

    An image block's state follows the presence of ``imageUrl``: missing means
    unrequested, null means pending, a string means resolved.
    """
    if not isinstance(data, dict) or not data.get('type'):
        return None

    block_type = str(data['type'])
    if block_type != 'image':
        extra = {k: v for k, v in data.items() if k != 'type'}
        return ContentBlock(type=block_type, data=extra)

    if 'imageUrl' not in data:
        status, url = IMAGE_UNREQUESTED, None
    elif data['imageUrl'] is None:
        status, url = IMAGE_PENDING, None
    else:
        status, url = IMAGE_RESOLVED, str(data['imageUrl'])

    return ImageBlock(
        keywords=str(data.get('keywords') or ''),
        caption=data.get('caption'),
        position=data.get('position'),
        image_url=url,
        status=status,
    )


def slide_from_dict(data: Dict[str, Any], index: int = 0) -> Slide:
    blocks = []
    for raw in data.get('blocks') or []:
        block = block_from_dict(raw)
        if block is not None:
            blocks.append(block)
    return Slide(
        id=str(data.get('id') or f"slide-{index}"),
        title=str(data.get('title') or f"Slide {index + 1}"),
        blocks=tuple(blocks),
    )


def module_from_dict(data: Dict[str, Any], index: int = 0) -> Module:
    return Module(
        id=str(data.get('id') or f"module-{index}"),
        title=str(data.get('title') or f"Module {index + 1}"),
        description=str(data.get('description') or ''),
        slides=tuple(
            slide_from_dict(s, i) for i, s in enumerate(data.get('slides') or [])
        ),
        is_loaded=bool(data.get('isLoaded', False)),
    )


def course_from_dict(data: Dict[str, Any]) -> Course:
    """Build a Course (usually a skeleton from the curriculum step) from JSON"""
    return Course(
        id=str(data.get('id') or ''),
        topic=str(data.get('topic') or ''),
        title=str(data.get('title') or ''),
        description=str(data.get('description') or ''),
        modules=tuple(
            module_from_dict(m, i) for i, m in enumerate(data.get('modules') or [])
        ),
    )
