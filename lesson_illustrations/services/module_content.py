"""
Boundary with the lesson-generation collaborator.

The pipeline never writes lesson text. It only needs something that turns a
ModuleGenerationJob into slides, and a parser for the JSON such a generator
typically returns.
"""
import json
import logging
from typing import Any, Dict, List, Protocol, Sequence

from lesson_illustrations.types import ModuleGenerationJob, Slide, slide_from_dict

logger = logging.getLogger(__name__)


class ModuleContentGenerator(Protocol):
    """Anything able to produce a module's slides (image blocks unresolved)"""

    async def generate_module_content(self, job: ModuleGenerationJob) -> Sequence[Slide]:
        ...


def clean_json_response(text: str) -> str:
    """Strip markdown fences and surrounding prose from a model's JSON reply."""
    cleaned = (text or "").strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:].strip()
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:].strip()
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].strip()

    starts = [i for i in (cleaned.find('{'), cleaned.find('[')) if i >= 0]
    if not starts:
        return cleaned
    cleaned = cleaned[min(starts):]

    end = max(cleaned.rfind('}'), cleaned.rfind(']'))
    if end > 0:
        cleaned = cleaned[:end + 1]
    return cleaned


def slides_from_payload(payload: Any) -> List[Slide]:
    """
    Build slides from a decoded generation payload.

    Accepts ``{"slides": [...]}`` or a bare list of slides. Any ``imageUrl``
    the generator may have emitted is dropped: fresh image blocks always
    start unrequested.
    """
    if isinstance(payload, list):
        payload = {"slides": payload} if payload and isinstance(payload[0], dict) and "blocks" in payload[0] else {"slides": []}
    if not isinstance(payload, dict):
        return []

    slides: List[Slide] = []
    for idx, raw in enumerate(payload.get("slides") or []):
        if not isinstance(raw, dict):
            continue
        raw_blocks = []
        for block in raw.get("blocks") or []:
            if isinstance(block, dict) and block.get("type") == "image":
                block = {k: v for k, v in block.items() if k != "imageUrl"}
            raw_blocks.append(block)
        slides.append(slide_from_dict({**raw, "blocks": raw_blocks}, idx))
    return slides


def parse_module_content(text: str) -> List[Slide]:
    """
    Parse a generator's raw text reply into slides.

    Raises:
        ValueError: when the reply is not JSON
    """
    try:
        payload: Dict[str, Any] = json.loads(clean_json_response(text))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Module content is not valid JSON: {exc}") from exc

    slides = slides_from_payload(payload)
    logger.info(f"Parsed module content: {len(slides)} slides")
    return slides
