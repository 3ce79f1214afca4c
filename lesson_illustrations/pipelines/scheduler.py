"""
Background module scheduler.

After the first module is shown, the remaining modules are generated one at
a time in the background. Each module is merged into the course as soon as
it arrives, so a learner navigating ahead sees content without waiting for
the whole course.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from lesson_illustrations.types import Course, Module, ModuleGenerationJob, Slide
from lesson_illustrations.config import config
from lesson_illustrations.pipelines.course_state import CourseStore
from lesson_illustrations.services.module_content import ModuleContentGenerator

logger = logging.getLogger(__name__)


@dataclass
class SchedulerStats:
    """Module indexes touched by one scheduler run"""
    attempted: List[int] = field(default_factory=list)
    loaded: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempted': list(self.attempted),
            'loaded': list(self.loaded),
            'skipped': list(self.skipped),
            'failed': list(self.failed),
        }


def summarize_module(module: Module) -> str:
    """One line describing a module: ``Module "<title>": <slide titles>``"""
    slide_titles = ", ".join(s.title for s in module.slides)
    return f'Module "{module.title}": {slide_titles}'


def build_generation_job(
    course: Course,
    module_index: int,
    preceding: Optional[Sequence[Module]] = None,
) -> ModuleGenerationJob:
    """
    Build the collaborator request for one module.

    ``preceding`` defaults to every module before ``module_index``.
    """
    module = course.modules[module_index]
    if preceding is None:
        preceding = course.modules[:module_index]
    return ModuleGenerationJob(
        course_title=course.title,
        module_index=module_index,
        title=module.title,
        description=module.description,
        slide_titles=tuple(s.title for s in module.slides),
        preceding_module_summaries="\n".join(summarize_module(m) for m in preceding),
    )


class ModuleGenerationError(Exception):
    """A module could not be generated: timeout or unusable content"""


class ModuleLoader:
    """
    Generates modules and merges them into the store.

    At most one generation runs per module: a second request for a module
    that is already being generated waits for the first one instead of
    issuing another collaborator call.
    """

    def __init__(
        self,
        store: CourseStore,
        generator: ModuleContentGenerator,
        timeout: Optional[float] = None,
        apply: Optional[Callable[[int, Sequence[Slide]], Any]] = None,
        spawn: Optional[Callable[[Awaitable, str], asyncio.Task]] = None,
    ):
        self.store = store
        self.generator = generator
        self.timeout = config.module_generation_timeout if timeout is None else timeout
        self.apply = apply or store.apply_module_loaded
        self._spawn = spawn or (lambda coro, name: asyncio.create_task(coro, name=name))
        self._in_flight: Dict[int, asyncio.Task] = {}

    def is_loaded(self, module_index: int) -> bool:
        return self.store.snapshot().modules[module_index].is_loaded

    def is_loading(self, module_index: int) -> bool:
        return module_index in self._in_flight

    async def load(self, module_index: int, preceding: Optional[Sequence[Module]] = None) -> bool:
        """
        Generate and merge one module unless it is already loaded.

        Args:
            module_index: Module to load
            preceding: Modules summarized in the request; only used when this
                call starts the generation

        Returns:
            True when the module is loaded afterwards

        Raises:
            ModuleGenerationError: timeout or malformed content
            Exception: whatever the generator raised
        """
        if self.is_loaded(module_index):
            return True

        task = self._in_flight.get(module_index)
        if task is None:
            task = self._spawn(self._generate(module_index, preceding), f"generate-module-{module_index}")
            self._in_flight[module_index] = task
            task.add_done_callback(lambda t: self._forget(module_index, t))
        else:
            logger.info(f"[Loader] Module {module_index + 1} already generating, waiting for it")

        await asyncio.shield(task)
        return self.is_loaded(module_index)

    def _forget(self, module_index: int, task: asyncio.Task) -> None:
        if self._in_flight.get(module_index) is task:
            del self._in_flight[module_index]

    async def _generate(self, module_index: int, preceding: Optional[Sequence[Module]]) -> None:
        course = self.store.snapshot()
        if course.modules[module_index].is_loaded:
            return

        job = build_generation_job(course, module_index, preceding=preceding)
        logger.info(f"[Loader] Generating module {module_index + 1}/{len(course.modules)}: {job.title}")

        request = self.generator.generate_module_content(job)
        try:
            if self.timeout and self.timeout > 0:
                slides = await asyncio.wait_for(request, self.timeout)
            else:
                slides = await request
        except asyncio.TimeoutError:
            raise ModuleGenerationError(
                f"Module {module_index + 1} generation timed out after {self.timeout:.0f}s"
            )

        if slides is None:
            raise ModuleGenerationError(f"Module {module_index + 1}: generator returned no slides")
        slides = list(slides)
        for slide in slides:
            if not isinstance(slide, Slide):
                raise ModuleGenerationError(
                    f"Module {module_index + 1}: expected Slide, got {type(slide).__name__}"
                )

        self.apply(module_index, slides)
        logger.info(f"[Loader] ✅ Module {module_index + 1} loaded ({len(slides)} slides)")

    async def close(self) -> None:
        """Cancel generations still in flight."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()


async def schedule_remaining(
    store: CourseStore,
    start_index: int,
    generator: ModuleContentGenerator,
    cooldown_seconds: Optional[float] = None,
    loader: Optional[ModuleLoader] = None,
) -> SchedulerStats:
    """
    Generate every not-yet-loaded module from ``start_index`` onward.

    Modules are generated strictly in order. A failure on one module
    (collaborator error, timeout, malformed content) is logged and the loop
    moves on to the next.

    Args:
        store: Shared course state; read before each module, written after
        start_index: First module index to consider
        generator: Collaborator producing a module's slides
        cooldown_seconds: Pause before each request after the first one
            issued, defaults to config.module_cooldown
        loader: Shared ModuleLoader, so a module already being generated on
            demand is waited for instead of generated twice

    Returns:
        SchedulerStats for this run
    """
    cooldown = config.module_cooldown if cooldown_seconds is None else cooldown_seconds
    loader = loader or ModuleLoader(store, generator)
    stats = SchedulerStats()
    module_count = len(store.snapshot().modules)
    issued = 0

    logger.info(f"[Scheduler] Background generation for modules {start_index + 1}..{module_count}")

    for idx in range(max(start_index, 0), module_count):
        if loader.is_loaded(idx):
            logger.info(f"[Scheduler] Module {idx + 1} already loaded, skipping")
            stats.skipped.append(idx)
            continue

        if issued > 0 and cooldown > 0:
            logger.info(f"[Scheduler] Cooldown: waiting {cooldown:.0f}s before next module...")
            await asyncio.sleep(cooldown)

        # The module may have been loaded on demand during the cooldown
        if loader.is_loaded(idx):
            stats.skipped.append(idx)
            continue

        issued += 1
        stats.attempted.append(idx)

        try:
            loaded = await loader.load(idx)
        except Exception as e:
            logger.error(f"[Scheduler] Failed to generate module {idx + 1}: {e}")
            stats.failed.append(idx)
            continue

        if loaded:
            stats.loaded.append(idx)
        else:
            stats.failed.append(idx)

    logger.info(f"[Scheduler] Done: {stats.to_dict()}")
    return stats
