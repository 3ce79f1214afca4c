"""
Course session orchestration.

Ties the pieces together for one course being viewed:
- the first module is generated up front and shown immediately
- remaining modules are generated in the background by the scheduler
- images for a module are selected when the learner navigates to it

All state changes go through a CourseStore, so subscribers (a websocket
consumer, a CLI printer, a test) get a complete snapshot on every update.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, Set

from lesson_illustrations.types import Course, ImageRequest, Slide
from lesson_illustrations.pipelines.course_state import CourseStore
from lesson_illustrations.pipelines.image_resolver import ImageResolver
from lesson_illustrations.pipelines.module_images import extract_image_requests, resolve_requests
from lesson_illustrations.pipelines.scheduler import (
    ModuleLoader,
    SchedulerStats,
    schedule_remaining,
)
from lesson_illustrations.services.module_content import ModuleContentGenerator

logger = logging.getLogger(__name__)


class CourseSession:
    """Progressive loading of one course: text first, images on demand"""

    def __init__(
        self,
        course: Course,
        generator: ModuleContentGenerator,
        resolver: Optional[ImageResolver] = None,
        image_cooldown: Optional[float] = None,
        module_cooldown: Optional[float] = None,
        generation_timeout: Optional[float] = None,
    ):
        self.store = CourseStore(course)
        self.generator = generator
        self.resolver = resolver
        self.image_cooldown = image_cooldown
        self.module_cooldown = module_cooldown
        self.scheduler_stats: Optional[SchedulerStats] = None

        self._tasks: Set[asyncio.Task] = set()
        self._images_triggered: Set[int] = set()
        # Scheduler and on-demand loads share one loader, so a module is never generated twice at once
        self.loader = ModuleLoader(
            self.store,
            generator,
            timeout=generation_timeout,
            apply=self.apply_module_content,
            spawn=self._spawn,
        )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def snapshot(self) -> Course:
        return self.store.snapshot()

    def subscribe(self, callback: Callable[[Course, int], None]) -> Callable[[], None]:
        return self.store.subscribe(callback)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    async def _run_scheduler(self, start_index: int) -> None:
        self.scheduler_stats = await schedule_remaining(
            self.store,
            start_index,
            self.generator,
            cooldown_seconds=self.module_cooldown,
            loader=self.loader,
        )

    def _resolve_in_background(self, module_index: int, requests: Sequence[ImageRequest]) -> asyncio.Task:
        self.store.mark_images_pending(requests)
        return self._spawn(
            resolve_requests(
                requests,
                self.store.apply_image_resolved,
                resolver=self.resolver,
                cooldown_seconds=self.image_cooldown,
            ),
            name=f"images-module-{module_index}",
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self) -> Course:
        """
        Load the first module and kick off background work.

        Errors from generating the first module propagate: without it there
        is nothing to show.

        Returns:
            Snapshot with the first module loaded
        """
        course = self.store.snapshot()
        if not course.modules:
            logger.warning("Course has no modules, nothing to load")
            return course

        logger.info(f"Starting course session: {course.title} ({len(course.modules)} modules)")

        await self.loader.load(0)

        self.trigger_image_selection(0)
        if len(course.modules) > 1:
            self._spawn(self._run_scheduler(1), name="module-scheduler")

        return self.store.snapshot()

    def apply_module_content(self, module_index: int, slides: Sequence[Slide]) -> bool:
        """
        Merge generated slides into a module.

        When images were already requested for the module, image blocks that
        the new slides brought in are requested too.

        Returns:
            True when the course changed
        """
        changed = self.store.apply_module_loaded(module_index, slides)
        if not changed or module_index not in self._images_triggered:
            return changed

        module = self.store.snapshot().modules[module_index]
        requests = extract_image_requests(module_index, module.slides, include_pending=False)
        if requests:
            logger.info(f"Module {module_index + 1} reloaded, selecting {len(requests)} new images")
            self._resolve_in_background(module_index, requests)
        return changed

    def trigger_image_selection(self, module_index: int) -> Optional[asyncio.Task]:
        """
        Start background image selection for a module (navigation hook).

        Runs at most once per module, and only once the module is loaded; a
        call on a module that is still loading does nothing so it can be
        retried later.

        Returns:
            The background task, or None when nothing was started
        """
        if module_index in self._images_triggered:
            return None

        course = self.store.snapshot()
        if not 0 <= module_index < len(course.modules):
            return None
        module = course.modules[module_index]
        if not module.is_loaded:
            logger.info(f"Module {module_index + 1} not loaded yet, deferring image selection")
            return None

        self._images_triggered.add(module_index)
        requests = extract_image_requests(module_index, module.slides)
        if not requests:
            return None

        logger.info(f"Selecting {len(requests)} images for module {module_index + 1}")
        return self._resolve_in_background(module_index, requests)

    async def load_module_if_needed(self, module_index: int) -> Course:
        """
        Generate a module the learner jumped to before the scheduler got there.

        Only modules that are already loaded are summarized in the request.
        When the scheduler (or another call) is already generating the module,
        this waits for that generation instead of starting a second one.
        """
        course = self.store.snapshot()
        if not 0 <= module_index < len(course.modules):
            raise IndexError(f"No module at index {module_index}")
        if course.modules[module_index].is_loaded:
            return course

        if not self.loader.is_loading(module_index):
            logger.info(f"Generating module {module_index + 1} on demand")
        preceding = [m for m in course.modules[:module_index] if m.is_loaded]
        await self.loader.load(module_index, preceding=preceding)
        return self.store.snapshot()

    async def wait_until_idle(self) -> None:
        """Wait for every background task, including ones started meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding background work."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.loader.close()
        logger.info("Course session closed")
