"""
Task Orchestrator

Owns a long video task from creation to merge: validates the request, plans
one scene per segment, runs the batches in order, aggregates progress,
handles cancellation and regeneration, and hands completed work to the merge
pipeline. Every state change is written to the task store, so a task can be
picked up again by ``resume_unfinished`` after a restart.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from app.models.credentials import CredentialOutcome
from app.models.errors import (
    CredentialExhaustedError,
    SegmentBusyError,
    SegmentNotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from app.models.settings import OrchestratorSettings
from app.models.shared import (
    RegenerateType,
    SegmentStatus,
    SubtitleSettings,
    TaskStatus,
    VolumeLevels,
)
from app.models.tasks import (
    CreateTaskRequest,
    LongVideoTask,
    MergeResult,
    Segment,
    SegmentOverrides,
    TaskStats,
    TaskView,
    utc_now,
)
from app.services.credentials.pool import CredentialPool
from app.services.llm.common import (
    LlmRouterService,
    ScenePlanRequest,
    fallback_scene_plans,
    fit_scene_plans,
)
from app.services.problems import normalize_exception
from app.services.task_store import TaskStore
from app.tasks.long_video.batch_scheduler import BatchScheduler
from app.tasks.long_video.merge_pipeline import MergePipeline
from app.tasks.long_video.segment_generator import (
    SegmentGenerator,
    SegmentJob,
    SegmentOutcome,
)
from config import TASK_EXPIRY_DAYS

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = [
    TaskStatus.PENDING.value,
    TaskStatus.ANALYZING.value,
    TaskStatus.PROCESSING.value,
    TaskStatus.CANCELLING.value,
]


class TaskOrchestrator:
    """Runs long video tasks in the background of the serving process.

    Args:
        store: Task persistence backend
        generator: Segment generator shared by every task
        scheduler: Batch scheduler wrapping the generator
        merge_pipeline: Pipeline used for automatic and requested merges
        pool: Credential pool, used here for scene planning
        llm_service: Scene planner, or None to always split the story evenly
        settings: Scheduling tunables
        sleep: Awaitable used for the pause between batches
    """

    def __init__(
        self,
        store: TaskStore,
        generator: SegmentGenerator,
        scheduler: BatchScheduler,
        merge_pipeline: MergePipeline,
        pool: CredentialPool,
        llm_service: Optional[LlmRouterService] = None,
        settings: Optional[OrchestratorSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.generator = generator
        self.scheduler = scheduler
        self.merge_pipeline = merge_pipeline
        self.pool = pool
        self.llm_service = llm_service
        self.settings = settings or OrchestratorSettings()
        self._sleep = sleep

        self._tasks: Dict[str, LongVideoTask] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._runners: Dict[str, asyncio.Task] = {}
        # (task id, segment id) -> cancellation flag and runner of a regeneration
        self._regenerations: Dict[Tuple[str, int], Tuple[asyncio.Event, asyncio.Task]] = {}

    # NOTE: Bookkeeping

    async def _load(self, task_id: str) -> LongVideoTask:
        task = self._tasks.get(task_id)
        if task is not None:
            return task
        try:
            task = await self.store.load_task(task_id)
        except ValueError:
            task = None
        if task is None:
            raise TaskNotFoundError(task_id)
        self._tasks[task_id] = task
        return task

    async def _save_task(self, task: LongVideoTask) -> None:
        task.updated_at = utc_now()
        await self.store.save_task(task)

    def _is_running(self, task_id: str) -> bool:
        runner = self._runners.get(task_id)
        return runner is not None and not runner.done()

    def _start(self, task: LongVideoTask) -> None:
        if self._is_running(task.id):
            return
        self._cancel_events[task.id] = asyncio.Event()
        runner = asyncio.create_task(self.run_task(task.id), name=f"long-video-{task.id}")
        self._runners[task.id] = runner
        runner.add_done_callback(partial(self._forget_runner, task.id))

    def _forget_runner(self, task_id: str, runner: asyncio.Task) -> None:
        if self._runners.get(task_id) is runner:
            del self._runners[task_id]
        self._evict_if_idle(task_id)

    def _evict_if_idle(self, task_id: str) -> None:
        """Drop a finished task from memory once nothing is working on it."""
        task = self._tasks.get(task_id)
        if (
            task is None
            or task.status not in TaskStatus.terminal()
            or self._is_running(task_id)
            or self._pending_regenerations(task_id)
        ):
            return
        del self._tasks[task_id]
        self._cancel_events.pop(task_id, None)

    # NOTE: Lifecycle

    def validate(self, request: CreateTaskRequest) -> None:
        """Reject a request before any task is created.

        Raises:
            TaskValidationError: If the duration or story is unacceptable
        """
        minimum = self.settings.min_duration_minutes
        maximum = self.settings.max_duration_minutes
        if not minimum <= request.duration_minutes <= maximum:
            raise TaskValidationError(
                f"Duration must be between {minimum} and {maximum} minutes, "
                f"got {request.duration_minutes}"
            )
        if not request.story or not request.story.strip():
            raise TaskValidationError("Story must not be empty")
        if request.config.video_model.strip() == "":
            raise TaskValidationError("A video model must be selected")

    async def create_task(self, request: CreateTaskRequest) -> LongVideoTask:
        """Create a task with all of its segments and start it in the background."""
        self.validate(request)
        task = LongVideoTask.new(
            request,
            batch_size=self.settings.batch_size,
            segment_duration=self.settings.segment_duration_seconds,
        )
        await self.store.save_all(task)
        self._tasks[task.id] = task
        logger.info(
            f"Created task {task.id}: {task.duration_minutes} min, "
            f"{task.total_segments} segments in {task.total_batches} batches"
        )
        self._start(task)
        return task

    async def _plan_scenes(self, task: LongVideoTask) -> None:
        """Give every segment a scene description, narration and image prompt."""
        unplanned = [s for s in task.segments if not s.prompt]
        if not unplanned:
            return

        task.status = TaskStatus.ANALYZING
        await self._save_task(task)

        scenes = None
        if self.llm_service is not None and self.pool.has_provider(self.llm_service.name):
            credential = None
            outcome = CredentialOutcome.FAILURE
            try:
                credential = await self.pool.acquire(self.llm_service.name)
                response = await self.llm_service.plan_scenes(
                    ScenePlanRequest(
                        story=task.story,
                        total_segments=task.total_segments,
                        segment_duration_seconds=self.settings.segment_duration_seconds,
                        language=task.config.language,
                        story_mode=task.config.story_mode,
                        model=task.config.llm_model,
                    ),
                    credential.secret,
                )
                scenes = fit_scene_plans(response.scenes, task.total_segments)
                outcome = CredentialOutcome.SUCCESS
            except CredentialExhaustedError as e:
                logger.warning(f"Task {task.id}: no credential for scene planning: {e}")
            except Exception as e:
                error = normalize_exception(self.llm_service.name, e)
                if error.status_code == 429:
                    outcome = CredentialOutcome.THROTTLED
                logger.warning(f"Task {task.id}: scene planning failed: {error}")
            finally:
                if credential is not None:
                    await self.pool.release(credential, outcome)

        if scenes is None:
            logger.info(f"Task {task.id}: splitting the story evenly across segments")
            scenes = fallback_scene_plans(task.story, task.total_segments)

        for segment in unplanned:
            scene = scenes[segment.id - 1]
            segment.prompt = scene.description
            segment.narration = scene.narration
            segment.image_prompt = scene.image_prompt
            segment.updated_at = utc_now()
            await self.store.save_segment(task.id, segment)

    async def _on_segment_done(
        self, task: LongVideoTask, segment: Segment, outcome: SegmentOutcome
    ) -> None:
        task.recompute_progress()
        await self._save_task(task)

    def _final_status(self, task: LongVideoTask) -> TaskStatus:
        if all(s.status == SegmentStatus.COMPLETED for s in task.segments):
            return TaskStatus.COMPLETED

        failed = sum(1 for s in task.segments if s.status == SegmentStatus.FAILED)
        threshold = self.settings.failure_threshold
        if threshold is not None and failed / task.total_segments > threshold:
            return TaskStatus.FAILED
        return TaskStatus.COMPLETED_WITH_ERRORS

    def _pending_regenerations(self, task_id: str) -> List[asyncio.Task]:
        return [
            runner for (owner, _), (_, runner) in self._regenerations.items() if owner == task_id
        ]

    async def run_task(self, task_id: str) -> None:
        """Drive a task through planning and every unresolved batch, then finish it."""
        task = await self._load(task_id)
        cancel_event = self._cancel_events.setdefault(task_id, asyncio.Event())

        try:
            if not cancel_event.is_set():
                await self._plan_scenes(task)

            if not cancel_event.is_set():
                task.status = TaskStatus.PROCESSING
                await self._save_task(task)

            for batch_index in range(task.total_batches):
                if cancel_event.is_set():
                    break
                if task.is_batch_resolved(batch_index):
                    logger.info(f"Task {task.id}: batch {batch_index} already resolved")
                    continue

                logger.info(
                    f"Task {task.id}: starting batch {batch_index + 1}/{task.total_batches}"
                )
                outcomes = await self.scheduler.run_batch(
                    task,
                    task.batch(batch_index),
                    self.settings.concurrency,
                    cancel_event,
                    on_segment_done=lambda segment, outcome: self._on_segment_done(
                        task, segment, outcome
                    ),
                )
                failed = sum(1 for o in outcomes.values() if o == SegmentOutcome.FAILED)
                logger.info(
                    f"Task {task.id}: batch {batch_index + 1} resolved, "
                    f"{failed} failed, progress {task.progress}%"
                )

                remaining = any(
                    not task.is_batch_resolved(i)
                    for i in range(batch_index + 1, task.total_batches)
                )
                if remaining and self.settings.batch_pause_seconds and not cancel_event.is_set():
                    await self._sleep(self.settings.batch_pause_seconds)

            # Segments regenerated while the batches ran must settle first
            regenerations = self._pending_regenerations(task_id)
            while regenerations:
                logger.info(
                    f"Task {task.id}: waiting for {len(regenerations)} segment regenerations"
                )
                await asyncio.gather(*regenerations, return_exceptions=True)
                regenerations = self._pending_regenerations(task_id)

            task.recompute_progress()
            if cancel_event.is_set():
                task.status = TaskStatus.CANCELLED
                await self._save_task(task)
                logger.info(f"Task {task.id} cancelled at {task.progress}%")
                return

            task.status = self._final_status(task)
            if task.status == TaskStatus.FAILED:
                task.error = "Too many segments failed"
            await self._save_task(task)
            logger.info(f"Task {task.id} finished as {task.status}")
        except Exception as e:
            logger.error(f"Orchestration of task {task.id} failed: {e}", exc_info=True)
            task.status = TaskStatus.FAILED
            task.error = "Task orchestration failed"
            try:
                await self._save_task(task)
            except Exception as save_error:
                logger.error(f"Could not record failure of task {task.id}: {save_error}")
            return

        if task.status == TaskStatus.COMPLETED and self.settings.auto_merge:
            try:
                await self.merge(task.id)
            except Exception as e:
                logger.error(f"Automatic merge of task {task.id} failed: {e}", exc_info=True)

    # NOTE: Queries

    async def get_status(self, task_id: str) -> TaskView:
        """Current task with all segments. Reads only, never waits on generation."""
        task = await self._load(task_id)
        snapshot = task.model_copy(deep=True)
        self._evict_if_idle(task_id)
        snapshot.recompute_progress()
        return TaskView(task=snapshot, stats=TaskStats.from_task(snapshot))

    async def get_stats(self, task_id: str) -> TaskStats:
        stats = TaskStats.from_task(await self._load(task_id))
        self._evict_if_idle(task_id)
        return stats

    async def list_tasks(
        self, limit: Optional[int] = None, statuses: Optional[List[str]] = None
    ) -> List[LongVideoTask]:
        return await self.store.list_tasks(statuses=statuses, limit=limit)

    # NOTE: Commands

    async def cancel(self, task_id: str) -> LongVideoTask:
        """Stop scheduling new work for a task. Cancelling a finished task does nothing."""
        task = await self._load(task_id)
        for (owner, _), (event, _) in self._regenerations.items():
            if owner == task_id:
                event.set()

        if task.status in TaskStatus.terminal() or task.status == TaskStatus.CANCELLING:
            self._evict_if_idle(task_id)
            return task

        self._cancel_events.setdefault(task_id, asyncio.Event()).set()
        if self._is_running(task_id):
            # The runner records ``cancelled`` once in-flight segments drain
            task.status = TaskStatus.CANCELLING
        else:
            task.status = TaskStatus.CANCELLED
        await self._save_task(task)
        logger.info(f"Task {task_id} is {task.status}")
        self._evict_if_idle(task_id)
        return task

    async def regenerate_segment(
        self,
        task_id: str,
        segment_id: int,
        overrides: Optional[SegmentOverrides] = None,
        regenerate_type: RegenerateType = RegenerateType.ALL,
    ) -> Segment:
        """Run one segment again in the background.

        Raises:
            TaskNotFoundError: If the task does not exist
            SegmentNotFoundError: If the segment id is out of range
            SegmentBusyError: If the segment is generating or still queued
        """
        task = await self._load(task_id)
        try:
            segment = task.get_segment(segment_id)
        except KeyError:
            raise SegmentNotFoundError(task_id, segment_id)

        key = (task_id, segment_id)
        if segment.status == SegmentStatus.GENERATING or key in self._regenerations:
            raise SegmentBusyError(f"Segment {segment_id} of task {task_id} is generating")
        if self._is_running(task_id) and not segment.is_resolved:
            raise SegmentBusyError(
                f"Segment {segment_id} of task {task_id} is queued for generation"
            )

        event = asyncio.Event()
        job = SegmentJob(task, segment, event, regenerate_type, overrides)
        runner = asyncio.create_task(self._regenerate(task, job))
        self._regenerations[key] = (event, runner)
        # Let the generator claim the segment before reporting it back
        await asyncio.sleep(0)
        return segment

    async def _regenerate(self, task: LongVideoTask, job: SegmentJob) -> SegmentOutcome:
        key = (task.id, job.segment.id)
        try:
            outcome = await self.generator.generate(job)
            task.recompute_progress()
            # A running task settles its own status once its batches are done
            if task.status in (TaskStatus.COMPLETED, TaskStatus.COMPLETED_WITH_ERRORS):
                status = self._final_status(task)
                if status != task.status:
                    logger.info(
                        f"Task {task.id} is now {status} after regenerating "
                        f"segment {job.segment.id}"
                    )
                task.status = status
                task.error = "Too many segments failed" if status == TaskStatus.FAILED else None
            await self._save_task(task)
            return outcome
        except Exception as e:
            logger.error(
                f"Regeneration of segment {job.segment.id} of task {task.id} failed: {e}",
                exc_info=True,
            )
            return SegmentOutcome.FAILED
        finally:
            self._regenerations.pop(key, None)
            self._evict_if_idle(task.id)

    async def wait(self, task_id: str) -> None:
        """Wait until the task's runner and regenerations have stopped."""
        pending = self._pending_regenerations(task_id)
        if task_id in self._runners:
            pending.append(self._runners[task_id])
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def merge(
        self,
        task_id: str,
        volumes: Optional[VolumeLevels] = None,
        subtitles: Optional[SubtitleSettings] = None,
    ) -> MergeResult:
        """Merge the completed segments of a task and record the result on it."""
        task = await self._load(task_id)
        result = await self.merge_pipeline.merge(task, volumes, subtitles)
        task.merge = result
        await self._save_task(task)
        self._evict_if_idle(task_id)
        return result

    async def delete_task(self, task_id: str) -> bool:
        """Cancel a task if needed, wait for it to drain and remove it."""
        if task_id in self._tasks or self._is_running(task_id):
            await self.cancel(task_id)
            await self.wait(task_id)

        try:
            deleted = await self.store.delete_task(task_id)
        except ValueError:
            raise TaskNotFoundError(task_id)
        known = self._tasks.pop(task_id, None) is not None
        self._cancel_events.pop(task_id, None)
        if not deleted and not known:
            raise TaskNotFoundError(task_id)
        return True

    async def cleanup_expired(
        self, now: Optional[datetime] = None, expiry_days: int = TASK_EXPIRY_DAYS
    ) -> List[str]:
        """Delete finished tasks older than the expiry window. Returns their ids."""
        cutoff = (now or utc_now()) - timedelta(days=expiry_days)
        expired = [
            task.id
            for task in await self.store.list_tasks(statuses=TaskStatus.terminal())
            if task.created_at < cutoff
        ]
        for task_id in expired:
            await self.delete_task(task_id)
        if expired:
            logger.info(f"Removed {len(expired)} expired tasks")
        return expired

    async def resume_unfinished(self) -> List[str]:
        """Pick up tasks that were still running when the process stopped.

        Returns:
            List[str]: Ids of the tasks that were restarted
        """
        resumed = []
        for summary in await self.store.list_tasks(statuses=UNFINISHED_STATUSES):
            if self._is_running(summary.id):
                continue
            task = await self.store.load_task(summary.id)
            if task is None:
                continue

            for segment in task.segments:
                if segment.status == SegmentStatus.GENERATING:
                    # The generator holding it died with the process
                    segment.status = SegmentStatus.PENDING
                    segment.progress = 0
                    await self.store.save_segment(task.id, segment)
            task.recompute_progress()
            self._tasks[task.id] = task

            if task.status == TaskStatus.CANCELLING:
                task.status = TaskStatus.CANCELLED
                await self._save_task(task)
                self._evict_if_idle(task.id)
                continue

            logger.info(f"Resuming task {task.id} at {task.progress}%")
            self._start(task)
            resumed.append(task.id)
        return resumed
