"""
Segment Generator

Produces one segment's artifacts: an optional keyframe image, the video clip
and the narration audio. Every provider call goes through the credential
pool and the rate limiter, and every failure is classified to decide whether
to retry on the same credential, rotate to another credential, switch to a
fallback model, or give up on the segment.

Artifacts are collected in a draft and written onto the segment only when
the whole run succeeds, so a failed regeneration never leaves a segment with
a mix of old and new artifacts.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from app.models.credentials import CredentialOutcome
from app.models.errors import (
    CredentialExhaustedError,
    SegmentGenerationError,
)
from app.models.settings import OrchestratorSettings
from app.models.shared import RegenerateType, SegmentStatus
from app.models.tasks import LongVideoTask, Segment, SegmentOverrides, utc_now
from app.services.credentials.pool import CredentialPool
from app.services.credentials.rate_limiter import RateLimiter
from app.services.image.common import ImageGenerationRequest, ImageRouterService
from app.services.problems import (
    FailureHistory,
    ProblemClassifier,
    ProblemKind,
    RepairAction,
    normalize_exception,
)
from app.services.task_store import TaskStore
from app.services.tts.common import SpeechSynthesisRequest, TtsRouterService
from app.services.video.common import VideoGenerationRequest, VideoRouterService

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class SegmentOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SegmentCancelled(Exception):
    """Raised inside a run when the task's cancellation flag is observed."""


class GenerationStep(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


# (progress when the step starts, progress when it ends)
STEP_PROGRESS = {
    GenerationStep.IMAGE: (10, 35),
    GenerationStep.VIDEO: (40, 80),
    GenerationStep.AUDIO: (85, 95),
}
ACQUIRING_PROGRESS = 5

STEP_FIELDS = {
    GenerationStep.IMAGE: "image_url",
    GenerationStep.VIDEO: "video_url",
    GenerationStep.AUDIO: "audio_url",
}


class ProviderRoute:
    """A provider service plus the model to ask it for."""

    def __init__(self, service, model: Optional[str] = None):
        self.service = service
        self.model = model

    @property
    def provider(self) -> str:
        return self.service.name

    def __repr__(self) -> str:
        return f"ProviderRoute({self.provider}, {self.model})"


class SegmentJob:
    """Everything one generator run needs, plus its uncommitted draft."""

    def __init__(
        self,
        task: LongVideoTask,
        segment: Segment,
        cancel_event: asyncio.Event,
        regenerate_type: RegenerateType = RegenerateType.ALL,
        overrides: Optional[SegmentOverrides] = None,
    ):
        overrides = overrides or SegmentOverrides()
        self.task_id = task.id
        self.config = task.config
        self.segment = segment
        self.cancel_event = cancel_event
        self.regenerate_type = RegenerateType(regenerate_type)
        self.previous_status = segment.status

        self.prompt = overrides.prompt or segment.prompt or segment.narration or task.story
        self.narration = (
            overrides.narration if overrides.narration is not None else segment.narration
        )
        self.image_prompt = overrides.prompt or segment.image_prompt or self.prompt
        self.voice_actor_id = (
            overrides.voice_actor_id
            or segment.voice_actor_id
            or task.config.voice_actor_id
        )
        self.overrides = overrides
        self.draft: Dict[str, str] = {}

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class _RunState:
    def __init__(self):
        self.history = FailureHistory()
        self.failures = 0
        self.throttled = 0


class SegmentGenerator:
    """Generates one segment at a time; many instances of ``generate`` run concurrently."""

    def __init__(
        self,
        pool: CredentialPool,
        limiter: RateLimiter,
        classifier: ProblemClassifier,
        store: TaskStore,
        image_service: ImageRouterService,
        video_service: VideoRouterService,
        tts_service: TtsRouterService,
        settings: Optional[OrchestratorSettings] = None,
        video_fallback_model: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.limiter = limiter
        self.classifier = classifier
        self.store = store
        self.image_service = image_service
        self.video_service = video_service
        self.tts_service = tts_service
        self.settings = settings or OrchestratorSettings()
        self.video_fallback_model = video_fallback_model
        self._sleep = sleep

    def routes_for(self, job: SegmentJob) -> Dict[GenerationStep, List[ProviderRoute]]:
        video_routes = [ProviderRoute(self.video_service, job.config.video_model)]
        if self.video_fallback_model and self.video_fallback_model != job.config.video_model:
            video_routes.append(ProviderRoute(self.video_service, self.video_fallback_model))
        return {
            GenerationStep.IMAGE: [ProviderRoute(self.image_service, job.config.image_model)],
            GenerationStep.VIDEO: video_routes,
            GenerationStep.AUDIO: [ProviderRoute(self.tts_service)],
        }

    def steps_for(self, job: SegmentJob) -> List[GenerationStep]:
        """Steps to run, in order, for this job's regeneration type."""
        wants_image = job.config.generate_images
        has_narration = bool(job.narration and job.narration.strip())
        regenerate_type = job.regenerate_type

        if regenerate_type == RegenerateType.AUDIO:
            return [GenerationStep.AUDIO] if has_narration else []
        if regenerate_type == RegenerateType.VIDEO:
            return [GenerationStep.VIDEO]
        if regenerate_type == RegenerateType.IMAGE:
            # A new keyframe only shows up once the clip is rendered from it
            return [GenerationStep.IMAGE, GenerationStep.VIDEO]

        steps = []
        if wants_image:
            steps.append(GenerationStep.IMAGE)
        steps.append(GenerationStep.VIDEO)
        if has_narration:
            steps.append(GenerationStep.AUDIO)
        return steps

    async def _persist(self, job: SegmentJob) -> None:
        job.segment.updated_at = utc_now()
        await self.store.save_segment(job.task_id, job.segment)

    async def _set_progress(self, job: SegmentJob, progress: int) -> None:
        job.segment.progress = progress
        await self._persist(job)

    @staticmethod
    def _raise_if_cancelled(job: SegmentJob) -> None:
        if job.cancelled:
            raise SegmentCancelled()

    async def _call(
        self, step: GenerationStep, route: ProviderRoute, job: SegmentJob, api_key: str
    ) -> str:
        segment = job.segment
        if step == GenerationStep.IMAGE:
            response = await route.service.generate_image(
                ImageGenerationRequest(
                    task_id=job.task_id,
                    segment_id=segment.id,
                    prompt=job.image_prompt,
                    model=route.model or "flux",
                ),
                api_key,
            )
        elif step == GenerationStep.VIDEO:
            response = await route.service.generate_video(
                VideoGenerationRequest(
                    task_id=job.task_id,
                    segment_id=segment.id,
                    prompt=job.prompt,
                    model=route.model,
                    image_url=job.draft.get("image_url") or segment.image_url,
                    duration_seconds=segment.end_time - segment.start_time,
                ),
                api_key,
            )
        else:
            response = await route.service.synthesize(
                SpeechSynthesisRequest(
                    task_id=job.task_id,
                    segment_id=segment.id,
                    text=job.narration,
                    voice_actor_id=job.voice_actor_id,
                    language=job.config.language,
                ),
                api_key,
            )
        return response.url

    async def _run_step(
        self, step: GenerationStep, job: SegmentJob, state: _RunState
    ) -> str:
        routes = self.routes_for(job)[step]
        route_index = 0
        exclude: Set[str] = set()

        while True:
            self._raise_if_cancelled(job)
            route = routes[route_index]
            try:
                credential = await self.pool.acquire(route.provider, exclude=exclude)
            except CredentialExhaustedError as e:
                raise SegmentGenerationError(job.segment.id, "credential_exhausted", str(e))

            outcome: Optional[CredentialOutcome] = None
            retry_after = None
            try:
                while True:
                    self._raise_if_cancelled(job)
                    try:
                        async with self.limiter.slot(route.provider):
                            url = await self._call(step, route, job, credential.secret)
                    except Exception as e:
                        error = normalize_exception(route.provider, e)
                    else:
                        outcome = CredentialOutcome.SUCCESS
                        state.history.reset(route.provider)
                        return url

                    state.failures += 1
                    decision = self.classifier.decide(
                        error,
                        state.history,
                        attempt=state.failures,
                        credential_id=credential.id,
                        has_fallback=route_index + 1 < len(routes),
                    )
                    if decision.kind == ProblemKind.THROTTLED:
                        state.throttled += 1
                        outcome = CredentialOutcome.THROTTLED
                        retry_after = error.retry_after
                    else:
                        outcome = CredentialOutcome.FAILURE

                    logger.warning(
                        f"Segment {job.segment.id} {step.value} attempt {state.failures}/"
                        f"{self.settings.max_attempts} failed on {credential.id}: {error}"
                    )
                    if (
                        decision.action == RepairAction.FATAL
                        or state.failures >= self.settings.max_attempts
                    ):
                        raise SegmentGenerationError(
                            job.segment.id, decision.kind.value, str(error)
                        )

                    job.segment.retry_count = state.failures - state.throttled
                    if decision.action != RepairAction.RETRY_SAME_CREDENTIAL:
                        break
                    await self._sleep(decision.delay)
            finally:
                await self.pool.release(credential, outcome, retry_after)

            if decision.action == RepairAction.SWITCH_FALLBACK_PROVIDER:
                route_index += 1
                exclude = set()
                state.history.reset(route.provider)
                logger.warning(
                    f"Segment {job.segment.id} switching {step.value} to {routes[route_index]}"
                )
            else:
                exclude.add(credential.id)

    def _commit(self, job: SegmentJob, state: _RunState) -> None:
        segment = job.segment
        for field, url in job.draft.items():
            setattr(segment, field, url)
        if job.overrides.prompt:
            segment.prompt = job.overrides.prompt
            segment.image_prompt = job.overrides.prompt
        if job.overrides.narration is not None:
            segment.narration = job.overrides.narration
        if job.overrides.voice_actor_id:
            segment.voice_actor_id = job.overrides.voice_actor_id
        segment.status = SegmentStatus.COMPLETED
        segment.progress = 100
        segment.error = None
        segment.error_kind = None
        # Throttled attempts are not held against a segment that went on to succeed
        segment.retry_count = state.failures - state.throttled

    async def generate(self, job: SegmentJob) -> SegmentOutcome:
        """Run one segment to a terminal state.

        Args:
            job: The segment, its task settings and the cancellation flag

        Returns:
            SegmentOutcome: completed, failed, or cancelled (segment restored)
        """
        segment = job.segment
        previous = segment.model_copy()
        state = _RunState()

        segment.status = SegmentStatus.GENERATING
        segment.error = None
        segment.error_kind = None
        segment.progress = ACQUIRING_PROGRESS
        await self._persist(job)

        try:
            for step in self.steps_for(job):
                start, end = STEP_PROGRESS[step]
                await self._set_progress(job, start)
                job.draft[STEP_FIELDS[step]] = await self._run_step(step, job, state)
                await self._set_progress(job, end)
        except SegmentCancelled:
            logger.info(f"Segment {segment.id} of task {job.task_id} stopped by cancellation")
            for field in ("status", "progress", "error", "error_kind", "retry_count"):
                setattr(segment, field, getattr(previous, field))
            if segment.status == SegmentStatus.GENERATING:
                segment.status = SegmentStatus.PENDING
            await self._persist(job)
            return SegmentOutcome.CANCELLED
        except SegmentGenerationError as e:
            logger.error(f"Segment {segment.id} of task {job.task_id} failed: {e.message}")
            segment.error = e.message
            segment.error_kind = e.kind
            if job.previous_status == SegmentStatus.COMPLETED:
                # Regeneration failed: the earlier artifacts stay usable
                segment.status = SegmentStatus.COMPLETED
                segment.progress = 100
                await self._persist(job)
                return SegmentOutcome.FAILED
            segment.status = SegmentStatus.FAILED
            segment.retry_count = state.failures
            await self._persist(job)
            return SegmentOutcome.FAILED

        self._commit(job, state)
        await self._persist(job)
        logger.info(
            f"Segment {segment.id} of task {job.task_id} completed "
            f"after {state.failures} failed attempts"
        )
        return SegmentOutcome.COMPLETED
