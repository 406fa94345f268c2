"""Shared fixtures and in-memory provider fakes."""

import asyncio
import os
import tempfile

# config.py reads the environment at import time
os.environ["STORYREEL_ENV"] = "d"
os.environ.setdefault("STORYREEL_OUTPUT_DIR", tempfile.mkdtemp(prefix="storyreel-tests-"))

from typing import Callable, Dict, List, Optional

import pytest

from app.models.credentials import Credential
from app.models.errors import MergeUnavailableError, ProviderError
from app.models.settings import OrchestratorSettings
from app.models.shared import MergeMode
from app.models.tasks import CreateTaskRequest, TaskConfig
from app.services.credentials.pool import CredentialPool
from app.services.credentials.rate_limiter import BackoffPolicy, RateLimiter
from app.services.image.common import (
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageRouterService,
)
from app.services.llm.common import (
    LlmRouterService,
    ScenePlan,
    ScenePlanRequest,
    ScenePlanResponse,
)
from app.services.problems import ProblemClassifier
from app.services.storage_service import ArtifactStorage
from app.services.task_store import JsonFileTaskStore
from app.services.tts.common import (
    SpeechSynthesisRequest,
    SpeechSynthesisResponse,
    TtsRouterService,
)
from app.services.video.common import (
    VideoGenerationRequest,
    VideoGenerationResponse,
    VideoRouterService,
)
from app.tasks.long_video.batch_scheduler import BatchScheduler
from app.tasks.long_video.compositor import CompositionJob, MediaCompositor
from app.tasks.long_video.merge_pipeline import MergePipeline
from app.tasks.long_video.orchestrator import TaskOrchestrator
from app.tasks.long_video.segment_generator import SegmentGenerator

# Decides whether a call fails: returns an exception to raise, or None to succeed
FailureRule = Callable[[int, int], Optional[Exception]]


class InFlightTracker:
    """Records concurrent calls per API key."""

    def __init__(self):
        self.current: Dict[str, int] = {}
        self.peak: Dict[str, int] = {}

    def enter(self, api_key: str) -> None:
        self.current[api_key] = self.current.get(api_key, 0) + 1
        self.peak[api_key] = max(self.peak.get(api_key, 0), self.current[api_key])

    def exit(self, api_key: str) -> None:
        self.current[api_key] -= 1


class FakeProviderMixin:
    """Call log, failure rules and an optional gate shared by the fakes."""

    def __init__(self, rule: Optional[FailureRule] = None, tracker: Optional[InFlightTracker] = None):
        self.rule = rule
        self.tracker = tracker or InFlightTracker()
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    def calls_for(self, segment_id: int) -> List[tuple]:
        return [call for call in self.calls if call[0] == segment_id]

    async def _call(self, segment_id: int, api_key: str, detail: str = "") -> None:
        self.calls.append((segment_id, api_key, detail))
        attempt = len(self.calls_for(segment_id))
        self.tracker.enter(api_key)
        try:
            self.started.set()
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.rule is not None:
                error = self.rule(segment_id, attempt)
                if error is not None:
                    raise error
        finally:
            self.tracker.exit(api_key)


class FakeImageService(FakeProviderMixin, ImageRouterService):
    name = "pollinations"

    async def generate_image(
        self, request: ImageGenerationRequest, api_key: str
    ) -> ImageGenerationResponse:
        await self._call(request.segment_id, api_key, request.model)
        return ImageGenerationResponse(
            url=f"mem://{request.task_id}/{request.segment_id}/image-{len(self.calls)}.png",
            content_type="image/png",
        )


class FakeVideoService(FakeProviderMixin, VideoRouterService):
    name = "vector_engine"

    async def generate_video(
        self, request: VideoGenerationRequest, api_key: str
    ) -> VideoGenerationResponse:
        await self._call(request.segment_id, api_key, request.model)
        return VideoGenerationResponse(
            url=f"mem://{request.task_id}/{request.segment_id}/video-{len(self.calls)}.mp4"
        )


class FakeTtsService(FakeProviderMixin, TtsRouterService):
    name = "google_tts"

    async def synthesize(
        self, request: SpeechSynthesisRequest, api_key: str
    ) -> SpeechSynthesisResponse:
        await self._call(request.segment_id, api_key, request.voice_actor_id)
        return SpeechSynthesisResponse(
            url=f"mem://{request.task_id}/{request.segment_id}/narration-{len(self.calls)}.mp3",
            characters=len(request.text),
        )


class FakeLlmService(LlmRouterService):
    name = "huggingface"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: List[ScenePlanRequest] = []

    async def plan_scenes(self, request: ScenePlanRequest, api_key: str) -> ScenePlanResponse:
        self.requests.append(request)
        if self.fail:
            raise ProviderError(self.name, "Service unavailable", status_code=503)
        return ScenePlanResponse(
            scenes=[
                ScenePlan(
                    segment_id=i,
                    description=f"Scene {i}",
                    narration=f"Narration {i}.",
                    image_prompt=f"Image {i}",
                )
                for i in range(1, request.total_segments + 1)
            ],
            requested_segments=request.total_segments,
        )


class FakeCompositor(MediaCompositor):
    def __init__(self, mode: MergeMode = MergeMode.LOCAL, fail: bool = False):
        self.mode = mode
        self.fail = fail
        self.jobs: List[CompositionJob] = []

    async def compose(self, job: CompositionJob) -> str:
        self.jobs.append(job)
        if self.fail:
            raise MergeUnavailableError(f"{self.mode.value} compositor is down")
        return f"mem://{job.output_path}"


class MemoryArtifactStorage(ArtifactStorage):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.objects[path] = data
        return f"mem://{path}"


def http_error(status_code: int, provider: str = "vector_engine") -> ProviderError:
    return ProviderError(provider, f"HTTP {status_code}", status_code=status_code)


def make_credentials(provider: str, count: int) -> List[Credential]:
    return [
        Credential(id=f"{provider}-{i}", secret=f"{provider}-secret-{i}", provider=provider)
        for i in range(1, count + 1)
    ]


def fast_settings(**overrides) -> OrchestratorSettings:
    values = dict(
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        cooldown_base=0.01,
        cooldown_max=0.05,
        acquire_timeout=5.0,
        batch_pause_seconds=0.0,
        max_attempts=3,
        failure_threshold=None,
    )
    values.update(overrides)
    return OrchestratorSettings(**values)


def task_request(minutes: int = 1, **config) -> CreateTaskRequest:
    return CreateTaskRequest(
        duration_minutes=minutes,
        story="The fox ran through the forest. It found a river. Then it went home.",
        title="Fox",
        config=TaskConfig(**config),
    )


class Harness:
    """A fully wired orchestrator over fakes."""

    def __init__(
        self,
        store_dir: str,
        settings: Optional[OrchestratorSettings] = None,
        video_rule: Optional[FailureRule] = None,
        credentials_per_provider: int = 3,
        local_fails: bool = False,
        remote: bool = False,
        llm: Optional[FakeLlmService] = None,
        video_fallback_model: Optional[str] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or fast_settings()
        self.store = JsonFileTaskStore(store_dir)
        self.storage = MemoryArtifactStorage()
        self.tracker = InFlightTracker()
        self.image = FakeImageService(tracker=self.tracker)
        self.video = FakeVideoService(rule=video_rule, tracker=self.tracker)
        self.tts = FakeTtsService(tracker=self.tracker)
        self.llm = llm or FakeLlmService()

        credentials = []
        for provider in ("pollinations", "vector_engine", "google_tts", "huggingface"):
            credentials.extend(make_credentials(provider, credentials_per_provider))
        self.pool = CredentialPool(
            credentials,
            cooldown_base=self.settings.cooldown_base,
            cooldown_max=self.settings.cooldown_max,
            max_in_flight=self.settings.max_in_flight_per_credential,
            acquire_timeout=self.settings.acquire_timeout,
        )
        self.generator = SegmentGenerator(
            pool=self.pool,
            limiter=RateLimiter(self.settings.max_concurrent_per_provider),
            classifier=ProblemClassifier(
                backoff=BackoffPolicy(base_delay=0.0, max_delay=0.0),
                unavailable_after_credentials=self.settings.unavailable_after_credentials,
            ),
            store=self.store,
            image_service=self.image,
            video_service=self.video,
            tts_service=self.tts,
            settings=self.settings,
            video_fallback_model=video_fallback_model,
        )
        self.local = FakeCompositor(MergeMode.LOCAL, fail=local_fails)
        self.remote = FakeCompositor(MergeMode.REMOTE, fail=True) if remote else None
        self.merge_pipeline = MergePipeline(
            local=self.local,
            storage=self.storage,
            remote=self.remote,
            local_attempts=self.settings.local_merge_attempts,
        )
        self.orchestrator = TaskOrchestrator(
            store=self.store,
            generator=self.generator,
            scheduler=BatchScheduler(self.generator),
            merge_pipeline=self.merge_pipeline,
            pool=self.pool,
            llm_service=self.llm,
            settings=self.settings,
            sleep=sleep,
        )


@pytest.fixture
def store_dir(tmp_path):
    return str(tmp_path / "tasks")
