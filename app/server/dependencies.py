"""
Service wiring for the HTTP server.

Builds the orchestrator and everything it depends on from config.py. Routes
receive it through ``Depends(get_orchestrator)``, which tests override.
"""

import logging
import os
from typing import Optional

from app.models.credentials import credentials_from_keys
from app.models.settings import OrchestratorSettings
from app.services.credentials.pool import CredentialPool
from app.services.credentials.rate_limiter import BackoffPolicy, RateLimiter
from app.services.firestore_service import get_firestore_service
from app.services.image.pollinations_ai import PollinationsAiRouterService
from app.services.llm.hugging_face import HuggingFaceRouterService
from app.services.problems import ProblemClassifier
from app.services.storage_service import (
    ArtifactStorage,
    GcsArtifactStorage,
    LocalArtifactStorage,
)
from app.services.task_store import FirestoreTaskStore, JsonFileTaskStore, TaskStore
from app.services.tts.google_cloud import GoogleCloudTtsRouterService
from app.services.video.vector_engine import VectorEngineRouterService
from app.tasks.long_video.batch_scheduler import BatchScheduler
from app.tasks.long_video.compositor import CloudRunCompositor, MoviePyCompositor
from app.tasks.long_video.merge_pipeline import MergePipeline
from app.tasks.long_video.orchestrator import TaskOrchestrator
from app.tasks.long_video.segment_generator import SegmentGenerator
from config import (
    BGM_DIR,
    ENV,
    GCLOUD_FIRESTORE_DATABASE,
    GCLOUD_MERGE_JOB_NAME,
    GCLOUD_PROJECT,
    GCLOUD_REGION,
    GCLOUD_STB_ARTIFACTS_NAME,
    OUTPUT_DIR,
    KEYLESS_PROVIDERS,
    PROVIDER_API_KEYS,
    TASKS_DIR,
    VECTOR_ENGINE_BASE_URL,
    VIDEO_FALLBACK_MODEL,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global orchestrator instance
_orchestrator: Optional[TaskOrchestrator] = None


def build_orchestrator(settings: Optional[OrchestratorSettings] = None) -> TaskOrchestrator:
    """Assemble the orchestrator for the current environment.

    Development (ENV "d") keeps tasks and artifacts on the local disk;
    production keeps tasks in Firestore and artifacts in Cloud Storage.
    """
    settings = settings or OrchestratorSettings()

    storage: ArtifactStorage
    store: TaskStore
    if ENV == "p":
        storage = GcsArtifactStorage(GCLOUD_STB_ARTIFACTS_NAME)
        store = FirestoreTaskStore(get_firestore_service(GCLOUD_FIRESTORE_DATABASE))
    else:
        storage = LocalArtifactStorage(os.path.join(OUTPUT_DIR, "artifacts"))
        store = JsonFileTaskStore(TASKS_DIR)

    credentials = credentials_from_keys(PROVIDER_API_KEYS, keyless=KEYLESS_PROVIDERS)
    pool = CredentialPool(
        credentials,
        cooldown_base=settings.cooldown_base,
        cooldown_max=settings.cooldown_max,
        max_in_flight=settings.max_in_flight_per_credential,
        acquire_timeout=settings.acquire_timeout,
    )
    for provider in pool.providers:
        count = sum(1 for c in credentials if c.provider == provider)
        keyless = " (keyless)" if not PROVIDER_API_KEYS.get(provider) else ""
        logger.info(f"Loaded {count} credentials for {provider}{keyless}")

    classifier = ProblemClassifier(
        backoff=BackoffPolicy(
            base_delay=settings.retry_base_delay, max_delay=settings.retry_max_delay
        ),
        unavailable_after_credentials=settings.unavailable_after_credentials,
    )
    generator = SegmentGenerator(
        pool=pool,
        limiter=RateLimiter(settings.max_concurrent_per_provider),
        classifier=classifier,
        store=store,
        image_service=PollinationsAiRouterService(storage),
        video_service=VectorEngineRouterService(VECTOR_ENGINE_BASE_URL),
        tts_service=GoogleCloudTtsRouterService(storage),
        settings=settings,
        video_fallback_model=VIDEO_FALLBACK_MODEL,
    )

    remote = None
    if GCLOUD_MERGE_JOB_NAME and isinstance(storage, GcsArtifactStorage):
        remote = CloudRunCompositor(
            f"projects/{GCLOUD_PROJECT}/locations/{GCLOUD_REGION}/jobs/{GCLOUD_MERGE_JOB_NAME}",
            storage,
        )
    merge_pipeline = MergePipeline(
        local=MoviePyCompositor(storage, BGM_DIR),
        storage=storage,
        remote=remote,
        local_attempts=settings.local_merge_attempts,
    )

    return TaskOrchestrator(
        store=store,
        generator=generator,
        scheduler=BatchScheduler(generator),
        merge_pipeline=merge_pipeline,
        pool=pool,
        llm_service=HuggingFaceRouterService(),
        settings=settings,
    )


def get_orchestrator() -> TaskOrchestrator:
    """
    Get a singleton orchestrator instance.

    Returns:
        TaskOrchestrator instance
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
