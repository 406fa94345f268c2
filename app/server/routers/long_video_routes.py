import logging
import math
from traceback import format_exc
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.models.errors import (
    NoSegmentsToMergeError,
    SegmentBusyError,
    SegmentNotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from app.models.shared import RegenerateType, SubtitleSettings, VolumeLevels
from app.models.tasks import (
    CreateTaskRequest,
    LongVideoTask,
    MergeResult,
    Segment,
    SegmentOverrides,
    TaskStats,
    TaskView,
    compute_batch_count,
    compute_segment_count,
)
from app.server.dependencies import get_orchestrator
from app.services.tts.google_cloud import VOICE_ACTORS
from app.tasks.long_video.orchestrator import TaskOrchestrator
from config import (
    ESTIMATED_SECONDS_PER_SEGMENT,
    SUPPORTED_DURATIONS,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create a router for long video task operations
long_video_router = APIRouter()


class CreateTaskResponse(BaseModel):
    task_id: str
    status: str
    total_segments: int
    total_batches: int
    estimated_minutes: int


class TaskListResponse(BaseModel):
    data: List[LongVideoTask]


class TaskActionResponse(BaseModel):
    task_id: str
    status: str


class RegenerateSegmentRequest(BaseModel):
    regenerate_type: RegenerateType = RegenerateType.ALL
    prompt: Optional[str] = None
    narration: Optional[str] = None
    voice_actor_id: Optional[str] = None


class MergeRequest(BaseModel):
    volumes: Optional[VolumeLevels] = None
    subtitles: Optional[SubtitleSettings] = None


class DurationEstimate(BaseModel):
    duration_minutes: int
    total_segments: int
    total_batches: int
    estimated_minutes: int


class LongVideoConfigResponse(BaseModel):
    segment_duration_seconds: int
    batch_size: int
    min_duration_minutes: int
    max_duration_minutes: int
    supported_durations: List[int]
    voice_actors: List[str]
    bgm_types: List[str] = Field(
        default_factory=lambda: ["none", "cinematic", "emotional", "upbeat", "dramatic", "peaceful"]
    )


def _to_http_error(e: Exception, action: str) -> HTTPException:
    """Map orchestrator errors onto HTTP status codes."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, TaskValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (TaskNotFoundError, SegmentNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (SegmentBusyError, NoSegmentsToMergeError)):
        return HTTPException(status_code=409, detail=str(e))

    logger.error(f"Failed to {action}: {str(e)}\n{format_exc()}")
    return HTTPException(status_code=500, detail=f"Failed to {action}")


def _estimate(
    duration_minutes: int, orchestrator: TaskOrchestrator
) -> DurationEstimate:
    settings = orchestrator.settings
    total_segments = compute_segment_count(duration_minutes, settings.segment_duration_seconds)
    return DurationEstimate(
        duration_minutes=duration_minutes,
        total_segments=total_segments,
        total_batches=compute_batch_count(total_segments, settings.batch_size),
        estimated_minutes=math.ceil(total_segments * ESTIMATED_SECONDS_PER_SEGMENT / 60),
    )


@long_video_router.post("/tasks", response_model=CreateTaskResponse)
async def create_task(
    request: CreateTaskRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> CreateTaskResponse:
    """Create a long video task and start generating it in the background."""
    try:
        task = await orchestrator.create_task(request)
        return CreateTaskResponse(
            task_id=task.id,
            status=task.status,
            total_segments=task.total_segments,
            total_batches=task.total_batches,
            estimated_minutes=_estimate(task.duration_minutes, orchestrator).estimated_minutes,
        )
    except Exception as e:
        raise _to_http_error(e, "create task")


@long_video_router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    limit: int = Query(20, ge=1, le=100),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskListResponse:
    """List tasks, newest first, without their segments."""
    try:
        return TaskListResponse(data=await orchestrator.list_tasks(limit=limit))
    except Exception as e:
        raise _to_http_error(e, "list tasks")


@long_video_router.get("/tasks/{task_id}", response_model=TaskView)
async def get_task(
    task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskView:
    """Get a task with every segment. Safe to poll every few seconds."""
    try:
        return await orchestrator.get_status(task_id)
    except Exception as e:
        raise _to_http_error(e, "get task")


@long_video_router.get("/tasks/{task_id}/stats", response_model=TaskStats)
async def get_task_stats(
    task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskStats:
    try:
        return await orchestrator.get_stats(task_id)
    except Exception as e:
        raise _to_http_error(e, "get task stats")


@long_video_router.post("/tasks/{task_id}/cancel", response_model=TaskActionResponse)
async def cancel_task(
    task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskActionResponse:
    """Cancel a task. Cancelling a finished task changes nothing."""
    try:
        task = await orchestrator.cancel(task_id)
        return TaskActionResponse(task_id=task.id, status=task.status)
    except Exception as e:
        raise _to_http_error(e, "cancel task")


@long_video_router.post(
    "/tasks/{task_id}/segments/{segment_id}/regenerate", response_model=Segment
)
async def regenerate_segment(
    task_id: str,
    segment_id: int,
    request: Optional[RegenerateSegmentRequest] = None,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Segment:
    """Generate one segment again, optionally with a new prompt, narration or voice."""
    request = request or RegenerateSegmentRequest()
    try:
        return await orchestrator.regenerate_segment(
            task_id,
            segment_id,
            overrides=SegmentOverrides(
                prompt=request.prompt,
                narration=request.narration,
                voice_actor_id=request.voice_actor_id,
            ),
            regenerate_type=request.regenerate_type,
        )
    except Exception as e:
        raise _to_http_error(e, "regenerate segment")


@long_video_router.post("/tasks/{task_id}/merge", response_model=MergeResult)
async def merge_task(
    task_id: str,
    request: Optional[MergeRequest] = None,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> MergeResult:
    """Merge the completed segments into one video, degrading to a segment list."""
    request = request or MergeRequest()
    try:
        return await orchestrator.merge(task_id, request.volumes, request.subtitles)
    except Exception as e:
        raise _to_http_error(e, "merge task")


@long_video_router.delete("/tasks/{task_id}", response_model=TaskActionResponse)
async def delete_task(
    task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)
) -> TaskActionResponse:
    try:
        await orchestrator.delete_task(task_id)
        return TaskActionResponse(task_id=task_id, status="deleted")
    except Exception as e:
        raise _to_http_error(e, "delete task")


@long_video_router.get("/config", response_model=LongVideoConfigResponse)
async def get_config(
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> LongVideoConfigResponse:
    settings = orchestrator.settings
    return LongVideoConfigResponse(
        segment_duration_seconds=settings.segment_duration_seconds,
        batch_size=settings.batch_size,
        min_duration_minutes=settings.min_duration_minutes,
        max_duration_minutes=settings.max_duration_minutes,
        supported_durations=SUPPORTED_DURATIONS,
        voice_actors=sorted(VOICE_ACTORS.keys()),
    )


@long_video_router.get("/calculate", response_model=DurationEstimate)
async def calculate(
    minutes: int = Query(..., description="Requested video length in minutes"),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> DurationEstimate:
    """Segment and batch counts for a duration, without creating a task."""
    settings = orchestrator.settings
    if not settings.min_duration_minutes <= minutes <= settings.max_duration_minutes:
        raise HTTPException(
            status_code=422,
            detail=f"Duration must be between {settings.min_duration_minutes} "
            f"and {settings.max_duration_minutes} minutes",
        )
    return _estimate(minutes, orchestrator)
