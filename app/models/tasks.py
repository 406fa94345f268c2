"""
Task Data Models

This module contains the long video task and segment models, the request
model used to create a task, and the read-only projections returned to
pollers.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from app.models.shared import (
    FirestoreBaseModel,
    MergeMode,
    SegmentStatus,
    SubtitleSettings,
    TaskStatus,
    VolumeLevels,
)
from config import (
    BATCH_SIZE,
    ESTIMATED_SECONDS_PER_SEGMENT,
    SEGMENT_DURATION_SECONDS,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_segment_count(
    duration_minutes: int, segment_duration: int = SEGMENT_DURATION_SECONDS
) -> int:
    """Number of fixed-length segments needed to cover the requested duration."""
    return math.ceil(duration_minutes * 60 / segment_duration)


def compute_batch_count(total_segments: int, batch_size: int = BATCH_SIZE) -> int:
    """Number of scheduling batches for a segment count."""
    return math.ceil(total_segments / batch_size)


class TaskConfig(BaseModel):
    """Generation settings chosen when the task is created."""

    language: Literal["cantonese", "mandarin", "english"] = "cantonese"
    voice_actor_id: str = "cantonese-male-narrator"
    speed_mode: Literal["fast", "quality"] = "fast"
    story_mode: Literal["character", "scene"] = "character"
    llm_model: str = "Qwen/Qwen2.5-72B-Instruct"
    image_model: str = "flux"
    video_model: str = "veo-3.1"
    generate_images: bool = Field(
        True, description="Generate a keyframe image before each video clip"
    )
    volumes: VolumeLevels = Field(default_factory=VolumeLevels)
    bgm_type: Literal[
        "none", "cinematic", "emotional", "upbeat", "dramatic", "peaceful"
    ] = "none"
    subtitles: SubtitleSettings = Field(default_factory=SubtitleSettings)


class CreateTaskRequest(BaseModel):
    """Request body for creating a long video task."""

    duration_minutes: int = Field(..., description="Requested video length in minutes")
    story: str = Field(..., description="Story or script to turn into a video")
    title: Optional[str] = None
    config: TaskConfig = Field(default_factory=TaskConfig)


class SegmentOverrides(BaseModel):
    """Optional replacements applied when a segment is regenerated."""

    prompt: Optional[str] = None
    narration: Optional[str] = None
    voice_actor_id: Optional[str] = None


class Segment(FirestoreBaseModel):
    """One fixed-length unit of the final video."""

    id: int = Field(..., ge=1, description="1-based segment number")
    batch_index: int = Field(..., ge=0)
    status: SegmentStatus = SegmentStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    prompt: Optional[str] = Field(None, description="Scene description for video")
    narration: Optional[str] = None
    image_prompt: Optional[str] = None
    voice_actor_id: Optional[str] = Field(
        None, description="Per-segment override of the task voice actor"
    )
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_count: int = 0
    start_time: int = Field(..., ge=0, description="Offset in seconds")
    end_time: int = Field(..., gt=0)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        segment_id: int,
        batch_size: int = BATCH_SIZE,
        segment_duration: int = SEGMENT_DURATION_SECONDS,
    ) -> "Segment":
        start_time = (segment_id - 1) * segment_duration
        return cls(
            id=segment_id,
            batch_index=(segment_id - 1) // batch_size,
            start_time=start_time,
            end_time=start_time + segment_duration,
        )

    @property
    def is_resolved(self) -> bool:
        return self.status in (SegmentStatus.COMPLETED, SegmentStatus.FAILED)


class MergeResult(BaseModel):
    """Outcome of a merge request."""

    mode: MergeMode
    video_url: Optional[str] = None
    segment_urls: List[str] = Field(default_factory=list)
    subtitle_url: Optional[str] = None
    error: Optional[str] = Field(None, description="Why higher tiers were skipped")
    created_at: datetime = Field(default_factory=utc_now)

    model_config = {"use_enum_values": True}


class LongVideoTask(FirestoreBaseModel):
    """Long video task document model for the tasks_long_video collection."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: Optional[str] = None
    story: str
    duration_minutes: int
    total_segments: int
    total_batches: int
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    config: TaskConfig = Field(default_factory=TaskConfig)
    error: Optional[str] = None
    merge: Optional[MergeResult] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    segments: List[Segment] = Field(default_factory=list)

    @classmethod
    def new(
        cls,
        request: CreateTaskRequest,
        batch_size: int = BATCH_SIZE,
        segment_duration: int = SEGMENT_DURATION_SECONDS,
    ) -> "LongVideoTask":
        """Build a pending task with all of its segments.

        Segment and batch counts are derived here once and stored; nothing
        recomputes them later in the task's life.
        """
        total_segments = compute_segment_count(
            request.duration_minutes, segment_duration
        )
        return cls(
            title=request.title,
            story=request.story,
            duration_minutes=request.duration_minutes,
            total_segments=total_segments,
            total_batches=compute_batch_count(total_segments, batch_size),
            config=request.config,
            segments=[
                Segment.create(i, batch_size, segment_duration)
                for i in range(1, total_segments + 1)
            ],
        )

    def get_segment(self, segment_id: int) -> Segment:
        if segment_id < 1 or segment_id > len(self.segments):
            raise KeyError(segment_id)
        return self.segments[segment_id - 1]

    def batch(self, batch_index: int) -> List[Segment]:
        return [s for s in self.segments if s.batch_index == batch_index]

    def is_batch_resolved(self, batch_index: int) -> bool:
        return all(s.is_resolved for s in self.batch(batch_index))

    def recompute_progress(self) -> int:
        """Aggregate progress: resolved segments count in full."""
        if not self.segments:
            return 0
        total = sum(100 if s.is_resolved else s.progress for s in self.segments)
        self.progress = min(100, round(total / len(self.segments)))
        return self.progress

    def document(self) -> Dict[str, Any]:
        """Task fields as stored, without the segment list."""
        return self.model_dump(mode="json", exclude={"segments"})


class TaskStats(BaseModel):
    """Summary counts shown next to the progress bar."""

    total_segments: int
    completed: int
    failed: int
    pending: int
    generating: int
    completed_batches: int
    current_batch: Optional[int] = Field(
        None, description="0-based index of the first unresolved batch"
    )
    estimated_remaining_minutes: int

    @classmethod
    def from_task(cls, task: LongVideoTask) -> "TaskStats":
        counts = {status.value: 0 for status in SegmentStatus}
        for segment in task.segments:
            counts[segment.status] += 1

        completed_batches = 0
        current_batch = None
        for batch_index in range(task.total_batches):
            if task.is_batch_resolved(batch_index):
                completed_batches += 1
            elif current_batch is None:
                current_batch = batch_index

        unresolved = counts["pending"] + counts["generating"]
        return cls(
            total_segments=task.total_segments,
            completed=counts["completed"],
            failed=counts["failed"],
            pending=counts["pending"],
            generating=counts["generating"],
            completed_batches=completed_batches,
            current_batch=current_batch,
            estimated_remaining_minutes=math.ceil(
                unresolved * ESTIMATED_SECONDS_PER_SEGMENT / 60
            ),
        )


class TaskView(BaseModel):
    """Read-only projection of a task for pollers."""

    task: LongVideoTask
    stats: TaskStats
