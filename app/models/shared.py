"""
Shared Data Models

This module contains shared Pydantic base classes and enumerations that are
used across the long video task, segment and credential schemas.
"""

from datetime import datetime
from enum import Enum

from google.cloud.firestore import DocumentReference
from pydantic import BaseModel, ConfigDict, Field


class FirestoreBaseModel(BaseModel):
    """Base model for all Firestore documents with common configuration."""

    model_config = ConfigDict(
        # Allow population by field name or alias
        populate_by_name=True,
        # Convert datetime objects to timestamps for Firestore
        json_encoders={
            datetime: lambda dt: dt,  # Firestore handles datetime conversion
            DocumentReference: lambda ref: ref.path,  # Convert refs to paths
        },
        # Validate assignments
        validate_assignment=True,
        # Use enum values instead of names
        use_enum_values=True,
    )


# Enums
class TaskStatus(str, Enum):
    """Long video task status enumeration."""

    PENDING = "pending"
    ANALYZING = "analyzing"  # Scene planning before the first batch
    PROCESSING = "processing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> set:
        return {
            cls.CANCELLED.value,
            cls.COMPLETED.value,
            cls.COMPLETED_WITH_ERRORS.value,
            cls.FAILED.value,
        }


class SegmentStatus(str, Enum):
    """Segment status enumeration."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class MergeMode(str, Enum):
    """Which compositing tier produced a merge result."""

    LOCAL = "local"
    REMOTE = "remote"
    EMERGENCY = "emergency"


class RegenerateType(str, Enum):
    """Which artifacts a segment regeneration reruns."""

    ALL = "all"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


# Embedded Models
class VolumeLevels(BaseModel):
    """Per-track mixing levels used by the merge pipeline."""

    narration: float = Field(1.0, ge=0.0, le=1.0, description="Narration volume")
    bgm: float = Field(0.3, ge=0.0, le=1.0, description="Background music volume")
    video: float = Field(0.2, ge=0.0, le=1.0, description="Original clip volume")


class SubtitleSettings(BaseModel):
    """Subtitle burn-in configuration."""

    enabled: bool = True
    mode: str = Field("auto", pattern="^(auto|manual|none)$")
    style: str = Field("bottom", pattern="^(none|bottom|top|cinematic)$")
    font: str = "noto-sans-tc"
    size: str = Field("medium", pattern="^(small|medium|large)$")
    color: str = "white"
    position: str = "bottom-center"

    @property
    def burn_in(self) -> bool:
        """Whether subtitles should actually be rendered onto the video."""
        return self.enabled and self.mode != "none" and self.style != "none"
