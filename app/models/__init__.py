"""
Models Package

This package contains the schema models organized by domain:
- tasks.py: Long video task, segment and status projection models
- credentials.py: Provider credential models
- settings.py: Orchestrator tunables
- errors.py: Exception taxonomy
- shared.py: Common base models, enumerations and embedded models
"""

# Import all models for easy access
from app.models.credentials import Credential, CredentialOutcome, credentials_from_keys
from app.models.settings import OrchestratorSettings
from app.models.shared import (
    FirestoreBaseModel,
    MergeMode,
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
    TaskConfig,
    TaskStats,
    TaskView,
)

__all__ = [
    # Base models
    "FirestoreBaseModel",
    # Task models
    "CreateTaskRequest",
    "LongVideoTask",
    "MergeResult",
    "Segment",
    "SegmentOverrides",
    "TaskConfig",
    "TaskStats",
    "TaskView",
    # Credential models
    "Credential",
    "CredentialOutcome",
    "credentials_from_keys",
    # Settings
    "OrchestratorSettings",
    # Enumerations and embedded models
    "MergeMode",
    "RegenerateType",
    "SegmentStatus",
    "SubtitleSettings",
    "TaskStatus",
    "VolumeLevels",
]
