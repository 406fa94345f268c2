"""
Error Models

This module contains the exception taxonomy shared by the orchestrator, the
provider adapters and the HTTP layer.
"""

from typing import Optional


class StoryreelError(Exception):
    """Base class for long video generation errors."""


class TaskValidationError(StoryreelError):
    """Raised when a create request is rejected before any task exists."""


class TaskNotFoundError(StoryreelError):
    """Raised when a task id is unknown to the store."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class SegmentBusyError(StoryreelError):
    """Raised when a segment is already held by a generator."""


class CredentialExhaustedError(StoryreelError):
    """Raised when no credential for a provider becomes usable within the timeout."""

    def __init__(self, provider: str, timeout: float):
        super().__init__(
            f"All credentials for provider '{provider}' exhausted after waiting {timeout:.1f}s"
        )
        self.provider = provider
        self.timeout = timeout


class ProviderError(StoryreelError):
    """Normalized failure of an external provider call.

    Every provider adapter converts its client library's exceptions into this
    shape so that classification never depends on which provider failed.

    Args:
        provider: Name of the provider (credential pool key)
        message: Human readable error message
        status_code: HTTP status code, if the provider returned one
        retry_after: Seconds the provider asked us to wait, if any
        transport: True when the call failed before a response was received
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        transport: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.transport = transport

    def __str__(self) -> str:
        prefix = f"[{self.provider}]"
        if self.status_code is not None:
            prefix = f"[{self.provider} {self.status_code}]"
        return f"{prefix} {self.message}"


class SegmentGenerationError(StoryreelError):
    """Raised when a segment exhausts its retry budget or hits a fatal error."""

    def __init__(self, segment_id: int, kind: str, message: str):
        super().__init__(f"Segment {segment_id} failed ({kind}): {message}")
        self.segment_id = segment_id
        self.kind = kind
        self.message = message


class MergeUnavailableError(StoryreelError):
    """Raised by a compositing tier that could not produce a merged video.

    The merge pipeline catches it and falls through to the next tier.
    """


class NoSegmentsToMergeError(StoryreelError):
    """Raised when a merge is requested but no segment has a playable video."""


class SegmentNotFoundError(StoryreelError):
    """Raised when a segment id is outside the task's segment range."""

    def __init__(self, task_id: str, segment_id: int):
        super().__init__(f"Segment {segment_id} not found in task {task_id}")
        self.task_id = task_id
        self.segment_id = segment_id
