"""
Problem Classifier

Turns a failed provider call into a problem kind and a repair decision.
Adapters call ``normalize_exception`` at their boundary, so everything the
classifier sees is a ``ProviderError`` regardless of which client library
raised it.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Set

import requests
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel

from app.models.errors import ProviderError
from app.services.credentials.rate_limiter import BackoffPolicy

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ProblemKind(str, Enum):
    THROTTLED = "throttled"
    TRANSIENT_SERVER_ERROR = "transient_server_error"
    INVALID_INPUT = "invalid_input"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"


class RepairAction(str, Enum):
    RETRY_SAME_CREDENTIAL = "retry_same_credential"
    RETRY_DIFFERENT_CREDENTIAL = "retry_different_credential"
    SWITCH_FALLBACK_PROVIDER = "switch_fallback_provider"
    FATAL = "fatal"


class RepairDecision(BaseModel):
    action: RepairAction
    kind: ProblemKind
    delay: float = 0.0


def _retry_after_seconds(headers) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def normalize_exception(provider: str, exc: BaseException) -> ProviderError:
    """Convert any client library failure into a ProviderError.

    Args:
        provider: Name of the provider whose call failed
        exc: The exception raised by the client library

    Returns:
        ProviderError: Normalized error carrying status code and retry hints
    """
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, google_exceptions.GoogleAPICallError):
        return ProviderError(provider, exc.message or str(exc), status_code=exc.code)
    if isinstance(exc, google_exceptions.RetryError):
        return ProviderError(provider, str(exc), transport=True)

    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return ProviderError(provider, f"Network error: {exc}", transport=True)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ProviderError(provider, f"Network error: {exc}", transport=True)

    # requests.HTTPError and huggingface_hub's HTTP errors both carry the response
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return ProviderError(
            provider,
            str(exc),
            status_code=status_code,
            retry_after=_retry_after_seconds(getattr(response, "headers", None)),
        )

    return ProviderError(provider, f"{type(exc).__name__}: {exc}")


class FailureHistory:
    """Per-segment record of what has gone wrong so far.

    Transient failures are remembered by credential id, per provider, until
    the provider next succeeds for this segment or the segment moves on to a
    fallback route.
    """

    def __init__(self):
        self.unknown_failures = 0
        self.last_kind: Optional[ProblemKind] = None
        self.last_error: Optional[str] = None
        self.transient_credentials: Dict[str, Set[str]] = {}

    def record_transient(self, provider: str, credential_id: Optional[str]) -> int:
        """Remember a transient failure and return how many credentials have had one."""
        failed = self.transient_credentials.setdefault(provider, set())
        if credential_id:
            failed.add(credential_id)
        return len(failed)

    def reset(self, provider: str) -> None:
        self.transient_credentials.pop(provider, None)


class ProblemClassifier:
    """Classifies provider failures and picks the repair action.

    Once enough distinct credentials have hit transient failures for the same
    segment, the provider itself is treated as unavailable.
    """

    THROTTLE_MARKERS = (
        "rate limit",
        "rate_limit",
        "too many requests",
        "quota exceeded",
        "throttl",
    )
    UNAVAILABLE_MARKERS = (
        "model not available",
        "model_not_found",
        "overloaded",
        "no available channel",
    )

    def __init__(
        self,
        backoff: Optional[BackoffPolicy] = None,
        unavailable_after_credentials: int = 2,
    ):
        self.backoff = backoff or BackoffPolicy()
        self.unavailable_after_credentials = unavailable_after_credentials

    def classify(
        self,
        error: ProviderError,
        credential_id: Optional[str] = None,
        history: Optional[FailureHistory] = None,
    ) -> ProblemKind:
        message = (error.message or "").lower()
        status_code = error.status_code

        if status_code == 429 or any(m in message for m in self.THROTTLE_MARKERS):
            return ProblemKind.THROTTLED

        if any(m in message for m in self.UNAVAILABLE_MARKERS):
            return ProblemKind.PROVIDER_UNAVAILABLE

        if error.transport or (status_code is not None and status_code >= 500):
            if (
                history is not None
                and history.record_transient(error.provider, credential_id)
                >= self.unavailable_after_credentials
            ):
                return ProblemKind.PROVIDER_UNAVAILABLE
            return ProblemKind.TRANSIENT_SERVER_ERROR

        if status_code is not None and 400 <= status_code < 500:
            return ProblemKind.INVALID_INPUT

        return ProblemKind.UNKNOWN

    def decide(
        self,
        error: ProviderError,
        history: FailureHistory,
        attempt: int,
        credential_id: Optional[str] = None,
        has_fallback: bool = False,
    ) -> RepairDecision:
        """Pick the repair for a failure.

        Args:
            error: The normalized failure
            history: Failures already seen while generating this segment
            attempt: 1-based number of the failed attempt
            credential_id: Credential used for the failed call
            has_fallback: Whether another provider or model can take over

        Returns:
            RepairDecision: What the generator should do next
        """
        kind = self.classify(error, credential_id, history)
        history.last_kind = kind
        history.last_error = str(error)

        if kind == ProblemKind.THROTTLED:
            decision = RepairDecision(
                action=RepairAction.RETRY_DIFFERENT_CREDENTIAL, kind=kind
            )
        elif kind == ProblemKind.TRANSIENT_SERVER_ERROR:
            decision = RepairDecision(
                action=RepairAction.RETRY_SAME_CREDENTIAL,
                kind=kind,
                delay=self.backoff.delay(attempt),
            )
        elif kind == ProblemKind.PROVIDER_UNAVAILABLE:
            action = (
                RepairAction.SWITCH_FALLBACK_PROVIDER
                if has_fallback
                else RepairAction.FATAL
            )
            decision = RepairDecision(action=action, kind=kind)
        elif kind == ProblemKind.INVALID_INPUT:
            decision = RepairDecision(action=RepairAction.FATAL, kind=kind)
        else:
            history.unknown_failures += 1
            if history.unknown_failures == 1:
                decision = RepairDecision(
                    action=RepairAction.RETRY_SAME_CREDENTIAL,
                    kind=kind,
                    delay=self.backoff.delay(attempt),
                )
            else:
                decision = RepairDecision(action=RepairAction.FATAL, kind=kind)

        logger.info(
            f"Classified {error} as {kind.value}, action {decision.action.value}"
        )
        return decision
