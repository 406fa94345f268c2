"""
Credential Pool

Hands out provider API keys to segment generators. The pool is a plain
object that callers construct and inject; every instance owns its own lock,
so tests can run isolated pools side by side.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from app.models.credentials import Credential, CredentialOutcome
from app.models.errors import CredentialExhaustedError

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class CredentialPool:
    """Rotating, cooldown-aware set of credentials grouped by provider.

    All reads and writes of credential state happen while holding one
    ``asyncio.Condition``. The condition is only held for bookkeeping, never
    across a provider call, and waiters are woken on every release.

    Args:
        credentials: Credentials to manage, any provider mix
        cooldown_base: Cooldown after the first throttle, in seconds
        cooldown_max: Upper bound for the growing throttle cooldown
        max_in_flight: Concurrent calls allowed on a single credential
        acquire_timeout: Default seconds to wait for a usable credential
        clock: Time source for cooldown bookkeeping
    """

    def __init__(
        self,
        credentials: Iterable[Credential],
        cooldown_base: float = 5.0,
        cooldown_max: float = 60.0,
        max_in_flight: int = 1,
        acquire_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_base = cooldown_base
        self.cooldown_max = cooldown_max
        self.max_in_flight = max_in_flight
        self.acquire_timeout = acquire_timeout
        self._clock = clock

        self._credentials: Dict[str, List[Credential]] = {}
        for credential in credentials:
            self._credentials.setdefault(credential.provider, []).append(credential)

        self._condition = asyncio.Condition()
        # Monotonic counter of handouts; the least recently used credential has the lowest value
        self._handouts = 0
        self._last_handout: Dict[str, int] = {}

    @property
    def providers(self) -> List[str]:
        return list(self._credentials.keys())

    def has_provider(self, provider: str) -> bool:
        return bool(self._credentials.get(provider))

    def cooldown_for(self, consecutive_failures: int) -> float:
        """Throttle cooldown that doubles per consecutive failure, capped."""
        exponent = max(consecutive_failures - 1, 0)
        return min(self.cooldown_base * (2**exponent), self.cooldown_max)

    def _select(self, provider: str, exclude: Set[str]) -> Optional[Credential]:
        credentials = self._credentials.get(provider, [])
        # Exclusion is a preference: with a single key there is nobody else to rotate to
        candidates = [c for c in credentials if c.id not in exclude] or credentials
        now = self._clock()
        eligible = [
            c
            for c in candidates
            if not c.is_cooling_down(now) and c.in_flight < self.max_in_flight
        ]
        if not eligible:
            return None
        return min(eligible, key=lambda c: self._last_handout.get(c.id, 0))

    def _next_wakeup(self, provider: str) -> Optional[float]:
        now = self._clock()
        waits = [
            c.cooldown_until - now
            for c in self._credentials.get(provider, [])
            if c.is_cooling_down(now)
        ]
        return min(waits) if waits else None

    async def acquire(
        self,
        provider: str,
        exclude: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> Credential:
        """Return the least recently used credential that is free to take work.

        Blocks while every credential is cooling down or saturated.

        Args:
            provider: Provider whose credential is needed
            exclude: Credential ids to avoid if any alternative exists
            timeout: Seconds to wait, defaults to the pool's acquire_timeout

        Returns:
            Credential: The credential, already counted as in flight

        Raises:
            CredentialExhaustedError: If none becomes usable within the timeout
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        exclude = set(exclude or ())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async with self._condition:
            if not self._credentials.get(provider):
                raise CredentialExhaustedError(provider, 0.0)

            while True:
                credential = self._select(provider, exclude)
                if credential is not None:
                    self._handouts += 1
                    self._last_handout[credential.id] = self._handouts
                    credential.in_flight += 1
                    credential.last_used = self._clock()
                    return credential

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning(
                        f"No credential for {provider} became usable within {timeout:.1f}s"
                    )
                    raise CredentialExhaustedError(provider, timeout)

                wait = remaining
                wakeup = self._next_wakeup(provider)
                if wakeup is not None:
                    wait = min(wait, wakeup)
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def release(
        self,
        credential: Credential,
        outcome: Optional[CredentialOutcome],
        retry_after: Optional[float] = None,
    ) -> None:
        """Return a credential to the pool and record how the call went.

        An outcome of None releases the slot without touching failure state,
        for credentials given back before any call was made.
        """
        async with self._condition:
            credential.in_flight = max(credential.in_flight - 1, 0)

            if outcome == CredentialOutcome.SUCCESS:
                credential.consecutive_failures = 0
            elif outcome == CredentialOutcome.THROTTLED:
                credential.consecutive_failures += 1
                cooldown = self.cooldown_for(credential.consecutive_failures)
                if retry_after:
                    cooldown = max(cooldown, retry_after)
                credential.cooldown_until = self._clock() + cooldown
                logger.warning(
                    f"Credential {credential.id} throttled "
                    f"({credential.consecutive_failures} in a row), cooling down {cooldown:.1f}s"
                )
            elif outcome == CredentialOutcome.FAILURE:
                credential.consecutive_failures += 1

            self._condition.notify_all()

    def snapshot(self, provider: Optional[str] = None) -> List[Dict[str, object]]:
        """Masked copy of credential state, for diagnostics."""
        providers = [provider] if provider else self.providers
        return [
            c.masked() for name in providers for c in self._credentials.get(name, [])
        ]
