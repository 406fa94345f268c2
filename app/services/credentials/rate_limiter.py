import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from pydantic import BaseModel, Field

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class BackoffPolicy(BaseModel):
    """Exponential backoff between retries of the same call."""

    base_delay: float = Field(2.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay: float = Field(30.0, ge=0.0)

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        exponent = max(attempt - 1, 0)
        return min(self.base_delay * (self.multiplier**exponent), self.max_delay)


class RateLimiter:
    """Process-wide admission control for outbound provider calls.

    Caps simultaneous calls per provider regardless of how many credentials
    exist, and optionally spaces calls to the same provider apart.
    """

    def __init__(self, max_concurrent_per_provider: int = 6, min_interval: float = 0.0):
        self.max_concurrent_per_provider = max_concurrent_per_provider
        self.min_interval = min_interval
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._spacing_locks: Dict[str, asyncio.Lock] = {}
        self._last_call: Dict[str, float] = {}
        self._active: Dict[str, int] = {}

    def active(self, provider: str) -> int:
        """Number of calls currently admitted for a provider."""
        return self._active.get(provider, 0)

    async def _space_out(self, provider: str) -> None:
        lock = self._spacing_locks.setdefault(provider, asyncio.Lock())
        async with lock:
            loop = asyncio.get_running_loop()
            wait = self._last_call.get(provider, 0.0) + self.min_interval - loop.time()
            if wait > 0:
                logger.debug(f"Spacing {provider} call by {wait:.2f}s")
                await asyncio.sleep(wait)
            self._last_call[provider] = loop.time()

    @asynccontextmanager
    async def slot(self, provider: str) -> AsyncIterator[None]:
        """Hold one of the provider's call slots for the duration of the block."""
        semaphore = self._semaphores.setdefault(
            provider, asyncio.Semaphore(self.max_concurrent_per_provider)
        )
        async with semaphore:
            if self.min_interval > 0:
                await self._space_out(provider)
            self._active[provider] = self._active.get(provider, 0) + 1
            try:
                yield
            finally:
                self._active[provider] -= 1
