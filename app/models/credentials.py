from enum import Enum
from typing import Dict, Iterable, List

from pydantic import BaseModel, Field


class CredentialOutcome(str, Enum):
    """Outcome reported when a credential is released."""

    SUCCESS = "success"
    THROTTLED = "throttled"
    FAILURE = "failure"


class Credential(BaseModel):
    """One usable slot for calling a provider.

    Timestamps are readings of the pool's clock (monotonic seconds), not
    wall-clock datetimes.
    """

    id: str
    secret: str = Field(..., repr=False)
    provider: str
    in_flight: int = 0
    last_used: float = 0.0
    cooldown_until: float = 0.0
    consecutive_failures: int = 0

    def is_cooling_down(self, now: float) -> bool:
        return self.cooldown_until > now

    def masked(self) -> Dict[str, object]:
        """State without the secret, safe to return from an API."""
        data = self.model_dump(exclude={"secret"})
        data["secret"] = f"...{self.secret[-4:]}" if len(self.secret) > 4 else "***"
        return data


def credentials_from_keys(
    keys_by_provider: Dict[str, List[str]], keyless: Iterable[str] = ()
) -> List[Credential]:
    """Build credentials from a {provider: [secret, ...]} mapping.

    A provider listed in ``keyless`` that has no keys gets one credential with
    an empty secret, so its calls go out anonymously or with application
    default credentials while still being limited like any other key.
    """
    credentials = []
    for provider, keys in keys_by_provider.items():
        for index, key in enumerate(keys, start=1):
            credentials.append(
                Credential(id=f"{provider}-{index}", secret=key, provider=provider)
            )
    for provider in keyless:
        if not keys_by_provider.get(provider):
            credentials.append(
                Credential(id=f"{provider}-default", secret="", provider=provider)
            )
    return credentials
