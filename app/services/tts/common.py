from abc import ABC, abstractmethod

from pydantic import BaseModel


class SpeechSynthesisRequest(BaseModel):
    task_id: str
    segment_id: int
    text: str
    voice_actor_id: str
    language: str = "cantonese"
    speaking_rate: float = 1.0


class SpeechSynthesisResponse(BaseModel):
    url: str
    characters: int
    cost: float = 0.0


class TtsRouterService(ABC):
    """Abstract base class for narration text-to-speech router services."""

    name: str = "tts"

    @abstractmethod
    async def synthesize(
        self, request: SpeechSynthesisRequest, api_key: str
    ) -> SpeechSynthesisResponse:
        """Synthesize narration audio and return where it was stored.

        Args:
            request: Narration text and voice selection
            api_key: Credential to call the provider with

        Returns:
            SpeechSynthesisResponse: URL of the stored audio and billing info

        Raises:
            ProviderError: If the provider call fails
        """
        raise NotImplementedError("Subclasses must implement synthesize")
