import asyncio
import logging
from typing import Dict, Optional, Tuple

from google.cloud import texttospeech
from google.cloud.texttospeech_v1.types import (
    AudioConfig,
    SynthesisInput,
    VoiceSelectionParams,
)

from app.models.errors import ProviderError
from app.services.problems import normalize_exception
from app.services.storage_service import ArtifactStorage
from app.services.tts.common import (
    SpeechSynthesisRequest,
    SpeechSynthesisResponse,
    TtsRouterService,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Voice actor id -> (language code, Google Cloud voice name)
VOICE_ACTORS: Dict[str, Tuple[str, str]] = {
    "cantonese-male-narrator": ("yue-HK", "yue-HK-Standard-B"),
    "cantonese-male-young": ("yue-HK", "yue-HK-Standard-D"),
    "cantonese-female-narrator": ("yue-HK", "yue-HK-Standard-A"),
    "cantonese-female-young": ("yue-HK", "yue-HK-Standard-C"),
    "mandarin-male-narrator": ("cmn-CN", "cmn-CN-Wavenet-B"),
    "mandarin-female-narrator": ("cmn-CN", "cmn-CN-Wavenet-A"),
    "english-male-narrator": ("en-US", "en-US-Neural2-J"),
    "english-female-narrator": ("en-US", "en-US-Neural2-F"),
}

# Used when a voice actor id is unknown
DEFAULT_VOICES: Dict[str, Tuple[str, str]] = {
    "cantonese": VOICE_ACTORS["cantonese-male-narrator"],
    "mandarin": VOICE_ACTORS["mandarin-male-narrator"],
    "english": VOICE_ACTORS["english-male-narrator"],
}


class GoogleCloudTtsRouterService(TtsRouterService):
    """Concrete implementation of TtsRouterService using Google Cloud Text-to-Speech API.

    A client is built per API key so that the credential pool can rotate keys
    between calls. An empty key falls back to application default credentials.
    """

    name = "google_tts"

    def __init__(self, storage: ArtifactStorage):
        self.storage = storage
        self._clients: Dict[str, texttospeech.TextToSpeechClient] = {}

    def _client(self, api_key: str) -> texttospeech.TextToSpeechClient:
        if api_key not in self._clients:
            client_options = {"api_key": api_key} if api_key else None
            self._clients[api_key] = texttospeech.TextToSpeechClient(
                client_options=client_options
            )
        return self._clients[api_key]

    @staticmethod
    def resolve_voice(voice_actor_id: str, language: str) -> Tuple[str, str]:
        if voice_actor_id in VOICE_ACTORS:
            return VOICE_ACTORS[voice_actor_id]
        logger.warning(
            f"Unknown voice actor {voice_actor_id}, using default {language} voice"
        )
        return DEFAULT_VOICES.get(language, DEFAULT_VOICES["english"])

    @staticmethod
    def calculate_cost(text: str, voice_name: str) -> float:
        """Calculate the cost of synthesizing the given text.

        Args:
            text: The text to synthesize
            voice_name: Google Cloud voice name, whose tier sets the rate

        Returns:
            float: The cost in USD
        """
        if "Neural2" in voice_name or "Wavenet" in voice_name:
            cost_per_character = 0.000016
        elif "Chirp" in voice_name:
            cost_per_character = 0.00003
        elif "Studio" in voice_name:
            cost_per_character = 0.00016
        else:
            cost_per_character = 0.000004
        return len(text) * cost_per_character

    def _synthesize_speech(
        self, text: str, language_code: str, voice_name: str, speaking_rate: float, api_key: str
    ) -> bytes:
        synthesis_input = SynthesisInput(text=text)
        voice = VoiceSelectionParams(language_code=language_code, name=voice_name)
        audio_config = AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.MP3,
            speaking_rate=speaking_rate,
        )
        response = self._client(api_key).synthesize_speech(
            input=synthesis_input,
            voice=voice,
            audio_config=audio_config,
        )
        return response.audio_content

    async def synthesize(
        self, request: SpeechSynthesisRequest, api_key: Optional[str]
    ) -> SpeechSynthesisResponse:
        language_code, voice_name = self.resolve_voice(
            request.voice_actor_id, request.language
        )
        logger.info(
            f"Synthesizing {len(request.text)} characters for segment {request.segment_id} with {voice_name}"
        )

        try:
            audio_content = await asyncio.to_thread(
                self._synthesize_speech,
                request.text,
                language_code,
                voice_name,
                request.speaking_rate,
                api_key or "",
            )
        except Exception as e:
            logger.error(f"Error synthesizing speech: {str(e)}", exc_info=True)
            raise normalize_exception(self.name, e)

        if not audio_content:
            raise ProviderError(
                self.name, "Received empty response from Google Cloud TTS", status_code=502
            )

        url = await asyncio.to_thread(
            self.storage.upload,
            f"tasks/{request.task_id}/segments/{request.segment_id}/narration.mp3",
            audio_content,
            "audio/mpeg",
        )
        return SpeechSynthesisResponse(
            url=url,
            characters=len(request.text),
            cost=self.calculate_cost(request.text, voice_name),
        )
