from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel


class VideoGenerationRequest(BaseModel):
    task_id: str
    segment_id: int
    prompt: str
    model: str
    image_url: Optional[str] = None
    duration_seconds: int = 8
    aspect_ratio: str = "16:9"


class VideoGenerationResponse(BaseModel):
    url: str
    provider_task_id: Optional[str] = None


class VideoRouterService(ABC):
    """Abstract base class for video clip generation router services."""

    name: str = "video"

    @abstractmethod
    async def generate_video(
        self, request: VideoGenerationRequest, api_key: str
    ) -> VideoGenerationResponse:
        """Generate one clip and return its playable URL."""
        pass
