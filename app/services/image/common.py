from abc import ABC, abstractmethod

from pydantic import BaseModel


class ImageGenerationRequest(BaseModel):
    task_id: str
    segment_id: int
    prompt: str
    model: str = "flux"
    width: int = 1280
    height: int = 720


class ImageGenerationResponse(BaseModel):
    url: str
    content_type: str


class ImageRouterService(ABC):
    """Abstract base class for image generation router services."""

    name: str = "image"

    @abstractmethod
    async def generate_image(
        self, request: ImageGenerationRequest, api_key: str
    ) -> ImageGenerationResponse:
        """Generate a keyframe image and return where it was stored."""
        pass
