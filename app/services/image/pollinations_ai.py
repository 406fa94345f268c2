import asyncio
import logging
from traceback import format_exc
from urllib.parse import quote

import requests

from app.models.errors import ProviderError
from app.services.image.common import (
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageRouterService,
)
from app.services.problems import normalize_exception
from app.services.storage_service import ArtifactStorage

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class PollinationsAiRouterService(ImageRouterService):
    """Pollinations AI implementation of the image router service."""

    name = "pollinations"
    API_URL = "https://image.pollinations.ai/prompt/{prompt}?model={model}&width={width}&height={height}&nologo={nologo}&private={private}&safe={safe}"

    def __init__(self, storage: ArtifactStorage, timeout: int = 60):
        self.storage = storage
        self.timeout = timeout

    async def generate_image(
        self, request: ImageGenerationRequest, api_key: str
    ) -> ImageGenerationResponse:
        """Generate an image based on the provided prompt using Pollinations AI."""
        # NOTE: https://github.com/pollinations/pollinations/blob/master/APIDOCS.md#generate-image-api-%EF%B8%8F
        # NOTE: Anonymous tier is limited to 1 concurrent request per IP, tokens lift this.

        image_url = self.API_URL.format(
            prompt=quote(request.prompt),
            model=request.model,
            width=request.width,
            height=request.height,
            nologo="true",
            private="true",
            safe="true",
        )
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

        try:
            response = await asyncio.to_thread(
                requests.get, image_url, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Error downloading image: {str(e)}\n{format_exc()}")
            raise normalize_exception(self.name, e)

        # Verify content type is an image
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("image/"):
            logger.error(f"Invalid content type received: {content_type}")
            raise ProviderError(
                self.name,
                f"Response from image service was not an image ({content_type})",
                status_code=502,
            )

        extension = content_type.split("/")[-1].split(";")[0] or "jpg"
        url = await asyncio.to_thread(
            self.storage.upload,
            f"tasks/{request.task_id}/segments/{request.segment_id}/image.{extension}",
            response.content,
            content_type,
        )
        return ImageGenerationResponse(url=url, content_type=content_type)
