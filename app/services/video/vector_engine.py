import asyncio
import logging
from traceback import format_exc
from typing import Any, Dict

import requests

from app.models.errors import ProviderError
from app.services.problems import normalize_exception
from app.services.video.common import (
    VideoGenerationRequest,
    VideoGenerationResponse,
    VideoRouterService,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class VectorEngineRouterService(VideoRouterService):
    """Video router service for Veo models served through the Vector Engine gateway.

    Generation is asynchronous on the provider side: a job is submitted, then
    polled until it reports a video URL or a failure.
    """

    name = "vector_engine"

    def __init__(
        self,
        base_url: str,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    async def _request(self, method: str, path: str, api_key: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await asyncio.to_thread(
                requests.request,
                method,
                f"{self.base_url}{path}",
                headers=self._headers(api_key),
                timeout=self.timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Vector Engine {method} {path} failed: {str(e)}\n{format_exc()}")
            raise normalize_exception(self.name, e)

    async def generate_video(
        self, request: VideoGenerationRequest, api_key: str
    ) -> VideoGenerationResponse:
        payload = {
            "model": request.model,
            "prompt": request.prompt,
            "duration": request.duration_seconds,
            "aspect_ratio": request.aspect_ratio,
        }
        if request.image_url:
            payload["image_url"] = request.image_url

        submitted = await self._request("POST", "/v1/video/create", api_key, json=payload)
        job_id = submitted.get("id")
        if not job_id:
            raise ProviderError(self.name, f"Submit returned no job id: {submitted}", status_code=502)
        logger.info(
            f"Submitted video job {job_id} for segment {request.segment_id} of task {request.task_id}"
        )

        for _ in range(self.max_polls):
            await asyncio.sleep(self.poll_interval)
            data = await self._request(
                "GET", "/v1/video/query", api_key, params={"id": job_id}
            )
            status = data.get("status")
            if status == "completed" and data.get("video_url"):
                return VideoGenerationResponse(url=data["video_url"], provider_task_id=job_id)
            if status == "failed":
                raise ProviderError(
                    self.name, f"Video job {job_id} failed: {data.get('error') or 'unknown error'}"
                )

        raise ProviderError(
            self.name,
            f"Video job {job_id} did not finish after {self.max_polls} polls",
            transport=True,
        )
