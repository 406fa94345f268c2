import asyncio
import logging
import re
from traceback import format_exc
from typing import Dict, List

from huggingface_hub import InferenceClient

from app.models.llm import HuggingFaceConfigManager, Prompt, Validator
from app.services.llm.common import (
    CostUsage,
    LlmRouterService,
    ScenePlan,
    ScenePlanRequest,
    ScenePlanResponse,
)
from app.services.problems import normalize_exception

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

FIELD_PATTERN = re.compile(r"^(DESCRIPTION|NARRATION|IMAGE)\s*:\s*(.*)$", re.IGNORECASE)


def parse_scenes(text: str) -> List[ScenePlan]:
    """Parse [SCENE] blocks with DESCRIPTION / NARRATION / IMAGE lines."""
    scenes = []
    for block in text.split("[SCENE]"):
        fields: Dict[str, str] = {}
        for line in block.splitlines():
            match = FIELD_PATTERN.match(line.strip())
            if match:
                fields[match.group(1).upper()] = match.group(2).strip()
        if "DESCRIPTION" not in fields or "NARRATION" not in fields:
            continue
        scenes.append(
            ScenePlan(
                segment_id=len(scenes) + 1,
                description=fields["DESCRIPTION"],
                narration=fields["NARRATION"],
                image_prompt=fields.get("IMAGE") or fields["DESCRIPTION"],
            )
        )
    return scenes


class HuggingFaceRouterService(LlmRouterService):
    """HuggingFace implementation of the LLM router service."""

    name = "huggingface"
    BASE_URL = "https://router.huggingface.co/v1"

    def _convert_prompt_to_messages(self, prompt: Prompt) -> List[Dict[str, str]]:
        """Convert a Prompt object to HuggingFace message format."""
        return [
            {"role": "system", "content": prompt.system_message},
            {"role": "user", "content": prompt.user_message},
        ]

    @LlmRouterService.validation_with_retries(
        lambda x: Validator.validate_scene_plan(x.scenes, x.requested_segments)
    )
    async def plan_scenes(
        self, request: ScenePlanRequest, api_key: str
    ) -> ScenePlanResponse:
        text_generation_model_config = (
            HuggingFaceConfigManager.get_text_generation_model_config(
                request.model, request.total_segments
            )
        )
        prompt = HuggingFaceConfigManager.get_prompt_scene_plan(
            story=request.story,
            total_segments=request.total_segments,
            segment_duration_seconds=request.segment_duration_seconds,
            language=request.language,
            story_mode=request.story_mode,
        )
        messages = self._convert_prompt_to_messages(prompt)
        client = InferenceClient(base_url=self.BASE_URL, api_key=api_key)

        try:
            response = await asyncio.to_thread(
                client.chat.completions.create,
                messages=messages,
                model=text_generation_model_config.model_id,
                max_tokens=text_generation_model_config.max_tokens,
                temperature=text_generation_model_config.temperature,
                top_p=text_generation_model_config.top_p,
            )
        except Exception as e:
            logger.error(
                f"Error planning scenes with HuggingFace: {str(e)}\n{format_exc()}"
            )
            raise normalize_exception(self.name, e)

        usage = response.usage
        scenes = parse_scenes(response.choices[0].message.content or "")
        logger.info(
            f"Planned {len(scenes)}/{request.total_segments} scenes using {usage.total_tokens} tokens"
        )
        return ScenePlanResponse(
            scenes=scenes,
            requested_segments=request.total_segments,
            usage=CostUsage(
                generation_prompt_tokens=usage.prompt_tokens,
                generation_completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            ),
        )
