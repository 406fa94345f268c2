import logging
import re
from abc import ABC, abstractmethod
from functools import wraps
from typing import Awaitable, Callable, List, TypeVar

from pydantic import BaseModel

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Type variable for the return type of decorated functions
T = TypeVar("T")


class ScenePlanRequest(BaseModel):
    story: str
    total_segments: int
    segment_duration_seconds: int = 8
    language: str = "cantonese"
    story_mode: str = "character"
    model: str


class ScenePlan(BaseModel):
    """What one segment shows and says."""

    segment_id: int
    description: str
    narration: str
    image_prompt: str


class CostUsage(BaseModel):
    """Model for tracking token usage in LLM calls."""

    generation_prompt_tokens: int = 0
    generation_completion_tokens: int = 0
    total_tokens: int = 0


class ScenePlanResponse(BaseModel):
    scenes: List[ScenePlan]
    requested_segments: int
    usage: CostUsage = CostUsage()


def _sentences(text: str) -> List[str]:
    parts = re.split(r"(?<=[。！？.!?\n])", text)
    return [p.strip() for p in parts if p.strip()]


def fallback_scene_plans(story: str, total_segments: int) -> List[ScenePlan]:
    """Split the story evenly across segments without an LLM.

    Used when scene planning fails, so generation can still proceed with the
    story's own words as narration.
    """
    sentences = _sentences(story) or [story.strip() or "..."]
    scenes = []
    for index in range(total_segments):
        # Spread sentences so every segment gets a contiguous, non-empty slice
        start = index * len(sentences) // total_segments
        end = max((index + 1) * len(sentences) // total_segments, start + 1)
        chunk = " ".join(sentences[start:end]) or sentences[-1]
        scenes.append(
            ScenePlan(
                segment_id=index + 1,
                description=chunk,
                narration=chunk,
                image_prompt=chunk,
            )
        )
    return scenes


def fit_scene_plans(scenes: List[ScenePlan], total_segments: int) -> List[ScenePlan]:
    """Pad or trim planned scenes to exactly one per segment, renumbered from 1."""
    if not scenes:
        raise ValueError("Scene plan is empty")
    fitted = []
    for index in range(total_segments):
        source = scenes[min(index, len(scenes) - 1)]
        fitted.append(source.model_copy(update={"segment_id": index + 1}))
    return fitted


class LlmRouterService(ABC):
    """Abstract base class for LLM router services."""

    name: str = "llm"

    @staticmethod
    def validation_with_retries(
        validation_func: Callable[[T], bool], max_retries: int = 2
    ) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
        """
        Decorator that retries an async function if it throws an exception or validation fails.

        Args:
            validation_func: Function that takes the result and returns True if valid
            max_retries: Maximum number of retry attempts (default: 2)

        Returns:
            Decorated async function that will retry on failure or invalid results
        """

        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @wraps(func)
            async def wrapper(*args, **kwargs) -> T:
                last_exception = None

                for attempt in range(max_retries + 1):  # +1 for initial attempt
                    try:
                        result: T = await func(*args, **kwargs)
                    except Exception as e:
                        last_exception = e
                        logger.warning(
                            f"Exception in {func.__name__}, attempt {attempt + 1}/{max_retries + 1}: {str(e)}"
                        )
                        continue

                    if validation_func(result):
                        if attempt > 0:
                            logger.warning(
                                f"Function {func.__name__} succeeded on attempt {attempt + 1}"
                            )
                        return result
                    logger.warning(
                        f"Validation failed for {func.__name__}, attempt {attempt + 1}/{max_retries + 1}"
                    )

                logger.error(
                    f"Function {func.__name__} failed after {max_retries + 1} attempts"
                )
                if last_exception:
                    raise last_exception
                raise ValueError(
                    f"Validation failed for {func.__name__} after {max_retries + 1} attempts"
                )

            return wrapper

        return decorator

    @abstractmethod
    async def plan_scenes(
        self, request: ScenePlanRequest, api_key: str
    ) -> ScenePlanResponse:
        """Split a story into one scene per segment."""
        pass
