import logging
from typing import List

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class Validator:
    """Validator class for LLM-generated content validation."""

    @staticmethod
    def validate_scene_plan(scenes: List, total_segments: int) -> bool:
        """
        Validates that a scene plan covers at least half of the requested segments
        and that every scene has narration and a description.

        Args:
            scenes: Parsed scenes
            total_segments: Number of segments the task needs

        Returns:
            bool: True if validation passes, False otherwise
        """
        if not scenes:
            logger.error("Scene plan cannot be empty")
            return False

        # Short plans are padded later; a plan this short means the model ignored the prompt
        if len(scenes) * 2 < total_segments:
            logger.error(
                f"Found {len(scenes)} scenes, at least {(total_segments + 1) // 2} required"
            )
            return False

        for scene in scenes:
            if not scene.narration.strip() or not scene.description.strip():
                logger.error(f"Scene {scene.segment_id} is missing narration or description")
                return False

        return True
