from app.models.llm.common import LANGUAGE_NAMES, Prompt, TextGenerationModelConfig


class HuggingFaceConfigManager:
    # Generation settings for scene planning; max_tokens grows with the segment count
    base_generation_config = TextGenerationModelConfig(
        model_id="Qwen/Qwen2.5-72B-Instruct",
        max_tokens=1024,
        temperature=0.7,
        top_p=0.9,
    )
    tokens_per_scene = 160
    max_tokens_limit = 16384

    @staticmethod
    def get_text_generation_model_config(
        model_id: str, total_segments: int
    ) -> TextGenerationModelConfig:
        """Get the generation configuration for planning a given number of scenes."""
        manager = HuggingFaceConfigManager
        max_tokens = min(
            max(
                manager.base_generation_config.max_tokens,
                total_segments * manager.tokens_per_scene,
            ),
            manager.max_tokens_limit,
        )
        return manager.base_generation_config.model_copy(
            update={"model_id": model_id, "max_tokens": max_tokens}
        )

    @staticmethod
    def get_prompt_scene_plan(
        story: str,
        total_segments: int,
        segment_duration_seconds: int,
        language: str,
        story_mode: str,
    ) -> Prompt:
        """Get the formatted prompt for splitting a story into timed scenes."""
        language_name = LANGUAGE_NAMES.get(language, language)
        focus = (
            "Keep the same characters visually consistent across scenes."
            if story_mode == "character"
            else "Focus on places, landscapes and atmosphere rather than characters."
        )
        return Prompt(
            system_message=(
                "You are a film director who turns stories into shot lists for short AI-generated video clips. "
                f"Each clip lasts exactly {segment_duration_seconds} seconds. {focus} "
                "Reply with scenes only, each scene starting with [SCENE] and containing exactly three lines:\n"
                "DESCRIPTION: <visual description of the clip in English>\n"
                f"NARRATION: <one or two sentences of voice-over in {language_name}, readable within {segment_duration_seconds} seconds>\n"
                "IMAGE: <keyframe image prompt in English>"
            ),
            user_message=(
                f"Split the following story into exactly {total_segments} scenes, in story order.\n\n"
                f"Story:\n{story}"
            ),
        )
