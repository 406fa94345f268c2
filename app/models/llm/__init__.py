from app.models.llm.common import LANGUAGE_NAMES, Prompt, TextGenerationModelConfig
from app.models.llm.hugging_face import HuggingFaceConfigManager
from app.models.llm.validation import Validator

__all__ = [
    "LANGUAGE_NAMES",
    "Prompt",
    "TextGenerationModelConfig",
    "HuggingFaceConfigManager",
    "Validator",
]
