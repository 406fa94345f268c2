from typing import Dict

from pydantic import BaseModel, Field


class Prompt(BaseModel):
    """Standardized prompt structure for all LLM providers."""

    system_message: str
    user_message: str

    def __str__(self) -> str:
        """Convert the prompt to a string representation with system and user messages separated by double newlines."""
        return f"{self.system_message}\n\n{self.user_message}"


class TextGenerationModelConfig(BaseModel):
    """Configuration for a language model."""

    model_id: str
    max_tokens: int = Field(gt=0)
    temperature: float = Field(ge=0.0, le=1.0)
    top_p: float = Field(ge=0.0, le=1.0)


LANGUAGE_NAMES: Dict[str, str] = {
    "cantonese": "Cantonese (written in Traditional Chinese)",
    "mandarin": "Mandarin Chinese (written in Simplified Chinese)",
    "english": "English",
}
