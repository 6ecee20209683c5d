from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ModelDescriptor(BaseModel):
    """
    A chat model the upstream serves, as advertised by GET /api/models.
    """

    id: str = Field(..., description="Upstream model id")
    name: str = Field(..., description="Display name")
    description: str = ""
    max_tokens: int = Field(..., description="Ceiling applied to the caller's max_tokens", ge=1)
    vision: bool = Field(False, description="Accepts base64 image content parts")
    context_length: int = Field(..., ge=1)
    strength: str = ""


MODEL_CATALOG: List[ModelDescriptor] = [
    ModelDescriptor(
        id="deepseek-ai/DeepSeek-V3.2",
        name="DeepSeek-V3.2",
        description="Strong code generation and text analysis",
        max_tokens=32768,
        vision=False,
        context_length=128000,
        strength="code generation, text analysis, file processing",
    ),
    ModelDescriptor(
        id="deepseek-ai/DeepSeek-OCR",
        name="DeepSeek-OCR",
        description="Text recognition from images and visual documents",
        max_tokens=32768,
        vision=True,
        context_length=128000,
        strength="image OCR, visual document processing",
    ),
    ModelDescriptor(
        id="Qwen/Qwen3-VL-32B-Instruct",
        name="Qwen3-VL-32B",
        description="Multimodal model with reasoning and file analysis",
        max_tokens=32768,
        vision=True,
        context_length=32000,
        strength="multimodal reasoning, visual understanding",
    ),
    ModelDescriptor(
        id="Qwen/Qwen2.5-VL-72B-Instruct",
        name="Qwen2.5-VL-72B",
        description="Vision language model",
        max_tokens=8192,
        vision=True,
        context_length=8192,
        strength="image understanding",
    ),
    ModelDescriptor(
        id="Qwen/Qwen2.5-72B-Instruct",
        name="Qwen2.5-72B",
        description="Text-only language model",
        max_tokens=32768,
        vision=False,
        context_length=32000,
        strength="general conversation, code generation",
    ),
]

_CATALOG_BY_ID: Dict[str, ModelDescriptor] = {m.id: m for m in MODEL_CATALOG}


def get_model(model_id: str) -> Optional[ModelDescriptor]:
    return _CATALOG_BY_ID.get(model_id)


def describe_model(model_id: str) -> ModelDescriptor:
    """
    Catalog entry for ``model_id``; unknown ids are passed through upstream
    untouched with a text-only, generously bounded descriptor.
    """
    known = get_model(model_id)
    if known is not None:
        return known
    return ModelDescriptor(
        id=model_id,
        name=model_id,
        description="",
        max_tokens=32768,
        vision=False,
        context_length=32000,
        strength="general conversation",
    )


def clamp_max_tokens(model_id: str, requested: int) -> int:
    return max(1, min(requested, describe_model(model_id).max_tokens))


TTS_VOICES: List[str] = [
    "FunAudioLLM/CosyVoice2-0.5B:alex",
    "FunAudioLLM/CosyVoice2-0.5B:brandon",
    "FunAudioLLM/CosyVoice2-0.5B:anna",
    "FunAudioLLM/CosyVoice2-0.5B:bella",
    "FunAudioLLM/CosyVoice2-0.5B:claire",
    "FunAudioLLM/CosyVoice2-0.5B:diana",
]


__all__ = [
    "ModelDescriptor",
    "MODEL_CATALOG",
    "TTS_VOICES",
    "clamp_max_tokens",
    "describe_model",
    "get_model",
]
