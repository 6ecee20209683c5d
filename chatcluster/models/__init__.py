from .catalog import MODEL_CATALOG, TTS_VOICES, ModelDescriptor, clamp_max_tokens, describe_model
from .session import ChatMessage, ConversationHistory, FileDescriptor, UserSession
from .stats import WorkerReadyMessage, WorkerStatsReport

__all__ = [
    "ChatMessage",
    "ConversationHistory",
    "FileDescriptor",
    "MODEL_CATALOG",
    "ModelDescriptor",
    "TTS_VOICES",
    "UserSession",
    "WorkerReadyMessage",
    "WorkerStatsReport",
    "clamp_max_tokens",
    "describe_model",
]
