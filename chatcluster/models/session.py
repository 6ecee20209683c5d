from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
MessageContent = Union[str, List[Dict[str, Any]]]


class ChatMessage(BaseModel):
    role: Role
    content: MessageContent


class ConversationHistory(BaseModel):
    """
    Ordered, role-tagged messages for one session.

    The first element is always the system prompt entry; everything after it
    is a user/assistant turn. ``append`` never allows a system entry to follow
    another system entry.
    """

    messages: List[ChatMessage] = Field(default_factory=list)

    @classmethod
    def start(cls, system_prompt: str) -> "ConversationHistory":
        return cls(messages=[ChatMessage(role="system", content=system_prompt)])

    @property
    def turns(self) -> List[ChatMessage]:
        return [m for m in self.messages if m.role != "system"]

    def ensure_system_prompt(self, system_prompt: str) -> None:
        if self.messages and self.messages[0].role == "system":
            return
        self.messages.insert(0, ChatMessage(role="system", content=system_prompt))

    def append(self, role: Role, content: MessageContent) -> None:
        if role == "system" and self.messages and self.messages[-1].role == "system":
            raise ValueError("history cannot hold two consecutive system entries")
        self.messages.append(ChatMessage(role=role, content=content))

    def trim(self, max_turns: int) -> int:
        """
        Drop the oldest non-system entries until at most ``max_turns`` remain.
        Returns the number of dropped entries.
        """
        dropped = 0
        while len(self.turns) > max_turns:
            for idx, message in enumerate(self.messages):
                if message.role != "system":
                    del self.messages[idx]
                    dropped += 1
                    break
        return dropped

    def reset(self) -> None:
        if self.messages and self.messages[0].role == "system":
            self.messages = self.messages[:1]
        else:
            self.messages = []


class FileDescriptor(BaseModel):
    """
    Metadata for one uploaded file. ``path`` is relative to the shared upload
    base directory and is the only thing used to locate the bytes on disk.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Generated storage name, also the file id")
    name: str = Field(..., description="Client-supplied display name")
    size: int = Field(..., ge=0)
    type: str = Field(..., description="Declared or repaired MIME type")
    category: str = Field(..., description="Storage category: images, pdfs, audio, others")
    path: str = Field(..., description="Storage path relative to the upload base dir")
    url: str = Field(..., description="Fetchable URL for the stored file")
    uploaded_at: str = Field(..., alias="uploadedAt", description="ISO-8601 upload time")
    vision_ready: bool = Field(False, alias="visionReady")
    document_ready: bool = Field(False, alias="documentReady")


class UserSession(BaseModel):
    """
    Per-user server-held state: activity timestamps, attached files,
    conversation history and preferences.
    """

    id: str = Field(..., description="Opaque user identifier")
    worker_id: Optional[str] = Field(None, description="Worker that created the session")
    created_at: float = Field(default_factory=time.time, description="Epoch seconds")
    last_activity: float = Field(default_factory=time.time, description="Epoch seconds")
    files: List[FileDescriptor] = Field(default_factory=list)
    history: ConversationHistory = Field(default_factory=ConversationHistory)
    preferences: Dict[str, Any] = Field(default_factory=dict)

    def touch(self, now: float | None = None) -> "UserSession":
        self.last_activity = now if now is not None else time.time()
        return self

    def add_file(self, descriptor: FileDescriptor) -> "UserSession":
        self.files.append(descriptor)
        return self

    def find_file(self, file_id: str) -> Optional[FileDescriptor]:
        for descriptor in self.files:
            if descriptor.id == file_id:
                return descriptor
        return None

    def remove_file(self, file_id: str) -> Optional[FileDescriptor]:
        descriptor = self.find_file(file_id)
        if descriptor is not None:
            self.files = [f for f in self.files if f.id != file_id]
        return descriptor

    def is_idle(self, timeout_seconds: float, now: float | None = None) -> bool:
        current = now if now is not None else time.time()
        return current - self.last_activity > timeout_seconds


__all__ = [
    "ChatMessage",
    "ConversationHistory",
    "FileDescriptor",
    "MessageContent",
    "Role",
    "UserSession",
]
