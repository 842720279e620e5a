"""Abstract remote functions interface. The chat and analysis backends implement this."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

ANALYSIS_KINDS = ("diagnosis", "solution", "memory")


class RemoteFunctionError(Exception):
    """A remote function call failed. `status` is None for transport errors."""

    def __init__(self, message: str, status: int | None = None, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload or {}


@dataclass
class ChatRequest:
    message: str
    conversation_history: list[dict[str, Any]]
    subject_id: str
    account_id: str
    conversation_id: str
    image_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "conversation_history": self.conversation_history,
            "patient_id": self.subject_id,
            "user_id": self.account_id,
            "conversation_id": self.conversation_id,
            "image_url": self.image_url,
        }


@dataclass
class ChatReply:
    text: str
    products: list[dict[str, Any]] | None = None


@dataclass
class AnalysisRequest:
    conversation_id: str
    subject_id: str
    recent_messages: list[dict[str, Any]]

    def to_payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "patient_id": self.subject_id,
            "recent_messages": self.recent_messages,
        }


@dataclass
class AnalysisOutcome:
    added: int = 0
    updated: int = 0
    items: list[Any] = field(default_factory=list)


class BaseFunctionsClient(ABC):
    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatReply:
        """Run one chat turn. Raises RemoteFunctionError on failure."""
        ...

    @abstractmethod
    async def analyze(self, kind: str, request: AnalysisRequest) -> AnalysisOutcome:
        """Run one background analysis ("diagnosis" | "solution" | "memory")."""
        ...

    @abstractmethod
    async def migrate_conversations(self) -> int:
        """Attach orphaned conversations to episodes. Returns the migrated count."""
        ...
