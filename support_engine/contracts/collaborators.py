"""
Collaborator Contracts - Narrow interfaces to the host platform

The engine never owns persistence, delivery or the job queue. It talks to
them through these abstract ports; ``support_engine.persistence.memory``
ships in-process implementations.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from support_engine.models.conversation import ConversationState, ConversationTurn
from support_engine.models.embedding import Embedding
from support_engine.models.knowledge import KnowledgeBase
from support_engine.models.escalation import NotificationPayload
from support_engine.models.resolution import ResolutionPath


class ConversationRepository(ABC):
    """Read access to conversation history plus compare-and-set on state."""

    @abstractmethod
    def get_turns(self, conversation_id: str) -> list[ConversationTurn]:
        """Ordered turns; raises NotFoundError for unknown conversations."""

    @abstractmethod
    def get_message(self, message_id: str) -> ConversationTurn:
        """Single message; raises NotFoundError when it no longer exists."""

    @abstractmethod
    def get_state(self, conversation_id: str) -> ConversationState:
        """Current state (a fresh one for new conversations)."""

    @abstractmethod
    def save_state(self, conversation_id: str, state: ConversationState, expected_version: int) -> None:
        """Persist ``state`` only if the stored version equals ``expected_version``.

        Raises StaleStateError otherwise.
        """

    @abstractmethod
    def get_embedding(self, message_id: str) -> Optional[Embedding]:
        """Embedding stored for a message, if any."""

    @abstractmethod
    def save_embedding(self, embedding: Embedding) -> None:
        """Store or replace the embedding of its owner."""


class KnowledgeRepository(ABC):
    """Append-only store of knowledge entries."""

    @abstractmethod
    def add(self, entry: KnowledgeBase) -> KnowledgeBase:
        """Store an entry."""

    @abstractmethod
    def list(self, kind: Optional[str] = None, include_superseded: bool = False) -> list[KnowledgeBase]:
        """Entries, optionally filtered by variant kind."""

    @abstractmethod
    def find_by_conversation(self, conversation_ref: str) -> Optional[KnowledgeBase]:
        """Success pattern linked to a conversation, if any."""


class ResolutionPathRepository(ABC):
    """Append-only store of resolution paths."""

    @abstractmethod
    def add(self, path: ResolutionPath) -> ResolutionPath:
        """Store a path."""

    @abstractmethod
    def list(self, problem_type: Optional[str] = None) -> list[ResolutionPath]:
        """Paths, optionally filtered by problem type."""


class JobScheduler(ABC):
    """Asynchronous execution of units of work."""

    @abstractmethod
    async def enqueue(self, unit: Callable[..., Any], *args, key: Optional[str] = None) -> str:
        """Schedule ``unit(*args)`` and return a task id."""


class Notifier(ABC):
    """Delivery of escalation notices to humans."""

    @abstractmethod
    async def send(self, channel: str, payload: NotificationPayload) -> bool:
        """Deliver ``payload``; return False instead of raising on failure."""


class CompletionClient(ABC):
    """Optional text-completion collaborator."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        history: list[ConversationTurn],
        user_message: str,
    ) -> str:
        """Return the completion text; raises ExternalServiceError on failure."""
