"""
In-memory repositories

Thread-safe dict-backed implementations of the collaborator contracts, used
by tests, local runs and as defaults for the orchestrator.
"""

import logging
import threading
from typing import Optional

from support_engine.contracts.collaborators import (
    ConversationRepository,
    KnowledgeRepository,
    ResolutionPathRepository,
)
from support_engine.models.conversation import ConversationState, ConversationTurn
from support_engine.models.embedding import Embedding
from support_engine.models.knowledge import KnowledgeBase
from support_engine.models.resolution import ResolutionPath
from support_engine.utils.error_handling import NotFoundError, StaleStateError

logger = logging.getLogger(__name__)


class InMemoryConversationRepository(ConversationRepository):
    """Conversations, messages, states and message embeddings kept in dicts."""

    def __init__(self):
        self._lock = threading.Lock()
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._messages: dict[str, ConversationTurn] = {}
        self._states: dict[str, ConversationState] = {}
        self._embeddings: dict[str, Embedding] = {}

    def add_turn(self, conversation_id: str, turn: ConversationTurn) -> ConversationTurn:
        """Append a turn, stamping it with the conversation id."""
        turn = turn.model_copy(update={"conversation_id": conversation_id})
        with self._lock:
            self._turns.setdefault(conversation_id, []).append(turn)
            if turn.message_id:
                self._messages[turn.message_id] = turn
        return turn

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            turn = self._messages.pop(message_id, None)
            if turn and turn.conversation_id in self._turns:
                self._turns[turn.conversation_id] = [
                    t for t in self._turns[turn.conversation_id] if t.message_id != message_id
                ]

    def get_turns(self, conversation_id: str) -> list[ConversationTurn]:
        with self._lock:
            if conversation_id not in self._turns:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            return list(self._turns[conversation_id])

    def get_message(self, message_id: str) -> ConversationTurn:
        with self._lock:
            try:
                return self._messages[message_id]
            except KeyError:
                raise NotFoundError(f"Message {message_id} not found") from None

    def get_state(self, conversation_id: str) -> ConversationState:
        with self._lock:
            return self._states.get(conversation_id, ConversationState())

    def save_state(self, conversation_id: str, state: ConversationState, expected_version: int) -> None:
        with self._lock:
            current = self._states.get(conversation_id, ConversationState())
            if current.version != expected_version:
                raise StaleStateError(
                    f"Conversation {conversation_id}: expected version {expected_version}, "
                    f"found {current.version}"
                )
            self._states[conversation_id] = state

    def get_embedding(self, message_id: str) -> Optional[Embedding]:
        with self._lock:
            return self._embeddings.get(message_id)

    def save_embedding(self, embedding: Embedding) -> None:
        with self._lock:
            self._embeddings[embedding.owner_id] = embedding


class InMemoryKnowledgeRepository(KnowledgeRepository):
    """Append-only knowledge store; superseded entries are hidden by default."""

    def __init__(self, entries: Optional[list[KnowledgeBase]] = None):
        self._lock = threading.Lock()
        self._entries: list[KnowledgeBase] = []
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: KnowledgeBase) -> KnowledgeBase:
        with self._lock:
            self._entries.append(entry)
        logger.debug(f"Stored {entry.kind} entry {entry.entry_id}")
        return entry

    def list(self, kind: Optional[str] = None, include_superseded: bool = False) -> list[KnowledgeBase]:
        with self._lock:
            entries = list(self._entries)
        if not include_superseded:
            replaced = {e.supersedes for e in entries if e.supersedes}
            entries = [e for e in entries if e.entry_id not in replaced]
        if kind:
            entries = [e for e in entries if e.kind == kind]
        return entries

    def find_by_conversation(self, conversation_ref: str) -> Optional[KnowledgeBase]:
        for entry in self.list(kind="success_pattern"):
            if entry.conversation_ref == conversation_ref:
                return entry
        return None


class InMemoryResolutionPathRepository(ResolutionPathRepository):
    """Append-only list of resolution paths."""

    def __init__(self):
        self._lock = threading.Lock()
        self._paths: list[ResolutionPath] = []

    def add(self, path: ResolutionPath) -> ResolutionPath:
        with self._lock:
            self._paths.append(path)
        return path

    def list(self, problem_type: Optional[str] = None) -> list[ResolutionPath]:
        with self._lock:
            paths = list(self._paths)
        if problem_type:
            paths = [p for p in paths if p.problem_type == problem_type]
        return paths
