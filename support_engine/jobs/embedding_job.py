"""
Embedding Job - Vectorize one message

Retries belong to the scheduler. The job itself is idempotent: a message
whose stored embedding was built from the same text is skipped, and a
message deleted before the job runs is logged and ignored.
"""

import asyncio
from typing import Optional

from support_engine.contracts.collaborators import ConversationRepository
from support_engine.models.embedding import Embedding, OwnerType, source_hash
from support_engine.tools.embedding_client import EmbeddingClient, create_embedding_text
from support_engine.tools.vector_store import VectorStore
from support_engine.utils.error_handling import NotFoundError
from support_engine.utils.structured_logging import LogContext, get_logger

logger = get_logger(__name__)

CONTEXT_TURNS = 2


class EmbeddingJob:
    """Generate and store the embedding of a message."""

    unit_name = "embedding"

    def __init__(
        self,
        conversations: ConversationRepository,
        embedding_client: EmbeddingClient,
        vector_store: Optional[VectorStore] = None,
    ):
        self.conversations = conversations
        self.embedding_client = embedding_client
        self.vector_store = vector_store

    @staticmethod
    def key_for(message_id: str, content: str) -> str:
        return f"embedding:{message_id}:{source_hash(content)[:16]}"

    async def __call__(self, message_id: str) -> Optional[Embedding]:
        LogContext.bind(message_id=message_id)

        try:
            turn = self.conversations.get_message(message_id)
        except NotFoundError:
            logger.info(f"Message {message_id} no longer exists, skipping embedding")
            return None
        LogContext.bind(conversation_id=turn.conversation_id)

        existing = self.conversations.get_embedding(message_id)
        if existing is not None and not existing.is_stale(turn.content):
            logger.debug(f"Embedding for {message_id} is current")
            return existing

        text = create_embedding_text(turn.content, self._context(turn.conversation_id, message_id))
        vector = await asyncio.to_thread(self.embedding_client.embed, text)

        embedding = Embedding(
            owner_type=OwnerType.MESSAGE,
            owner_id=message_id,
            vector=vector,
            source_hash=source_hash(turn.content),
            model_name=self.embedding_client.model_name,
        )
        self.conversations.save_embedding(embedding)
        if self.vector_store is not None:
            self.vector_store.index(
                message_id,
                vector,
                kind=OwnerType.MESSAGE.value,
                payload={"conversation_id": turn.conversation_id, "role": turn.role.value},
            )

        logger.info(
            f"Embedded message {message_id}",
            {"dimensions": embedding.dimensions, "model": embedding.model_name},
        )
        return embedding

    def _context(self, conversation_id: Optional[str], message_id: str) -> list[str]:
        if not conversation_id:
            return []
        try:
            turns = self.conversations.get_turns(conversation_id)
        except NotFoundError:
            return []
        ids = [t.message_id for t in turns]
        if message_id not in ids:
            return []
        index = ids.index(message_id)
        return [t.content for t in turns[max(0, index - CONTEXT_TURNS):index]]
