"""
Qdrant Client - Optional persistent backend for the vector store

Handles connection, collection management and low-level vector operations
against a Qdrant server using cosine distance.
"""

import logging
import uuid
from typing import Optional

from qdrant_client import QdrantClient as QdrantSDKClient
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointStruct,
    VectorParams,
)

from support_engine.config.settings import QdrantConfig, config

logger = logging.getLogger(__name__)


class QdrantConnectionError(Exception):
    """Raised when unable to connect to Qdrant."""
    pass


def point_uuid(entity_id: str) -> str:
    """Qdrant point ids must be UUIDs or integers; derive a stable UUID."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"support-engine:{entity_id}"))


class QdrantClientWrapper:
    """Wrapper around the Qdrant SDK for knowledge embeddings."""

    def __init__(
        self,
        settings: Optional[QdrantConfig] = None,
        dimensions: Optional[int] = None,
        timeout: float = 10.0,
    ):
        self.settings = settings or config.qdrant
        self.collection_name = self.settings.collection_name
        self.dimensions = dimensions or config.embedding.dimensions
        self.timeout = timeout
        self._client: Optional[QdrantSDKClient] = None

    def connect(self) -> "QdrantClientWrapper":
        """
        Establish connection to Qdrant.

        Raises:
            QdrantConnectionError: If connection fails.
        """
        try:
            self._client = QdrantSDKClient(
                host=self.settings.host,
                port=self.settings.port,
                timeout=int(self.timeout),
            )
            self._client.get_collections()
            logger.info(f"Connected to Qdrant at {self.settings.host}:{self.settings.port}")
            return self
        except Exception as e:
            raise QdrantConnectionError(f"Failed to connect to Qdrant: {e}") from e

    def _require(self) -> QdrantSDKClient:
        if not self._client:
            raise QdrantConnectionError("Not connected to Qdrant")
        return self._client

    def ensure_collection(self) -> None:
        """Create the collection if it doesn't exist."""
        client = self._require()
        names = [c.name for c in client.get_collections().collections]
        if self.collection_name not in names:
            client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
            )
            logger.info(f"Created collection '{self.collection_name}' with {self.dimensions} dimensions")
        else:
            logger.debug(f"Collection '{self.collection_name}' already exists")

    def upsert_point(self, entity_id: str, vector: list[float], payload: dict) -> None:
        """Insert or update a single embedding point."""
        client = self._require()
        if len(vector) != self.dimensions:
            raise ValueError(f"Expected {self.dimensions} dimensions, got {len(vector)}")

        client.upsert(
            collection_name=self.collection_name,
            points=[
                PointStruct(
                    id=point_uuid(entity_id),
                    vector=vector,
                    payload={**payload, "entity_id": entity_id},
                )
            ],
        )
        logger.debug(f"Upserted point for {entity_id}")

    def search(
        self,
        query_vector: list[float],
        top_k: int = 5,
        score_threshold: Optional[float] = None,
        kind: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> list[dict]:
        """
        Search for similar embeddings with optional kind and tag filters.

        Returns:
            List of dicts with ``id``, ``score`` and ``payload``.
        """
        client = self._require()

        conditions = []
        if kind:
            conditions.append(FieldCondition(key="kind", match=MatchValue(value=kind)))
        if tags:
            conditions.append(FieldCondition(key="tags", match=MatchAny(any=list(tags))))
        query_filter = Filter(must=conditions) if conditions else None

        response = client.query_points(
            collection_name=self.collection_name,
            query=query_vector,
            limit=top_k,
            score_threshold=score_threshold,
            query_filter=query_filter,
            with_payload=True,
        )
        return [
            {
                "id": (hit.payload or {}).get("entity_id", str(hit.id)),
                "score": hit.score,
                "payload": hit.payload or {},
            }
            for hit in response.points
        ]

    def delete_point(self, entity_id: str) -> None:
        client = self._require()
        client.delete(
            collection_name=self.collection_name,
            points_selector=[point_uuid(entity_id)],
        )

    def count(self) -> int:
        client = self._require()
        return client.count(collection_name=self.collection_name).count
