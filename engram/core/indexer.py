"""
Record indexing hooks for repositories that own the source records.

The primary record write is the source of truth. These hooks run after it and
never raise: a missing embedding only means the record is not retrievable until
it is indexed again.
"""

from typing import Optional

from ..vector.embeddings import IEmbeddingProvider

from util.logging import logger


class RecordIndexer:
    """Best-effort embedding maintenance on record create, update and delete."""

    def __init__(self, store, embedder: IEmbeddingProvider):
        self.store = store
        self.embedder = embedder

    async def index_record(self, owner_id: str, entity_type: str, entity_id: str, text: str) -> Optional[str]:
        """Embed the record's salient text and upsert it. Returns the record id, or None on failure."""
        try:
            vector = await self.embedder.embed(text)
            return await self.store.add(owner_id, entity_type, entity_id, vector)
        except Exception as e:
            logger.log_operation("indexer.index_record", "failed", {
                "entity_type": str(entity_type),
                "entity_id": entity_id,
                "error": str(e),
                "retryable": getattr(e, "retryable", False),
            })
            return None

    async def remove_record(self, entity_type: str, entity_id: str) -> bool:
        try:
            await self.store.delete(entity_type, entity_id)
            return True
        except Exception as e:
            logger.log_operation("indexer.remove_record", "failed", {
                "entity_type": str(entity_type),
                "entity_id": entity_id,
                "error": str(e),
            })
            return False
