"""
Context assembly - turns a free-text query into a prompt-ready memory bundle.

Embed the query, take the top matches from the owner's partition, hydrate them,
expand one hop along their declared links, and render both sets. Any failure
inside the pipeline becomes a fixed fallback string; retrieval never raises.
"""

import asyncio
from typing import List, Optional

from .config import CONTEXT_TOP_K, EMBED_TIMEOUT_SEC
from .entities import EntityFetcher, RetrievedEntity
from ..vector.embeddings import IEmbeddingProvider
from ..vector.types import EntityType

from util.logging import logger

NO_CONTEXT_MESSAGE = "No relevant historical context found."
CONTEXT_FAILED_MESSAGE = "Context retrieval failed."
CORE_SECTION_HEADER = "=== CORE RETRIEVED MEMORIES ==="
LINKED_SECTION_HEADER = "=== CONNECTED/LINKED MEMORIES ==="


def format_context(core: List[RetrievedEntity], linked: List[RetrievedEntity]) -> str:
    """Render core matches in rank order, then linked memories in discovery order."""
    context = CORE_SECTION_HEADER + "\n"
    for index, entity in enumerate(core, start=1):
        context += f"[Match {index} | Type: {entity.entity_type.upper()}]\n{entity.text}\n\n"

    if linked:
        context += LINKED_SECTION_HEADER + "\n"
        for index, entity in enumerate(linked, start=1):
            context += f"[Link {index} | Type: {entity.entity_type.upper()}]\n{entity.text}\n\n"

    return context.strip()


class ContextAssembler:
    """Retrieval pipeline over an EmbeddingStore, an embedder and an entity fetcher."""

    def __init__(self, store, embedder: IEmbeddingProvider, fetcher: EntityFetcher,
                 embed_timeout: Optional[float] = EMBED_TIMEOUT_SEC):
        self.store = store
        self.embedder = embedder
        self.fetcher = fetcher
        self.embed_timeout = embed_timeout
        self.top_k = CONTEXT_TOP_K

    async def build_context(self, owner_id: str, query_text: str) -> str:
        try:
            return await self._build_context(owner_id, query_text)
        except Exception as e:
            logger.log_retrieval(owner_id, query_text, 0, 0, status="failed", details={
                "error": str(e),
                "error_type": type(e).__name__,
            })
            return CONTEXT_FAILED_MESSAGE

    async def _embed(self, query_text: str):
        if self.embed_timeout is None:
            return await self.embedder.embed(query_text)
        return await asyncio.wait_for(self.embedder.embed(query_text), timeout=self.embed_timeout)

    async def _build_context(self, owner_id: str, query_text: str) -> str:
        query_vector = await self._embed(query_text)
        matches = await self.store.query(owner_id, query_vector, self.top_k)

        if not matches:
            logger.log_retrieval(owner_id, query_text, 0, 0, status="empty")
            return NO_CONTEXT_MESSAGE

        core: List[RetrievedEntity] = []
        for match in matches:
            # Summaries are synthetic and have no source record to hydrate
            if match.entity_type == EntityType.SUMMARY.value:
                continue
            entity = await self._fetch(match.entity_type, match.entity_id)
            if entity is not None:
                core.append(entity)

        if not core:
            logger.log_retrieval(owner_id, query_text, 0, 0, status="empty", details={"matches": len(matches)})
            return NO_CONTEXT_MESSAGE

        linked = await self._expand_links(core)

        logger.log_retrieval(owner_id, query_text, len(core), len(linked))
        return format_context(core, linked)

    async def _expand_links(self, core: List[RetrievedEntity]) -> List[RetrievedEntity]:
        """One-hop expansion; ids already present among the core matches are skipped."""
        core_ids = {entity.id for entity in core}
        pending: List[str] = []
        for entity in core:
            for link_id in entity.linked_object_ids:
                if link_id in core_ids or link_id in pending:
                    continue
                pending.append(link_id)

        linked: List[RetrievedEntity] = []
        for link_id in pending:
            try:
                entity_type = await self.fetcher.resolve_entity_type(link_id)
            except Exception as e:
                logger.log_operation("context.resolve_link", "skipped", {"entity_id": link_id, "error": str(e)})
                continue
            if entity_type is None:
                continue
            entity = await self._fetch(entity_type, link_id)
            if entity is not None:
                linked.append(entity)
        return linked

    async def _fetch(self, entity_type: str, entity_id: str) -> Optional[RetrievedEntity]:
        try:
            return await self.fetcher.fetch_entity(entity_type, entity_id)
        except Exception as e:
            logger.log_operation("context.fetch_entity", "skipped", {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "error": str(e),
            })
            return None
