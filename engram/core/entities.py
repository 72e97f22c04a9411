"""
Entity hydration for the retrieval pipeline.

Records are owned by external repositories; this module only knows how to ask
them for a record's fields and how to render those fields as prompt text.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..vector.errors import EntityFetchError
from ..vector.types import EntityType

from util.logging import logger

EntityLoader = Callable[[str], Awaitable[Optional[Mapping[str, Any]]]]

# Types rendered from the id alone; their owners keep no text worth quoting
GENERIC_TYPES = {EntityType.INSIGHT.value, EntityType.NOTE.value, EntityType.ANCHOR.value}


@dataclass
class RetrievedEntity:
    """A hydrated record, transient and never persisted."""
    id: str
    entity_type: str
    text: str
    linked_object_ids: List[str] = field(default_factory=list)


class EntityFetcher(ABC):
    """Collaborator interface for hydrating records and resolving bare ids."""

    @abstractmethod
    async def fetch_entity(self, entity_type: str, entity_id: str) -> Optional[RetrievedEntity]:
        """Load and render a record, or None when it no longer exists."""
        pass

    @abstractmethod
    async def resolve_entity_type(self, entity_id: str) -> Optional[str]:
        """Type tag for a bare id, or None when it cannot be resolved."""
        pass


def _format_timestamp(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _format_date(value) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    return str(value).split("T")[0]


def _or(value, fallback: str) -> str:
    return value if value else fallback


def generic_entity_text(entity_type: str, entity_id: str) -> str:
    return f"[{entity_type.upper()}] ID: {entity_id}"


def render_entity_text(entity_type: str, entity_id: str, fields: Mapping[str, Any]) -> str:
    """Render a record's fields using the fixed template for its type."""
    if entity_type == EntityType.TASK.value:
        status = "Done" if fields.get("is_completed") else "Pending"
        return f"Task: {fields.get('title', '')}\nStatus: {status}\nNotes: {_or(fields.get('notes'), 'None')}"

    if entity_type == EntityType.PROJECT.value:
        status = "Done" if fields.get("is_completed") else "Active"
        return f"Project: {fields.get('title', '')}\nStatus: {status}\nNotes: {_or(fields.get('notes'), 'None')}"

    if entity_type == EntityType.JOURNAL_ENTRY.value:
        return (f"Journal ({_format_date(fields.get('entry_date', ''))}):\n"
                f"{_or(fields.get('content'), 'Empty block')}")

    if entity_type == EntityType.HABIT.value:
        return (f"Habit: {fields.get('title', '')}\n"
                f"Goal: {fields.get('weekly_goal_minutes', 0)} minutes/week\n"
                f"Notes: {_or(fields.get('notes'), 'None')}")

    if entity_type in (EntityType.APPOINTMENT.value, EntityType.PLAN.value):
        label = "Appointment" if entity_type == EntityType.APPOINTMENT.value else "Plan"
        return (f"{label}: {fields.get('name', '')}\n"
                f"Time: {_format_timestamp(fields.get('start_time', ''))} to "
                f"{_format_timestamp(fields.get('end_time', ''))}\n"
                f"Details: {_or(fields.get('description'), 'None')}")

    return generic_entity_text(entity_type, entity_id)


class RegistryEntityFetcher(EntityFetcher):
    """EntityFetcher backed by per-type async loaders registered by record owners.

    Type resolution for bare ids goes through the embedding store's reverse
    lookup, since backlinks carry no type information.
    """

    def __init__(self, store):
        self.store = store
        self._loaders: Dict[str, EntityLoader] = {}

    def register(self, entity_type, loader: EntityLoader) -> None:
        entity_type = entity_type.value if isinstance(entity_type, EntityType) else entity_type
        if entity_type not in EntityType.values():
            raise ValueError(f"Unknown entity type: {entity_type}")
        self._loaders[entity_type] = loader

    def registered_types(self) -> List[str]:
        return sorted(self._loaders)

    async def fetch_entity(self, entity_type: str, entity_id: str) -> Optional[RetrievedEntity]:
        if entity_type == EntityType.SUMMARY.value or entity_type not in EntityType.values():
            return None

        loader = self._loaders.get(entity_type)
        if loader is None:
            if entity_type not in GENERIC_TYPES:
                logger.debug(f"No loader registered for entity type {entity_type}")
            return RetrievedEntity(entity_id, entity_type, generic_entity_text(entity_type, entity_id), [])

        try:
            fields = await loader(entity_id)
        except Exception as e:
            raise EntityFetchError(f"Failed to load {entity_type} {entity_id}: {e}") from e

        if fields is None:
            return None

        linked = fields.get("linked_object_ids") or []
        return RetrievedEntity(
            id=str(fields.get("id", entity_id)),
            entity_type=entity_type,
            text=render_entity_text(entity_type, entity_id, fields),
            linked_object_ids=[str(link) for link in linked],
        )

    async def resolve_entity_type(self, entity_id: str) -> Optional[str]:
        return await self.store.resolve_entity_type(entity_id)
