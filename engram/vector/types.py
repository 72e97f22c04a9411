"""
Vector memory overlay - non-canonical, advisory layer over the owners' canonical records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np


class EntityType(str, Enum):
    """Closed set of record kinds that can carry an embedding."""

    TASK = "task"
    PROJECT = "project"
    HABIT = "habit"
    JOURNAL_ENTRY = "journal_entry"
    APPOINTMENT = "appointment"
    PLAN = "plan"
    ANCHOR = "anchor"
    NOTE = "note"
    INSIGHT = "insight"
    SUMMARY = "summary"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


@dataclass
class EmbeddingRecord:
    """A stored embedding for one external record."""

    id: str
    """Opaque identifier generated at insert time"""

    owner_id: str
    """Partition key"""

    entity_type: str
    """One of EntityType"""

    entity_id: str
    """Foreign identifier into the owning collaborator's storage"""

    vector: np.ndarray
    """float32 embedding"""

    dimensions: int

    cluster_id: Optional[int] = None
    """Advisory back-reference to a ClusterCentroid, may be stale"""

    created_at: datetime = field(default_factory=datetime.now)

    seq: int = 0
    """Insertion sequence, preserved by upserts; ranking tie-breaker"""


@dataclass
class ClusterCentroid:
    """Running-mean centroid used to prune similarity scans."""

    id: Optional[int]
    owner_id: str
    centroid: np.ndarray
    dimensions: int
    member_count: int = 0
    updated_at: datetime = field(default_factory=datetime.now)

    radius: float = 0.0
    """Upper bound, in radians, on the angle between the centroid and any member"""

    baseline_count: int = 0
    """Highest member_count since the last full recompute"""


@dataclass
class VectorQueryResult:
    """A ranked similarity match."""

    id: str
    entity_type: str
    entity_id: str
    similarity: float
    """Cosine similarity in [-1, 1]"""
