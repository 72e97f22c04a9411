"""
Maintenance routines for the embedding database and the cluster index.

Integrity checks never mutate. Reconciliation is the only routine that writes,
and it only touches derived cluster bookkeeping, never embedding records.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db import REQUIRED_TABLES

from util.logging import logger


@dataclass
class MaintenanceReport:
    """Comprehensive maintenance operation report."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = None
    recommendations: List[str] = None
    errors: List[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.actions_taken is None:
            self.actions_taken = []
        if self.recommendations is None:
            self.recommendations = []
        if self.errors is None:
            self.errors = []
        if self.metadata is None:
            self.metadata = {}

    @property
    def healthy(self) -> bool:
        return self.issues_found == self.issues_resolved and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "actions_taken": self.actions_taken,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


class MaintenanceError(Exception):
    """Custom exception for maintenance operations."""
    pass


def _require_owner(owner_id: str) -> None:
    if not owner_id or not owner_id.strip():
        raise MaintenanceError("owner_id is required for cluster index maintenance")


def check_database_integrity(db_path: str) -> MaintenanceReport:
    """
    Check SQLite database integrity and the embedding tables.

    Returns:
        MaintenanceReport: Detailed integrity check results
    """
    report = MaintenanceReport(
        operation="database_integrity_check",
        started_at=datetime.now()
    )

    try:
        path = Path(db_path)
        if not path.exists():
            report.errors.append(f"Database file not found: {db_path}")
            report.completed_at = datetime.now()
            return report

        file_size = path.stat().st_size
        report.metadata["file_size"] = file_size

        if file_size == 0:
            report.errors.append("Database file is empty")
            report.completed_at = datetime.now()
            return report

        conn = sqlite3.connect(db_path)
        cursor = conn.cursor()

        try:
            cursor.execute("PRAGMA integrity_check")
            integrity_result = cursor.fetchone()

            if integrity_result and integrity_result[0] == "ok":
                report.metadata["integrity_status"] = "passed"
            else:
                report.issues_found += 1
                report.errors.append(f"Integrity check failed: {integrity_result}")
                report.recommendations.append("Restore the database from backup; cluster data can be rebuilt")

            cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            missing = [table for table in REQUIRED_TABLES if table not in tables]
            if missing:
                report.issues_found += 1
                report.errors.append(f"Missing tables: {', '.join(missing)}")
                report.recommendations.append("Initialize the store to create the schema")
                report.completed_at = datetime.now()
                return report

            cursor.execute("SELECT COUNT(*) FROM vector_embeddings")
            embedding_count = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM vector_clusters")
            cluster_count = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(DISTINCT owner_id) FROM vector_embeddings")
            owner_count = cursor.fetchone()[0]

            report.metadata.update({
                "embedding_records": embedding_count,
                "cluster_records": cluster_count,
                "owners": owner_count,
            })

            if embedding_count == 0:
                report.recommendations.append("Database holds no embeddings - index records to enable retrieval")

        finally:
            conn.close()

    except Exception as e:
        report.errors.append(f"Database integrity check failed: {e}")

    report.completed_at = datetime.now()
    return report


async def validate_cluster_index(store, owner_id: str) -> MaintenanceReport:
    """
    Report cluster index drift for one owner without changing anything.

    Returns:
        MaintenanceReport: member-count drift, dangling references and stale clusters
    """
    _require_owner(owner_id)
    report = MaintenanceReport(
        operation="cluster_index_validation",
        started_at=datetime.now(),
        metadata={"owner_id": owner_id}
    )

    try:
        state = await store.inspect_index(owner_id)
        if state is None:
            report.metadata["cluster_index"] = "disabled"
            report.recommendations.append("Cluster index is disabled - queries use a linear scan")
            report.completed_at = datetime.now()
            return report

        report.metadata.update(state)

        if state["miscounted_clusters"]:
            report.issues_found += len(state["miscounted_clusters"])
            report.recommendations.append("Member counts have drifted - run reconciliation")
        if state["dangling_references"]:
            report.issues_found += state["dangling_references"]
            report.recommendations.append("Records reference missing clusters - run reconciliation")
        if state["stale_clusters"]:
            report.recommendations.append(
                f"{len(state['stale_clusters'])} clusters are below the staleness threshold"
            )

        report.metadata["cluster_index_health"] = "good" if report.issues_found == 0 else "drifted"

    except Exception as e:
        report.errors.append(f"Cluster index validation failed: {e}")

    report.completed_at = datetime.now()
    return report


async def reconcile_cluster_index(store, owner_id: str, force: bool = False) -> MaintenanceReport:
    """
    Restore exact cluster bookkeeping for one owner.

    Returns:
        MaintenanceReport: what the reconciliation pass changed
    """
    _require_owner(owner_id)
    report = MaintenanceReport(
        operation="cluster_index_reconcile",
        started_at=datetime.now(),
        metadata={"owner_id": owner_id, "force": force}
    )

    try:
        before = await validate_cluster_index(store, owner_id)
        report.issues_found = before.issues_found

        result = await store.reconcile(owner_id, force=force)
        report.metadata["reconcile"] = result.to_dict()

        if result.clusters_recomputed:
            report.actions_taken.append(f"Recomputed {result.clusters_recomputed} clusters")
        if result.clusters_removed:
            report.actions_taken.append(f"Removed {result.clusters_removed} empty clusters")
        if result.records_reassigned:
            report.actions_taken.append(f"Reassigned {result.records_reassigned} records with dangling cluster references")

        after = await validate_cluster_index(store, owner_id)
        report.issues_resolved = max(report.issues_found - after.issues_found, 0)
        if after.issues_found:
            report.errors.append(f"{after.issues_found} issues remain after reconciliation")

        logger.log_operation("maintenance.reconcile_cluster_index", "success" if report.healthy else "degraded",
                             {"owner_id": owner_id, "issues_found": report.issues_found,
                              "issues_resolved": report.issues_resolved})

    except Exception as e:
        report.errors.append(f"Cluster index reconciliation failed: {e}")
        logger.log_operation("maintenance.reconcile_cluster_index", "failed", {"owner_id": owner_id, "error": str(e)})

    report.completed_at = datetime.now()
    return report
