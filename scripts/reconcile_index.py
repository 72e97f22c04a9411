#!/usr/bin/env python3
"""
Cluster Index Reconcile Utility
Restores exact cluster bookkeeping for one owner from the canonical embedding records.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from engram.core.config import create_embedding_store, validate_config, get_vector_storage
from engram.core.maintenance import check_database_integrity, reconcile_cluster_index, validate_cluster_index
from engram.vector.sqlite_store import SqliteVectorStorage


async def run(owner_id: str, force: bool, dry_run: bool) -> int:
    store = create_embedding_store()
    try:
        await store.initialize()
        total = await store.count(owner_id)
        print(f"Found {total} embedding records for owner '{owner_id}'")

        if dry_run:
            report = await validate_cluster_index(store, owner_id)
        else:
            report = await reconcile_cluster_index(store, owner_id, force=force)

        print(json.dumps(report.to_dict(), indent=2, default=str))
        return 0 if not report.errors else 1
    finally:
        await store.close()


def main():
    """Reconcile the cluster index for one owner."""
    parser = argparse.ArgumentParser(description="Reconcile the cluster index for one owner")
    parser.add_argument("owner_id", help="Owner partition to reconcile")
    parser.add_argument("--force", action="store_true", help="Recompute every cluster, not only stale ones")
    parser.add_argument("--dry-run", action="store_true", help="Report drift without changing anything")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        sys.exit(1)

    storage = get_vector_storage()
    if isinstance(storage, SqliteVectorStorage) and Path(storage.db_path).exists():
        integrity = check_database_integrity(storage.db_path)
        if integrity.errors:
            print("ERROR: Database integrity check failed")
            print(json.dumps(integrity.to_dict(), indent=2, default=str))
            sys.exit(1)
        print("✓ Database integrity check passed")

    sys.exit(asyncio.run(run(args.owner_id, args.force, args.dry_run)))


if __name__ == "__main__":
    main()
