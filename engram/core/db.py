"""
SQLite foundation for the embedding tables.
The embedding table is canonical for vectors; the cluster table is a derived, rebuildable index.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List

SCHEMA_STATEMENTS: List[str] = [
    '''
    CREATE TABLE IF NOT EXISTS vector_embeddings (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        vector BLOB NOT NULL,
        dimensions INTEGER NOT NULL,
        cluster_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (entity_type, entity_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS vector_clusters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        centroid BLOB NOT NULL,
        dimensions INTEGER NOT NULL,
        member_count INTEGER NOT NULL DEFAULT 0,
        radius REAL NOT NULL DEFAULT 0,
        baseline_count INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_vectors_owner ON vector_embeddings(owner_id)',
    'CREATE INDEX IF NOT EXISTS idx_vectors_cluster ON vector_embeddings(cluster_id)',
    'CREATE INDEX IF NOT EXISTS idx_vectors_entity_id ON vector_embeddings(entity_id)',
    'CREATE INDEX IF NOT EXISTS idx_clusters_owner ON vector_clusters(owner_id)',
]

REQUIRED_TABLES = ['vector_embeddings', 'vector_clusters']


def ensure_db_directory(db_path: str) -> None:
    """Ensure the database directory exists."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    """Create the embedding tables if absent, in a single transaction."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def health_check(db_path: str) -> bool:
    """Check that the required tables exist."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
