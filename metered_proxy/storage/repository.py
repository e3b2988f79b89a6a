"""
Repository pattern for data access.

Handles database operations for users, projects, models and the usage ledger.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional

from .db import ConnectionPool, get_connection
from .models import MonthlyUsage, ProjectUsage, UsageRecord, User

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS models (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    key TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    UNIQUE (user_id, name)
);
CREATE TABLE IF NOT EXISTS usage (
    ts TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    model_id INTEGER NOT NULL REFERENCES models(id),
    project_id INTEGER NOT NULL REFERENCES projects(id),
    tokens INTEGER NOT NULL
);
"""


def initialize_schema(db_path: str = "metered-proxy.db") -> None:
    """Create the tables if they don't exist.

    The ``usage`` table is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    finally:
        conn.close()


class UsageRepository:
    """Repository for users, projects, models and usage records.

    Every method borrows a pooled connection for the duration of a single
    statement group and returns it immediately. Methods are blocking; async
    callers run them in a worker thread.
    """

    def __init__(self, db_path: str = "metered-proxy.db", pool_size: int = 4):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            pool_size: Maximum number of open connections
        """
        self.db_path = db_path
        self.pool = ConnectionPool(db_path, pool_size)

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    def close(self) -> None:
        self.pool.close()

    # -- attribution -------------------------------------------------------

    def find_user_by_key(self, key: str) -> Optional[User]:
        """Look up the user owning an API key.

        Returns:
            The user, or None if no user has this key
        """
        with self.pool.connection() as conn:
            row = conn.execute(
                "SELECT id, name, key FROM users WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return User(id=row[0], name=row[1], key=row[2])

    def get_or_create_project(self, user_id: int, name: str) -> int:
        """Return the id of the user's project, creating the row if absent.

        Insert-or-ignore followed by a select on the natural key, in one
        transaction: a writer losing a race still sees the winner's row.
        """
        with self.pool.connection() as conn:
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO projects (user_id, name) VALUES (?, ?)",
                    (user_id, name),
                )
                row = conn.execute(
                    "SELECT id FROM projects WHERE user_id = ? AND name = ?",
                    (user_id, name),
                ).fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return row[0]

    def get_or_create_model(self, name: str) -> int:
        """Return the id of the model, creating the row if absent."""
        with self.pool.connection() as conn:
            try:
                conn.execute("INSERT OR IGNORE INTO models (name) VALUES (?)", (name,))
                row = conn.execute(
                    "SELECT id FROM models WHERE name = ?", (name,)
                ).fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return row[0]

    def record_usage(self, model_id: int, project_id: int, tokens: int) -> None:
        """Append a usage fact to the ledger.

        The timestamp is assigned by the database at insert time.
        """
        with self.pool.connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO usage (model_id, project_id, tokens) VALUES (?, ?, ?)",
                    (model_id, project_id, tokens),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # -- administration ----------------------------------------------------

    def list_users(self) -> List[User]:
        with self.pool.connection() as conn:
            rows = conn.execute("SELECT id, name, key FROM users ORDER BY name").fetchall()
        return [User(id=r[0], name=r[1], key=r[2]) for r in rows]

    def set_user_key(self, name: str, key: str) -> None:
        """Create the user, or replace the key of an existing user."""
        with self.pool.connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users (name, key) VALUES (?, ?)
                    ON CONFLICT (name) DO UPDATE SET key = excluded.key
                    """,
                    (name, key),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def delete_user(self, name: str) -> bool:
        """Delete a user by name.

        Returns:
            True if a user was deleted, False if no such user exists

        Raises:
            sqlite3.IntegrityError: If the user still owns projects
        """
        with self.pool.connection() as conn:
            try:
                cursor = conn.execute("DELETE FROM users WHERE name = ?", (name,))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return cursor.rowcount > 0

    # -- reporting ---------------------------------------------------------

    def get_usage_report(self) -> List[MonthlyUsage]:
        """Sum tokens per month, user and project.

        Months are in chronological order; within a month the heaviest
        projects come first.
        """
        with self.pool.connection() as conn:
            rows = conn.execute("""
                SELECT strftime('%Y-%m', usage.ts) AS month,
                       users.name,
                       projects.name,
                       SUM(usage.tokens) AS total
                FROM usage
                JOIN projects ON projects.id = usage.project_id
                JOIN users ON users.id = projects.user_id
                GROUP BY month, projects.user_id, usage.project_id
                ORDER BY month, total DESC, projects.user_id, usage.project_id
            """).fetchall()

        report: List[MonthlyUsage] = []
        for month, user, project, total in rows:
            if not report or report[-1].month != month:
                report.append(MonthlyUsage(month=month))
            report[-1].projects.append(ProjectUsage(user=user, project=project, tokens=total))
        return report

    def fetch_recent_usage(self, limit: int = 100) -> List[UsageRecord]:
        """Fetch the most recent ledger entries, newest first."""
        with self.pool.connection() as conn:
            rows = conn.execute("""
                SELECT usage.ts, users.name, projects.name, models.name, usage.tokens
                FROM usage
                JOIN projects ON projects.id = usage.project_id
                JOIN users ON users.id = projects.user_id
                JOIN models ON models.id = usage.model_id
                ORDER BY usage.ts DESC, usage.rowid DESC
                LIMIT ?
            """, (limit,)).fetchall()
        return [
            UsageRecord(
                timestamp=datetime.fromisoformat(row[0]),
                user=row[1],
                project=row[2],
                model=row[3],
                tokens=row[4],
            )
            for row in rows
        ]
