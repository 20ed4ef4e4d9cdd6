"""
Task Store Module
=================
SQLite persistence for features, tasks and the per-feature history log.

Every operation opens its own connection (WAL mode, busy timeout, foreign
keys on) and closes it when done, including on error paths.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from planner_types import (
    FeatureStatus,
    HistoryEntry,
    HistoryRole,
    Task,
    TaskStatus,
    _dict_to_task,
    new_id,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def sqlite_connection(db_path: str):
    """Open SQLite connection with WAL mode enabled for better concurrency."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.execute("PRAGMA foreign_keys=ON")
        db.row_factory = aiosqlite.Row
        yield db


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS features (
        id TEXT PRIMARY KEY,
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'in_progress'
            CHECK (status IN ('in_progress', 'completed', 'abandoned')),
        project_path TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT,
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in_progress', 'completed', 'decomposed')),
        completed INTEGER NOT NULL DEFAULT 0,
        effort TEXT CHECK (effort IN ('low', 'medium', 'high')),
        feature_id TEXT NOT NULL,
        parent_task_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
        from_review INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_feature_id ON tasks(feature_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent_task_id ON tasks(parent_task_id)",
    """
    CREATE TABLE IF NOT EXISTS history_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'model', 'tool_call', 'tool_response')),
        content TEXT NOT NULL,
        feature_id TEXT NOT NULL,
        task_id TEXT,
        action TEXT,
        details TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_feature_id ON history_entries(feature_id, timestamp)",
]


def _row_to_task(row) -> Task:
    data = dict(row)
    data["from_review"] = bool(data.get("from_review"))
    return _dict_to_task(data)


def _row_to_history(row) -> HistoryEntry:
    try:
        content = json.loads(row["content"])
    except (TypeError, ValueError):
        content = row["content"]
    return HistoryEntry(
        id=row["id"],
        timestamp=row["timestamp"],
        role=HistoryRole(row["role"]),
        content=content,
        feature_id=row["feature_id"],
        task_id=row["task_id"],
        action=row["action"],
        details=row["details"],
    )


def _column_value(name: str, value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if name == "from_review":
        return int(bool(value))
    return value


class TaskStore:
    """Features, tasks and history for one SQLite database file."""

    _UPDATABLE = ("title", "description", "effort", "parent_task_id", "from_review", "status")

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connection(self):
        return sqlite_connection(self.db_path)

    async def initialize(self):
        """Create the tables if they don't exist."""
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        async with self._connection() as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        logger.info(f"✅ Task store initialized (SQLite + WAL mode): {self.db_path}")

    # =========================================================================
    # FEATURES
    # =========================================================================

    async def create_feature(self, description: str, project_path: Optional[str] = None,
                             feature_id: Optional[str] = None) -> str:
        feature_id = feature_id or new_id()
        now = datetime.now().isoformat()
        async with self._connection() as db:
            await db.execute(
                """INSERT INTO features (id, description, status, project_path, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (feature_id, description, FeatureStatus.IN_PROGRESS.value, project_path, now, now),
            )
            await db.commit()
        logger.info(f"Created feature {feature_id}")
        return feature_id

    async def get_feature(self, feature_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as db:
            async with db.execute("SELECT * FROM features WHERE id = ?", (feature_id,)) as cursor:
                row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_feature_status(self, feature_id: str, status: FeatureStatus) -> bool:
        async with self._connection() as db:
            cursor = await db.execute(
                "UPDATE features SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, datetime.now().isoformat(), feature_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # =========================================================================
    # TASKS
    # =========================================================================

    async def add_task(self, task: Task):
        async with self._connection() as db:
            await db.execute(
                """INSERT INTO tasks (id, title, description, status, completed, effort, feature_id,
                                      parent_task_id, from_review, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id,
                    task.title,
                    task.description,
                    task.status.value,
                    int(task.completed),
                    task.effort.value,
                    task.feature_id,
                    task.parent_task_id,
                    int(task.from_review),
                    task.created_at,
                    task.updated_at,
                ),
            )
            await db.commit()

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._connection() as db:
            async with db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
                row = await cursor.fetchone()
        return _row_to_task(row) if row else None

    async def get_tasks_by_feature(self, feature_id: str) -> List[Task]:
        """Tasks of a feature in creation order."""
        async with self._connection() as db:
            async with db.execute(
                "SELECT * FROM tasks WHERE feature_id = ? ORDER BY created_at ASC, rowid ASC",
                (feature_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_task(row) for row in rows]

    async def find_task_features(self, task_ids: Iterable[str]) -> Dict[str, str]:
        """Map each stored id among ``task_ids`` to the feature that owns it."""
        ids = list(set(task_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._connection() as db:
            async with db.execute(
                f"SELECT id, feature_id FROM tasks WHERE id IN ({placeholders})", ids
            ) as cursor:
                rows = await cursor.fetchall()
        return {row["id"]: row["feature_id"] for row in rows}

    async def update_task_status(self, task_id: str, status: TaskStatus) -> bool:
        """Set status and its ``completed`` projection."""
        return await self.update_task_fields(task_id, {"status": status})

    async def update_task_fields(self, task_id: str, fields: Dict[str, Any]) -> bool:
        """
        Write the given columns of one task.

        A new description also becomes the title. Unknown field names are
        rejected so callers cannot write arbitrary columns.
        """
        unknown = set(fields) - set(self._UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")

        values = {name: _column_value(name, value) for name, value in fields.items()}
        if "description" in values and "title" not in values:
            values["title"] = values["description"]
        if "status" in values:
            values["completed"] = int(values["status"] == TaskStatus.COMPLETED.value)
        values["updated_at"] = datetime.now().isoformat()

        assignments = ", ".join(f"{name} = ?" for name in values)
        async with self._connection() as db:
            cursor = await db.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                (*values.values(), task_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task (and, through the foreign key, its subtasks) in one transaction."""
        async with self._connection() as db:
            try:
                await db.execute("BEGIN")
                cursor = await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                await db.commit()
            except aiosqlite.Error as e:
                logger.error(f"Failed to delete task {task_id}: {e}")
                await db.rollback()
                raise
            return cursor.rowcount > 0

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def add_history_entry(
        self,
        feature_id: str,
        role: HistoryRole,
        content: Any,
        task_id: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[str] = None,
    ) -> int:
        """Append one entry to a feature's history."""
        async with self._connection() as db:
            cursor = await db.execute(
                """INSERT INTO history_entries (timestamp, role, content, feature_id, task_id, action, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    datetime.now().isoformat(),
                    role.value,
                    json.dumps(content, default=str),
                    feature_id,
                    task_id,
                    action,
                    details,
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def get_history(self, feature_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        """History of a feature, oldest first; ``limit`` keeps only the newest entries."""
        async with self._connection() as db:
            if limit:
                query = """SELECT * FROM (
                               SELECT * FROM history_entries WHERE feature_id = ?
                               ORDER BY timestamp DESC, id DESC LIMIT ?
                           ) ORDER BY timestamp ASC, id ASC"""
                params = (feature_id, limit)
            else:
                query = "SELECT * FROM history_entries WHERE feature_id = ? ORDER BY timestamp ASC, id ASC"
                params = (feature_id,)
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_history(row) for row in rows]
