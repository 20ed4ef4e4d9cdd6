"""
Planning State Store
====================
Durable storage for planning calls suspended on a clarification question.

A state is written when the model asks a question and consumed exactly once
when the answer comes back. Consumption is a single DELETE whose row count
tells the caller whether it won; a second consumer sees nothing to delete.
"""

import logging
import os
from typing import Optional

from planner_types import ClarificationState, PlanningType
from task_store import sqlite_connection

logger = logging.getLogger(__name__)


class PlanningStateStore:
    """Clarification states keyed by question id."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def initialize(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        async with sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS planning_states (
                    question_id TEXT PRIMARY KEY,
                    feature_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    partial_response TEXT NOT NULL,
                    planning_type TEXT NOT NULL
                        CHECK (planning_type IN ('feature_planning', 'plan_adjustment')),
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_planning_states_feature_id ON planning_states(feature_id)"
            )
            await db.commit()

    async def put(self, state: ClarificationState):
        async with sqlite_connection(self.db_path) as db:
            await db.execute(
                """INSERT OR REPLACE INTO planning_states
                   (question_id, feature_id, prompt, partial_response, planning_type, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    state.question_id,
                    state.feature_id,
                    state.prompt,
                    state.partial_response,
                    state.planning_type.value,
                    state.created_at,
                ),
            )
            await db.commit()
        logger.info(f"Stored planning state {state.question_id} for feature {state.feature_id}")

    async def get(self, question_id: str) -> Optional[ClarificationState]:
        async with sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM planning_states WHERE question_id = ?", (question_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        return ClarificationState(
            question_id=row["question_id"],
            feature_id=row["feature_id"],
            prompt=row["prompt"],
            partial_response=row["partial_response"],
            planning_type=PlanningType(row["planning_type"]),
            created_at=row["created_at"],
        )

    async def get_by_feature(self, feature_id: str) -> Optional[ClarificationState]:
        """Most recent pending question of a feature."""
        async with sqlite_connection(self.db_path) as db:
            async with db.execute(
                """SELECT question_id FROM planning_states WHERE feature_id = ?
                   ORDER BY created_at DESC LIMIT 1""",
                (feature_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return await self.get(row["question_id"]) if row else None

    async def delete(self, question_id: str) -> bool:
        """Remove a state; True only for the caller that actually removed it."""
        async with sqlite_connection(self.db_path) as db:
            cursor = await db.execute("DELETE FROM planning_states WHERE question_id = ?", (question_id,))
            await db.commit()
            return cursor.rowcount > 0
