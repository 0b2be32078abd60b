"""
Task status and settlement records backed by SQLite.

Stores the dispatch-side view of every ledger task (pending / dispatched /
completed / failed) and the settlement record that keeps a task from being
submitted to the ledger twice.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

from compute.models import SettlementRecord, Task, TaskStatus

_TERMINAL = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)


class TaskStore:
    """
    Repository for tasks and settlement records.

    Status transitions never leave a terminal state: once a task is
    COMPLETED or FAILED, later updates are ignored.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize task store.

        Args:
            db_path: Path to SQLite database file. If None, uses default location
                    in ~/.ethml/tasks.db
        """
        if db_path is None:
            db_path = str(Path.home() / ".ethml" / "tasks.db")

        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id INTEGER PRIMARY KEY,
                    model_id INTEGER NOT NULL,
                    data_point TEXT NOT NULL,
                    tip TEXT NOT NULL DEFAULT '0',
                    status TEXT NOT NULL DEFAULT 'pending',
                    reason TEXT,
                    last_error TEXT,
                    worker_id TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlements (
                    task_id INTEGER PRIMARY KEY,
                    prediction TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 0,
                    submitted INTEGER NOT NULL DEFAULT 0,
                    outcome TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    submitted_at REAL
                )
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------ #
    # Tasks
    # ------------------------------------------------------------------ #

    def create(self, task: Task) -> bool:
        """
        Insert a task if it is not already known.

        Returns:
            True if inserted, False if the task_id already exists
        """
        now = time.time()
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO tasks (
                    task_id, model_id, data_point, tip, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(task.task_id),
                    int(task.model_id),
                    str(task.data_point),
                    str(task.tip),
                    task.status.value,
                    now,
                    now,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get(self, task_id: int) -> Optional[Task]:
        """
        Retrieve a task by ID.

        Returns:
            Task if found, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE task_id = ?", (int(task_id),)).fetchone()
        return self._row_to_task(row) if row is not None else None

    def list_by_status(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[Task]:
        query = "SELECT * FROM tasks"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY task_id LIMIT ?"
        params.append(int(limit))
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def mark_dispatched(self, task_id: int, worker_id: str) -> bool:
        return self._transition(
            task_id,
            TaskStatus.DISPATCHED,
            extra_sql="worker_id = ?, attempts = attempts + 1",
            extra_params=[worker_id],
        )

    def mark_pending(self, task_id: int, error: Optional[str] = None) -> bool:
        """Back to PENDING after a recoverable failure, keeping the error code."""
        return self._transition(
            task_id,
            TaskStatus.PENDING,
            extra_sql="worker_id = NULL, last_error = ?",
            extra_params=[error],
        )

    def mark_completed(self, task_id: int) -> bool:
        return self._transition(task_id, TaskStatus.COMPLETED)

    def mark_failed(self, task_id: int, reason: str) -> bool:
        """Terminal failure; `reason` is required and surfaced to the intake layer."""
        if not reason:
            raise ValueError("a failed task must carry a reason code")
        return self._transition(
            task_id,
            TaskStatus.FAILED,
            extra_sql="reason = ?",
            extra_params=[reason],
        )

    def _transition(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        extra_sql: str = "",
        extra_params: Optional[List[Any]] = None,
    ) -> bool:
        updates = "status = ?, updated_at = ?"
        params: List[Any] = [status.value, time.time()]
        if extra_sql:
            updates += ", " + extra_sql
            params.extend(extra_params or [])
        params.append(int(task_id))
        params.extend(_TERMINAL)
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {updates} WHERE task_id = ? AND status NOT IN (?, ?)",
                params,
            )
            conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Settlement records
    # ------------------------------------------------------------------ #

    def get_settlement(self, task_id: int) -> Optional[SettlementRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM settlements WHERE task_id = ?", (int(task_id),)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_settlement(row)

    def record_settlement_attempt(self, task_id: int, prediction: Any, confidence: float = 0.0) -> SettlementRecord:
        """
        Create the settlement record on first use and count one ledger attempt.

        The prediction written first wins; a later result for the same task
        does not overwrite it.
        """
        with self._lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO settlements (task_id, prediction, confidence, submitted, attempts)
                VALUES (?, ?, ?, 0, 0)
                """,
                (int(task_id), json.dumps(prediction), float(confidence)),
            )
            conn.execute(
                "UPDATE settlements SET attempts = attempts + 1 WHERE task_id = ? AND submitted = 0",
                (int(task_id),),
            )
            row = conn.execute(
                "SELECT * FROM settlements WHERE task_id = ?", (int(task_id),)
            ).fetchone()
            conn.commit()
        return self._row_to_settlement(row)

    def mark_settled(self, task_id: int, outcome: str) -> bool:
        """Flip `submitted` to True; returns False if it already was."""
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE settlements SET submitted = 1, outcome = ?, submitted_at = ?
                WHERE task_id = ? AND submitted = 0
                """,
                (outcome, time.time(), int(task_id)),
            )
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_settlement(row: sqlite3.Row) -> SettlementRecord:
        return SettlementRecord(
            task_id=int(row["task_id"]),
            prediction=json.loads(row["prediction"]),
            confidence=float(row["confidence"]),
            submitted=bool(row["submitted"]),
            outcome=row["outcome"],
            attempts=int(row["attempts"]),
            submitted_at=row["submitted_at"],
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            task_id=int(row["task_id"]),
            model_id=int(row["model_id"]),
            data_point=str(row["data_point"]),
            tip=str(row["tip"]),
            status=TaskStatus(row["status"]),
            reason=row["reason"],
            last_error=row["last_error"],
            worker_id=row["worker_id"],
            attempts=int(row["attempts"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )
