"""
Durable FIFO of pending jobs backed by SQLite.

A job row moves through two states:

- `queued`   waiting at its position (ordered by `seq`)
- `inflight` handed to the dispatcher, not yet settled

`complete()` deletes the row once the task is settled or terminally failed.
`recover()` puts every in-flight row back in the queue after a restart, so a
job that was not fully settled is delivered again (at-least-once).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from compute.errors import QueueClosed
from compute.models import Job

logger = logging.getLogger(__name__)

STATE_QUEUED = "queued"
STATE_INFLIGHT = "inflight"


class TaskQueue:
    """
    Ordered job queue with a blocking async `dequeue`.

    Enqueue is safe from any thread or coroutine; dequeue is meant for a
    single consumer (the dispatcher drain loop).
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the queue.

        Args:
            db_path: Path to the SQLite file. If None, uses ~/.ethml/queue.db
        """
        if db_path is None:
            db_path = str(Path.home() / ".ethml" / "queue.db")

        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._closed = False
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._init_db()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL UNIQUE,
                    model_id INTEGER NOT NULL,
                    data_point TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'queued',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    enqueued_at REAL NOT NULL,
                    claimed_at REAL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_state_seq
                ON jobs(state, seq)
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def enqueue(self, job: Job) -> bool:
        """
        Append a job at the tail.

        Returns:
            True if the job was added, False if the task is already queued
            or in flight.
        """
        if self._closed:
            raise QueueClosed("queue is closed")
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO jobs (task_id, model_id, data_point, state, attempts, enqueued_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (int(job.task_id), int(job.model_id), str(job.data_point), STATE_QUEUED, time.time()),
            )
            conn.commit()
            added = cursor.rowcount > 0
        if added:
            logger.debug("job_enqueued task_id=%s", job.task_id)
            self._notify()
        else:
            logger.info("job_enqueue_ignored task_id=%s (already queued or in flight)", job.task_id)
        return added

    def requeue(self, job: Job) -> bool:
        """
        Re-insert an in-flight job at the tail, behind every queued job.

        Only in-flight rows are moved, so a second requeue of the same attempt
        is a no-op and the job is never duplicated.
        """
        with self._lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE task_id = ?", (int(job.task_id),)
            ).fetchone()
            if row is None or row["state"] != STATE_INFLIGHT:
                return False
            conn.execute("DELETE FROM jobs WHERE task_id = ?", (int(job.task_id),))
            conn.execute(
                """
                INSERT INTO jobs (task_id, model_id, data_point, state, attempts, enqueued_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    row["task_id"],
                    row["model_id"],
                    row["data_point"],
                    STATE_QUEUED,
                    row["attempts"],
                    time.time(),
                ),
            )
            conn.commit()
        logger.debug("job_requeued task_id=%s attempts=%s", job.task_id, row["attempts"])
        self._notify()
        return True

    def complete(self, job: Job) -> bool:
        """Remove a settled (or terminally failed) job from the queue."""
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE task_id = ?", (int(job.task_id),))
            conn.commit()
            return cursor.rowcount > 0

    def recover(self) -> int:
        """Return in-flight jobs to the queue after a restart."""
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET state = ?, claimed_at = NULL WHERE state = ?",
                (STATE_QUEUED, STATE_INFLIGHT),
            )
            conn.commit()
            recovered = cursor.rowcount
        if recovered:
            logger.info("queue_recovered jobs=%s", recovered)
            self._notify()
        return recovered

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #

    async def dequeue(self) -> Job:
        """
        Remove and return the head job, waiting until one is available.

        Raises:
            QueueClosed: if the queue is closed while waiting.
        """
        wakeup = self._bind_loop()
        while True:
            if self._closed:
                raise QueueClosed("queue is closed")
            wakeup.clear()
            job = self.try_dequeue()
            if job is not None:
                return job
            await wakeup.wait()

    def try_dequeue(self) -> Optional[Job]:
        """Claim the head job without waiting; None when the queue is empty."""
        with self._lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE state = ? ORDER BY seq LIMIT 1", (STATE_QUEUED,)
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE jobs SET state = ?, attempts = attempts + 1, claimed_at = ? WHERE seq = ?",
                (STATE_INFLIGHT, time.time(), row["seq"]),
            )
            conn.commit()
        return Job(
            task_id=int(row["task_id"]),
            model_id=int(row["model_id"]),
            data_point=str(row["data_point"]),
            seq=int(row["seq"]),
            attempts=int(row["attempts"]) + 1,
        )

    def close(self) -> None:
        """Wake a blocked consumer with QueueClosed; persisted rows are kept."""
        self._closed = True
        self._notify()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def pending_count(self) -> int:
        return self._count(STATE_QUEUED)

    def inflight_count(self) -> int:
        return self._count(STATE_INFLIGHT)

    def queued_task_ids(self) -> List[int]:
        """Task ids waiting in the queue, head first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT task_id FROM jobs WHERE state = ? ORDER BY seq", (STATE_QUEUED,)
            ).fetchall()
        return [int(row["task_id"]) for row in rows]

    def _count(self, state: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM jobs WHERE state = ?", (state,)).fetchone()
        return int(row["n"])

    # ------------------------------------------------------------------ #
    # Wakeups
    # ------------------------------------------------------------------ #

    def _bind_loop(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        if self._wakeup is None or self._loop is not loop:
            self._loop = loop
            self._wakeup = asyncio.Event()
        return self._wakeup

    def _notify(self) -> None:
        wakeup, loop = self._wakeup, self._loop
        if wakeup is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
        else:
            loop.call_soon_threadsafe(wakeup.set)
