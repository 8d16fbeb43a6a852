from __future__ import annotations
import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import aiosqlite

from ..core.timeutil import from_iso, now_utc
from ..domain.interfaces import TaskHandler
from ..domain.models import TaskContext, TaskRecord, TaskResult

logger = logging.getLogger(__name__)

_TASK_COLUMNS = "id,kind,tag,payload,due_utc,attempts,status,last_error"


def _record_from_row(row) -> TaskRecord:
    tid, kind, tag, payload, due, attempts, status, err = row
    return TaskRecord(
        id=tid,
        kind=kind,
        tag=tag,
        payload=json.loads(payload),
        due_utc=from_iso(due),
        attempts=int(attempts),
        status=status,
        last_error=err,
    )


class SQLiteWorkEngine:
    """Durable one-shot delayed tasks stored in SQLite.

    Delivery is at-least-once: tasks left ``running`` by a crashed process are
    put back to ``pending`` on start. Handlers return a TaskResult; RETRY or
    an exception reschedules the task with exponential backoff until
    ``max_attempts`` is reached.
    """

    def __init__(
        self,
        path: str,
        *,
        poll_seconds: float = 1.0,
        max_attempts: int = 5,
        backoff_seconds: float = 30.0,
        max_backoff_seconds: float = 1800.0,
        concurrency: int = 4,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._path = path
        self._poll_seconds = poll_seconds
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._concurrency = concurrency
        self._clock = clock

        self._handlers: dict[str, TaskHandler] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    def register(self, kind: str, handler: TaskHandler) -> None:
        self._handlers[kind] = handler

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    tag TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    due_utc TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    last_error TEXT,
                    created_utc TEXT NOT NULL,
                    updated_utc TEXT NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_due ON tasks(status, due_utc)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_tag ON tasks(tag)")
            cur = await db.execute(
                "UPDATE tasks SET status = 'pending', updated_utc = ? WHERE status = 'running'",
                (self._clock().isoformat(),),
            )
            if cur.rowcount:
                logger.warning("Re-queued %d task(s) interrupted by a restart", cur.rowcount)
            await db.commit()

    # --- Queue operations ---

    async def enqueue(
        self,
        kind: str,
        delay: timedelta,
        tag: str,
        payload: dict,
        *,
        dedupe_key: Optional[str] = None,
    ) -> str:
        """Schedule ``kind`` to run after ``delay``.

        With ``dedupe_key`` the key becomes the task id and a second enqueue
        of the same key is ignored, whatever state the first one is in.
        """
        task_id = dedupe_key or str(uuid.uuid4())
        now = self._clock()
        due = now + max(delay, timedelta(0))
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                """
                INSERT OR IGNORE INTO tasks(id,kind,tag,payload,due_utc,attempts,status,created_utc,updated_utc)
                VALUES (?,?,?,?,?,0,'pending',?,?)
                """,
                (task_id, kind, tag, json.dumps(payload), due.isoformat(), now.isoformat(), now.isoformat()),
            )
            await db.commit()
        if cur.rowcount:
            logger.debug("Enqueued %s task %s tag=%s due=%s", kind, task_id, tag, due.isoformat())
        else:
            logger.info("Duplicate %s task %s ignored", kind, task_id)
        return task_id

    async def cancel_by_tag(self, tag: str, kinds: Optional[Iterable[str]] = None) -> int:
        """Cancel pending tasks with ``tag``. Running tasks are not interrupted."""
        sql = "UPDATE tasks SET status = 'cancelled', updated_utc = ? WHERE tag = ? AND status = 'pending'"
        params: list = [self._clock().isoformat(), tag]
        if kinds is not None:
            kinds = list(kinds)
            if not kinds:
                return 0
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(kinds)
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(sql, params)
            await db.commit()
        if cur.rowcount:
            logger.debug("Cancelled %d task(s) tag=%s", cur.rowcount, tag)
        return cur.rowcount

    async def pending(self, tag: Optional[str] = None, kind: Optional[str] = None) -> list[TaskRecord]:
        sql = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE status = 'pending'"
        params: list = []
        if tag is not None:
            sql += " AND tag = ?"
            params.append(tag)
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY due_utc"
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(sql, params)
            rows = await cur.fetchall()
        return [_record_from_row(r) for r in rows]

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,))
            row = await cur.fetchone()
        return _record_from_row(row) if row else None

    # --- Dispatch ---

    async def _claim_due(self) -> list[TaskRecord]:
        now = self._clock().isoformat()
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE status = 'pending' AND due_utc <= ? ORDER BY due_utc",
                (now,),
            )
            rows = await cur.fetchall()
            claimed: list[TaskRecord] = []
            for row in rows:
                rec = _record_from_row(row)
                # Guard against a concurrent cancel between SELECT and UPDATE
                upd = await db.execute(
                    "UPDATE tasks SET status = 'running', attempts = attempts + 1, updated_utc = ? "
                    "WHERE id = ? AND status = 'pending'",
                    (now, rec.id),
                )
                if upd.rowcount:
                    claimed.append(rec)
            await db.commit()
        return claimed

    async def _finish(self, rec: TaskRecord, attempt: int, result: TaskResult, error: Optional[str]) -> None:
        now = self._clock()
        if result is TaskResult.SUCCESS:
            status, due = "done", rec.due_utc
        elif result is TaskResult.RETRY and attempt < self._max_attempts:
            backoff = min(self._backoff_seconds * (2 ** (attempt - 1)), self._max_backoff_seconds)
            status, due = "pending", now + timedelta(seconds=backoff)
            logger.warning(
                "Task %s (%s) will retry in %.0fs (attempt %d/%d)",
                rec.id, rec.kind, backoff, attempt, self._max_attempts,
            )
        else:
            status, due = "failed", rec.due_utc
            logger.error("Task %s (%s) failed after %d attempt(s)", rec.id, rec.kind, attempt)

        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "UPDATE tasks SET status = ?, due_utc = ?, last_error = ?, updated_utc = ? WHERE id = ?",
                (status, due.isoformat(), error, now.isoformat(), rec.id),
            )
            await db.commit()

    async def _execute(self, rec: TaskRecord, sem: asyncio.Semaphore) -> None:
        attempt = rec.attempts + 1
        async with sem:
            handler = self._handlers.get(rec.kind)
            if handler is None:
                logger.error("No handler registered for task kind %r (task %s)", rec.kind, rec.id)
                await self._finish(rec, attempt, TaskResult.FAILURE, f"no handler for {rec.kind}")
                return

            ctx = TaskContext(
                task_id=rec.id,
                kind=rec.kind,
                tag=rec.tag,
                payload=rec.payload,
                attempt=attempt,
                max_attempts=self._max_attempts,
            )
            error: Optional[str] = None
            try:
                result = await handler(ctx)
            except Exception as e:
                logger.exception("Task %s (%s) raised", rec.id, rec.kind)
                result, error = TaskResult.RETRY, f"{type(e).__name__}: {e}"
            await self._finish(rec, attempt, result, error)

    async def run_due(self) -> int:
        """Run every task that is due now. Returns the number dispatched."""
        claimed = await self._claim_due()
        if not claimed:
            return 0
        sem = asyncio.Semaphore(self._concurrency)
        await asyncio.gather(*(self._execute(rec, sem) for rec in claimed))
        return len(claimed)

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="work_engine_loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info(
            "Work engine started (poll=%ss max_attempts=%s concurrency=%s)",
            self._poll_seconds, self._max_attempts, self._concurrency,
        )
        while not self._stop.is_set():
            try:
                await self.run_due()
            except Exception as e:
                logger.exception("Work engine loop error: %s", e)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Work engine stopped")
