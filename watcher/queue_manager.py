"""
Intervention Queue Manager

Durable, priority-ordered store of corrective tasks. The queue file is the
system of record read directly by external executors and status displays.

File shape:
    {"version": "1.0", "updated_at": "<iso>", "next_seq": <int>, "tasks": [<task>, ...]}

CRITICAL CONSTRAINTS:
- ATOMIC: every mutation is load -> modify -> write temp -> rename
- BOUNDED: live tasks (pending or in progress) never exceed max_size
- EVICTION: lowest priority, oldest first; a critical task is never evicted
  to make room for a less urgent one
- UNIQUE SIGNATURE: no two pending tasks share a dedup signature
- HISTORY: expiry marks tasks expired rather than deleting them
- TOLERANT: a corrupt queue file is reset to empty, never raised
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .queue_model import (
    ArchiveReason,
    CreateTaskInput,
    Task,
    TaskFilter,
    TaskNotFoundError,
    TaskPriority,
    TaskStatus,
)
from .storage import atomic_write_json, load_json
from .workflow_model import format_timestamp, utc_now

logger = logging.getLogger("queue_manager")

QUEUE_VERSION = "1.0"
DEFAULT_MAX_SIZE = 50
DEFAULT_TASK_LIFETIME_SECONDS = 24 * 60 * 60
DEFAULT_HISTORY_LIMIT = 200
ARCHIVE_LIMIT = 500

TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.EXPIRED)
LIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class QueueManager:
    """
    Priority task queue persisted to a single JSON file.

    All public methods are coroutines serialized by an asyncio.Lock so that
    overlapping callers in one event loop never interleave a read-modify-write.
    """

    def __init__(
        self,
        queue_file: Path,
        max_size: int = DEFAULT_MAX_SIZE,
        task_lifetime_seconds: float = DEFAULT_TASK_LIFETIME_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        archive_file: Optional[Path] = None,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._queue_file = Path(queue_file)
        self._archive_file = Path(archive_file) if archive_file else (
            self._queue_file.with_name(self._queue_file.stem + "-archive.json")
        )
        self.max_size = max_size
        self.task_lifetime_seconds = task_lifetime_seconds
        self.history_limit = history_limit
        self._lock = asyncio.Lock()
        self._next_seq = 1

    @property
    def queue_file(self) -> Path:
        return self._queue_file

    @property
    def archive_file(self) -> Path:
        return self._archive_file

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def add_task(self, task_input: CreateTaskInput, now: Optional[datetime] = None) -> Task:
        """
        Queue a new task.

        Returns the existing pending task when one already carries the same
        signature. When the queue is full and the new task is the least urgent
        candidate it is not admitted: it is archived as dropped and returned
        with status expired.
        """
        now = now or utc_now()
        async with self._lock:
            tasks = self._load_tasks()
            tasks, _ = self._sweep(tasks, now)

            if task_input.signature:
                for existing in tasks:
                    if existing.is_pending() and existing.signature == task_input.signature:
                        logger.debug(f"Task with signature {task_input.signature} already pending: {existing.id}")
                        self._save_tasks(tasks, now)
                        return existing

            task = Task.create(task_input, now, self.task_lifetime_seconds, seq=self._next_seq)
            self._next_seq += 1
            live = [t for t in tasks if t.status in LIVE_STATUSES]
            pending = [t for t in live if t.is_pending()]
            dropped: List[Task] = []

            if len(live) >= self.max_size:
                victim = min(pending + [task], key=self._eviction_key)
                if victim.id == task.id:
                    rejected = task.with_status(TaskStatus.EXPIRED)
                    logger.warning(
                        f"Queue full ({self.max_size}), rejecting {task.priority.value} "
                        f"task {task.anomaly_type}"
                    )
                    self._save_tasks(tasks, now)
                    self._archive([rejected], ArchiveReason.DROPPED, now)
                    return rejected
                logger.info(
                    f"Queue full ({self.max_size}), evicting {victim.priority.value} task {victim.id}"
                )
                tasks = [t for t in tasks if t.id != victim.id]
                dropped.append(victim)

            tasks.append(task)
            tasks = self._trim_history(tasks, now)
            self._save_tasks(tasks, now)
            if dropped:
                self._archive(dropped, ArchiveReason.DROPPED, now)
            logger.info(f"Queued task {task.id} ({task.priority.value}, {task.anomaly_type})")
            return task

    async def list_tasks(
        self,
        task_filter: Optional[TaskFilter] = None,
        now: Optional[datetime] = None,
    ) -> List[Task]:
        """Tasks matching the filter, most urgent first then oldest first."""
        task_filter = task_filter or TaskFilter()
        now = now or utc_now()
        async with self._lock:
            tasks = self._load_tasks()
            tasks, changed = self._sweep(tasks, now)
            if changed:
                self._save_tasks(tasks, now)

        selected = sorted((t for t in tasks if task_filter.matches(t)), key=lambda t: t.get_sort_key())
        if task_filter.limit is not None:
            selected = selected[:task_filter.limit]
        return selected

    async def get_tasks(self) -> List[Task]:
        """Every task in the live file, in stored order."""
        async with self._lock:
            return self._load_tasks()

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._lock:
            for task in self._load_tasks():
                if task.id == task_id:
                    return task
        return None

    async def get_next_task(self, now: Optional[datetime] = None) -> Optional[Task]:
        pending = await self.list_tasks(TaskFilter(limit=1), now=now)
        return pending[0] if pending else None

    async def complete_task(self, task_id: str, now: Optional[datetime] = None) -> Task:
        now = now or utc_now()
        return await self._update(
            task_id,
            lambda t: t.with_status(TaskStatus.COMPLETED, completed_at=format_timestamp(now)),
            now,
        )

    async def start_task(self, task_id: str, now: Optional[datetime] = None) -> Task:
        """Mark a pending task as picked up by an executor."""
        now = now or utc_now()
        return await self._update(
            task_id,
            lambda t: t.with_status(
                TaskStatus.IN_PROGRESS,
                started_at=format_timestamp(now),
                attempts=t.attempts + 1,
            ),
            now,
        )

    async def fail_task(self, task_id: str, error: str = "", now: Optional[datetime] = None) -> Task:
        """Move a task out of the live queue into the archive as failed."""
        now = now or utc_now()
        async with self._lock:
            tasks = self._load_tasks()
            task = self._find(tasks, task_id)
            remaining = [t for t in tasks if t.id != task_id]
            self._save_tasks(remaining, now)
            self._archive([task], ArchiveReason.FAILED, now, error=error)
            logger.info(f"Task {task_id} failed: {error}")
            return task

    async def remove_task(self, task_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        async with self._lock:
            tasks = self._load_tasks()
            remaining = [t for t in tasks if t.id != task_id]
            if len(remaining) == len(tasks):
                return False
            removed = [t for t in tasks if t.id == task_id]
            self._save_tasks(remaining, now)
            self._archive(removed, ArchiveReason.REMOVED, now)
            return True

    async def remove_expired(self, now: Optional[datetime] = None) -> int:
        """Mark pending tasks past their expiry as expired. Returns the count."""
        now = now or utc_now()
        async with self._lock:
            tasks = self._load_tasks()
            tasks, expired = self._sweep(tasks, now)
            if expired:
                self._save_tasks(tasks, now)
            return expired

    async def find_recent_by_signature(
        self,
        signature: str,
        window_seconds: float,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """A pending task with this signature, or one created within the window."""
        now = now or utc_now()
        cutoff = now - timedelta(seconds=window_seconds)
        async with self._lock:
            tasks = self._load_tasks()
        for task in tasks:
            if task.signature != signature:
                continue
            if task.is_pending() and not task.is_expired_at(now):
                return task
            if task.created_time >= cutoff:
                return task
        return None

    async def get_pending_count(self, now: Optional[datetime] = None) -> int:
        return len(await self.list_tasks(now=now))

    async def count_by_priority(self, now: Optional[datetime] = None) -> Dict[str, int]:
        counts = {p.value: 0 for p in TaskPriority}
        for task in await self.list_tasks(now=now):
            counts[task.priority.value] += 1
        return counts

    async def clear(self, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        async with self._lock:
            self._save_tasks([], now)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    @staticmethod
    def _eviction_key(task: Task) -> Tuple[int, datetime, int]:
        # min() picks the least urgent, then the oldest, then the first inserted
        return (-task.priority.rank, task.created_time, task.seq)

    @staticmethod
    def _find(tasks: List[Task], task_id: str) -> Task:
        for task in tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(f"Task not found: {task_id}")

    async def _update(self, task_id: str, change, now: datetime) -> Task:
        async with self._lock:
            tasks = self._load_tasks()
            task = self._find(tasks, task_id)
            updated = change(task)
            tasks = [updated if t.id == task_id else t for t in tasks]
            tasks = self._trim_history(tasks, now)
            self._save_tasks(tasks, now)
            return updated

    def _sweep(self, tasks: List[Task], now: datetime) -> Tuple[List[Task], int]:
        expired = 0
        swept = []
        for task in tasks:
            if task.is_pending() and task.is_expired_at(now):
                task = task.with_status(TaskStatus.EXPIRED)
                expired += 1
            swept.append(task)
        if expired:
            logger.info(f"Expired {expired} pending task(s)")
        return swept, expired

    def _trim_history(self, tasks: List[Task], now: datetime) -> List[Task]:
        terminal = [t for t in tasks if t.status in TERMINAL_STATUSES]
        overflow = len(terminal) - self.history_limit
        if overflow <= 0:
            return tasks
        oldest = sorted(terminal, key=lambda t: (t.created_time, t.seq))[:overflow]
        oldest_ids = {t.id for t in oldest}
        self._archive(oldest, ArchiveReason.HISTORY, now)
        return [t for t in tasks if t.id not in oldest_ids]

    def _load_tasks(self) -> List[Task]:
        state = load_json(self._queue_file)
        if state is None:
            return []
        raw_tasks = state.get("tasks")
        if not isinstance(raw_tasks, list):
            logger.warning(f"Queue file tasks field invalid (was {type(raw_tasks).__name__}), resetting")
            return []
        tasks = []
        for raw in raw_tasks:
            try:
                tasks.append(Task.from_dict(raw))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Dropping unreadable task record: {e}")
        stored_seq = state.get("next_seq")
        if isinstance(stored_seq, int):
            self._next_seq = max(self._next_seq, stored_seq)
        self._next_seq = max([self._next_seq] + [t.seq + 1 for t in tasks])
        return tasks

    def _save_tasks(self, tasks: List[Task], now: datetime) -> None:
        atomic_write_json(self._queue_file, {
            "version": QUEUE_VERSION,
            "updated_at": format_timestamp(now),
            "next_seq": self._next_seq,
            "tasks": [t.to_dict() for t in tasks],
        })

    def _archive(self, tasks: List[Task], reason: ArchiveReason, now: datetime, error: str = "") -> None:
        if not tasks:
            return
        state = load_json(self._archive_file) or {}
        archived: List[Dict[str, Any]] = state.get("tasks") if isinstance(state.get("tasks"), list) else []
        for task in tasks:
            record = task.to_dict()
            record["archived_at"] = format_timestamp(now)
            record["archive_reason"] = reason.value
            if error:
                record["error"] = error
            archived.append(record)
        archived = archived[-ARCHIVE_LIMIT:]
        atomic_write_json(self._archive_file, {
            "version": QUEUE_VERSION,
            "updated_at": format_timestamp(now),
            "tasks": archived,
        })

