"""
Intervention Queue Model

Task records owned by the queue manager.

CRITICAL CONSTRAINTS:
- IMMUTABLE PRIORITY: Task is frozen; status changes produce a new record
  and no operation ever changes priority
- ORDERED: pending tasks sort by priority rank, then created_at, then
  insertion sequence
- SERIALIZABLE: Task.from_dict(task.to_dict()) == task
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .workflow_model import format_timestamp, parse_timestamp


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------
class QueueError(Exception):
    """Base exception for queue operations."""
    pass


class TaskNotFoundError(QueueError):
    """Raised when a task id is not in the queue."""
    pass


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskPriority(str, Enum):
    """
    Task priority levels.

    rank: 0 = most urgent. Used for ordering and eviction.
    """
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)

    def downgraded(self) -> "TaskPriority":
        """One level less urgent; LOW stays LOW."""
        return PRIORITY_ORDER[min(self.rank + 1, len(PRIORITY_ORDER) - 1)]


PRIORITY_ORDER: List[TaskPriority] = [
    TaskPriority.CRITICAL,
    TaskPriority.HIGH,
    TaskPriority.MEDIUM,
    TaskPriority.LOW,
]


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ArchiveReason(str, Enum):
    """Why a task was moved out of the live queue file."""
    DROPPED = "dropped"
    FAILED = "failed"
    HISTORY = "history"
    REMOVED = "removed"


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
def generate_task_id(now: datetime) -> str:
    """task-YYYYMMDD-HHMMSS-xxxxxx"""
    return f"task-{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class CreateTaskInput:
    """Fields a producer supplies when queueing a task."""
    priority: TaskPriority
    source: str
    anomaly_type: str
    prompt: str
    suggested_agent: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None


@dataclass(frozen=True)
class Task:
    """A queued corrective intervention."""
    id: str
    priority: TaskPriority
    source: str
    anomaly_type: str
    prompt: str
    status: TaskStatus
    created_at: str
    expires_at: str
    suggested_agent: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    attempts: int = 0
    seq: int = 0

    @property
    def created_time(self) -> datetime:
        return parse_timestamp(self.created_at)

    @property
    def expires_time(self) -> datetime:
        return parse_timestamp(self.expires_at)

    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_time <= now

    def get_sort_key(self) -> Tuple[int, datetime, int]:
        """Most urgent first, then oldest, then first inserted."""
        return (self.priority.rank, self.created_time, self.seq)

    def with_status(self, status: TaskStatus, **changes: Any) -> "Task":
        return replace(self, status=status, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority.value,
            "source": self.source,
            "anomaly_type": self.anomaly_type,
            "prompt": self.prompt,
            "suggested_agent": self.suggested_agent,
            "context": dict(self.context),
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "signature": self.signature,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "attempts": self.attempts,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            priority=TaskPriority(data["priority"]),
            source=data.get("source", ""),
            anomaly_type=data.get("anomaly_type", ""),
            prompt=data.get("prompt", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            suggested_agent=data.get("suggested_agent"),
            context=dict(data.get("context") or {}),
            signature=data.get("signature"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            attempts=int(data.get("attempts", 0)),
            seq=int(data.get("seq", 0)),
        )

    @classmethod
    def create(
        cls,
        task_input: CreateTaskInput,
        now: datetime,
        lifetime_seconds: float,
        seq: int = 0,
    ) -> "Task":
        return cls(
            id=generate_task_id(now),
            priority=task_input.priority,
            source=task_input.source,
            anomaly_type=task_input.anomaly_type,
            prompt=task_input.prompt,
            status=TaskStatus.PENDING,
            created_at=format_timestamp(now),
            expires_at=format_timestamp(now + timedelta(seconds=lifetime_seconds)),
            suggested_agent=task_input.suggested_agent,
            context=dict(task_input.context),
            signature=task_input.signature,
            seq=seq,
        )


@dataclass(frozen=True)
class TaskFilter:
    """Selection for QueueManager.list_tasks. None means "any"."""
    status: Optional[TaskStatus] = TaskStatus.PENDING
    priority: Optional[TaskPriority] = None
    source: Optional[str] = None
    anomaly_type: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status != self.status:
            return False
        if self.priority is not None and task.priority != self.priority:
            return False
        if self.source is not None and task.source != self.source:
            return False
        if self.anomaly_type is not None and task.anomaly_type != self.anomaly_type:
            return False
        return True
