"""
Workflow Data Model

Typed records for the workflow event log and for everything derived from it.

CRITICAL CONSTRAINTS:
- IMMUTABLE: LogEntry is frozen; the log is append-only and never rewritten
- CLOSED SETS: WorkflowEvent and IssueType are LOCKED enums
- DERIVED: WorkflowAnalysis is recomputed from scratch on every pass
- SERIALIZABLE: every record round-trips through to_dict() / from_dict()
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

logger = logging.getLogger("workflow_model")


# -----------------------------------------------------------------------------
# Time Helpers
# -----------------------------------------------------------------------------
def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing 'Z'. Naive values are taken to be UTC.
    Raises ValueError on anything unparseable.
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime the way the workflow log writes it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# -----------------------------------------------------------------------------
# Workflow Enums (LOCKED)
# -----------------------------------------------------------------------------
class WorkflowEvent(str, Enum):
    """Event kinds written to the workflow log."""
    START = "START"
    PHASE_START = "PHASE_START"
    PHASE_COMPLETE = "PHASE_COMPLETE"
    MILESTONE = "MILESTONE"
    AGENT_SPAWN = "AGENT_SPAWN"
    AGENT_COMPLETE = "AGENT_COMPLETE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class IssueType(str, Enum):
    """
    The sixteen kinds of workflow issue the analyzer can report.

    This enum is LOCKED - every value has exactly one detector.
    """
    LOOP_DETECTED = "loop_detected"
    PHASE_STUCK = "phase_stuck"
    REGRESSION = "regression"
    OUT_OF_ORDER = "out_of_order"
    CHAIN_BROKEN = "chain_broken"
    TDD_VIOLATION = "tdd_violation"
    EXPLICIT_FAILURE = "explicit_failure"
    AGENT_FAILED = "agent_failed"
    SILENCE = "silence"
    MISSING_MILESTONES = "missing_milestones"
    DECLINING_VELOCITY = "declining_velocity"
    INCOMPLETE_OUTPUTS = "incomplete_outputs"
    AGENT_SILENCE = "agent_silence"
    ABRUPT_STOP = "abrupt_stop"
    PARTIAL_COMPLETION = "partial_completion"
    ABANDONED_AGENT = "abandoned_agent"


class HealthStatus(str, Enum):
    """Overall workflow health derived from issue confidences."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class ChainStatus(str, Enum):
    """Progress of one top-level command in the workflow chain."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


# Ordered top-level workflow chain
COMMAND_CHAIN: List[str] = ["ideate", "plan", "build", "ship"]

# TDD cycle within build
PHASE_ORDER: List[str] = ["RED", "GREEN", "REFACTOR"]


def empty_chain_progress() -> Dict[str, ChainStatus]:
    return {cmd: ChainStatus.PENDING for cmd in COMMAND_CHAIN}


# -----------------------------------------------------------------------------
# Log Entry
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AgentInfo:
    """Identity of a spawned sub-agent."""
    type: str
    id: Optional[str] = None
    parent_cmd: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type}
        if self.id is not None:
            result["id"] = self.id
        if self.parent_cmd is not None:
            result["parent_cmd"] = self.parent_cmd
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentInfo":
        if not isinstance(data, dict):
            raise ValueError(f"agent must be an object, got {type(data).__name__}")
        return cls(
            type=str(data.get("type", "unknown")),
            id=str(data["id"]) if data.get("id") is not None else None,
            parent_cmd=data.get("parent_cmd"),
        )


@dataclass(frozen=True)
class LogEntry:
    """
    One workflow event as written to the log.

    On disk the record uses the short keys ts/cmd/phase/event/data/agent.
    """
    timestamp: str
    command: str
    event: WorkflowEvent
    phase: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    agent: Optional[AgentInfo] = None

    def __post_init__(self):
        # Validates eagerly so a bad record never reaches the analyzer
        parse_timestamp(self.timestamp)
        if not isinstance(self.command, str) or not self.command:
            raise ValueError(f"Invalid command: {self.command!r}")
        if not isinstance(self.data, dict):
            raise ValueError(f"data must be an object, got {type(self.data).__name__}")

    @property
    def time(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def agent_id(self) -> Optional[str]:
        """Agent referenced by this entry, if any."""
        if self.agent is not None and self.agent.id:
            return self.agent.id
        value = self.data.get("agent_id")
        return str(value) if value is not None else None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ts": self.timestamp,
            "cmd": self.command,
            "phase": self.phase,
            "event": self.event.value,
            "data": dict(self.data),
        }
        if self.agent is not None:
            result["agent"] = self.agent.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        """Decode an on-disk record. Raises ValueError/KeyError if malformed."""
        if not isinstance(data, dict):
            raise ValueError("log record must be an object")
        agent = data.get("agent")
        payload = data.get("data")
        return cls(
            timestamp=data["ts"],
            command=data["cmd"],
            event=WorkflowEvent(data["event"]),
            phase=data.get("phase") or None,
            data=payload if payload is not None else {},
            agent=AgentInfo.from_dict(agent) if agent else None,
        )


# -----------------------------------------------------------------------------
# Issues and Analysis
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class WorkflowIssue:
    """
    A single detected problem.

    context["anchor"] identifies the specific occurrence (for example the
    timestamp of the triggering entry) so the supervisor can tell a new
    occurrence from one it has already acted on.
    """
    type: IssueType
    confidence: float
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    @property
    def anchor(self) -> str:
        return str(self.context.get("anchor", ""))

    @property
    def occurrence_key(self) -> str:
        return f"{self.type.value}:{self.anchor}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "confidence": round(self.confidence, 4),
            "message": self.message,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowIssue":
        return cls(
            type=IssueType(data["type"]),
            confidence=float(data["confidence"]),
            message=data.get("message", ""),
            context=dict(data.get("context") or {}),
        )


@dataclass(frozen=True)
class ActiveAgent:
    """An agent that has been spawned and not yet completed."""
    id: str
    type: str
    spawn_time: str
    last_seen: str
    parent_cmd: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowAnalysis:
    """Snapshot derived from the full entry sequence."""
    health: HealthStatus
    issues: List[WorkflowIssue] = field(default_factory=list)
    current_command: Optional[str] = None
    current_phase: Optional[str] = None
    phase_start_time: Optional[str] = None
    last_activity_time: Optional[str] = None
    command_terminated: bool = False
    milestone_timestamps: List[str] = field(default_factory=list)
    active_agents: List[ActiveAgent] = field(default_factory=list)
    expected_milestones: int = 0
    actual_milestones: int = 0
    chain_progress: Dict[str, ChainStatus] = field(default_factory=empty_chain_progress)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "health": self.health.value,
            "issues": [i.to_dict() for i in self.issues],
            "current_command": self.current_command,
            "current_phase": self.current_phase,
            "phase_start_time": self.phase_start_time,
            "last_activity_time": self.last_activity_time,
            "command_terminated": self.command_terminated,
            "milestone_timestamps": list(self.milestone_timestamps),
            "active_agents": [a.to_dict() for a in self.active_agents],
            "expected_milestones": self.expected_milestones,
            "actual_milestones": self.actual_milestones,
            "chain_progress": {k: v.value for k, v in self.chain_progress.items()},
        }


# -----------------------------------------------------------------------------
# Supervisor State
# -----------------------------------------------------------------------------
@dataclass
class SupervisorState:
    """Cross-restart snapshot persisted by the supervisor."""
    current_command: Optional[str] = None
    current_phase: Optional[str] = None
    chain_progress: Dict[str, ChainStatus] = field(default_factory=empty_chain_progress)
    milestone_timestamps: List[str] = field(default_factory=list)
    last_activity_time: Optional[str] = None
    command_terminated: bool = False
    log_offset: int = 0
    processed_signatures: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_command": self.current_command,
            "current_phase": self.current_phase,
            "chain_progress": {k: v.value for k, v in self.chain_progress.items()},
            "milestone_timestamps": list(self.milestone_timestamps),
            "last_activity_time": self.last_activity_time,
            "command_terminated": self.command_terminated,
            "log_offset": self.log_offset,
            "processed_signatures": list(self.processed_signatures),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupervisorState":
        chain = empty_chain_progress()
        for cmd, status in (data.get("chain_progress") or {}).items():
            if cmd in chain:
                chain[cmd] = ChainStatus(status)
        offset = int(data.get("log_offset") or 0)
        if offset < 0:
            raise ValueError(f"log_offset must be >= 0, got {offset}")
        return cls(
            current_command=data.get("current_command"),
            current_phase=data.get("current_phase"),
            chain_progress=chain,
            milestone_timestamps=[str(t) for t in data.get("milestone_timestamps") or []],
            last_activity_time=data.get("last_activity_time"),
            command_terminated=bool(data.get("command_terminated", False)),
            log_offset=offset,
            processed_signatures=[str(s) for s in data.get("processed_signatures") or []],
            updated_at=data.get("updated_at"),
        )
