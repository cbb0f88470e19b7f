"""
Intervention Engine

Turns workflow issues and compliance violations into queueable tasks and
user notifications.

Priority comes from a fixed table keyed by issue type. Low-confidence issues
are downgraded one level, or dropped entirely below a floor. Each intervention
carries a dedup signature (issue type, command, phase); a signature that is
already pending, or was queued within the dedup window, is suppressed so an
unresolved problem does not flood the queue on every analysis tick.

Response types describe how urgently a human should look:
- AUTO_REMEDIATE: confidence above the auto-remediate cutoff
- NOTIFY_SUGGEST: confidence at or above the suggest cutoff
- NOTIFY_ONLY: everything else
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .compliance_monitor import IronLawViolation, ViolationType
from .config import InterventionSettings
from .queue_manager import QueueManager
from .queue_model import CreateTaskInput, Task, TaskPriority
from .workflow_model import IssueType, WorkflowIssue, utc_now

logger = logging.getLogger("intervention_engine")

ANALYZER_SOURCE = "workflow_analyzer"
COMPLIANCE_SOURCE = "compliance_monitor"
NOTIFICATION_PREFIX = "OSS"


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------
ISSUE_PRIORITY: Dict[IssueType, TaskPriority] = {
    IssueType.EXPLICIT_FAILURE: TaskPriority.CRITICAL,
    IssueType.CHAIN_BROKEN: TaskPriority.CRITICAL,
    IssueType.AGENT_FAILED: TaskPriority.CRITICAL,
    IssueType.LOOP_DETECTED: TaskPriority.HIGH,
    IssueType.TDD_VIOLATION: TaskPriority.HIGH,
    IssueType.REGRESSION: TaskPriority.HIGH,
    IssueType.PHASE_STUCK: TaskPriority.HIGH,
    IssueType.ABRUPT_STOP: TaskPriority.HIGH,
    IssueType.ABANDONED_AGENT: TaskPriority.HIGH,
    IssueType.SILENCE: TaskPriority.MEDIUM,
    IssueType.DECLINING_VELOCITY: TaskPriority.MEDIUM,
    IssueType.OUT_OF_ORDER: TaskPriority.MEDIUM,
    IssueType.INCOMPLETE_OUTPUTS: TaskPriority.MEDIUM,
    IssueType.AGENT_SILENCE: TaskPriority.MEDIUM,
    IssueType.PARTIAL_COMPLETION: TaskPriority.MEDIUM,
    IssueType.MISSING_MILESTONES: TaskPriority.LOW,
}

ISSUE_AGENT: Dict[IssueType, str] = {
    IssueType.LOOP_DETECTED: "debugger",
    IssueType.PHASE_STUCK: "debugger",
    IssueType.REGRESSION: "test-engineer",
    IssueType.OUT_OF_ORDER: "test-engineer",
    IssueType.CHAIN_BROKEN: "debugger",
    IssueType.TDD_VIOLATION: "test-engineer",
    IssueType.EXPLICIT_FAILURE: "debugger",
    IssueType.AGENT_FAILED: "debugger",
    IssueType.SILENCE: "debugger",
    IssueType.MISSING_MILESTONES: "test-engineer",
    IssueType.DECLINING_VELOCITY: "performance-engineer",
    IssueType.INCOMPLETE_OUTPUTS: "debugger",
    IssueType.AGENT_SILENCE: "debugger",
    IssueType.ABRUPT_STOP: "debugger",
    IssueType.PARTIAL_COMPLETION: "debugger",
    IssueType.ABANDONED_AGENT: "debugger",
}

ISSUE_NAMES: Dict[IssueType, str] = {
    IssueType.LOOP_DETECTED: "Loop Detected",
    IssueType.PHASE_STUCK: "Phase Stuck",
    IssueType.REGRESSION: "Regression",
    IssueType.OUT_OF_ORDER: "Out of Order",
    IssueType.CHAIN_BROKEN: "Chain Broken",
    IssueType.TDD_VIOLATION: "TDD Violation",
    IssueType.EXPLICIT_FAILURE: "Failure",
    IssueType.AGENT_FAILED: "Agent Failed",
    IssueType.SILENCE: "Workflow Silence",
    IssueType.MISSING_MILESTONES: "Missing Milestones",
    IssueType.DECLINING_VELOCITY: "Declining Velocity",
    IssueType.INCOMPLETE_OUTPUTS: "Incomplete Outputs",
    IssueType.AGENT_SILENCE: "Agent Silence",
    IssueType.ABRUPT_STOP: "Abrupt Stop",
    IssueType.PARTIAL_COMPLETION: "Partial Completion",
    IssueType.ABANDONED_AGENT: "Abandoned Agent",
}

SUGGESTED_ACTIONS: Dict[IssueType, str] = {
    IssueType.LOOP_DETECTED: (
        "Break out of the loop by trying a different approach. Analyze what action "
        "is being repeated and why it is not succeeding."
    ),
    IssueType.PHASE_STUCK: (
        "Investigate why the phase is not completing. Check for blocking errors, "
        "infinite loops, or missing dependencies."
    ),
    IssueType.REGRESSION: (
        "Revert the recent changes or fix the broken tests. Ensure GREEN phase passes "
        "before proceeding to REFACTOR."
    ),
    IssueType.OUT_OF_ORDER: (
        "Follow the correct TDD phase order: RED (write failing test) -> GREEN "
        "(make test pass) -> REFACTOR (clean up)."
    ),
    IssueType.CHAIN_BROKEN: (
        "Complete the prerequisite command before proceeding. The workflow chain "
        "should follow: ideate -> plan -> build -> ship."
    ),
    IssueType.TDD_VIOLATION: (
        "Write failing tests first (RED phase) before implementing code (GREEN phase)."
    ),
    IssueType.EXPLICIT_FAILURE: (
        "Investigate and fix the error that caused the failure. Check logs and error "
        "messages for root cause."
    ),
    IssueType.AGENT_FAILED: (
        "Review what caused the agent to fail. Consider retrying or using a different approach."
    ),
    IssueType.SILENCE: (
        "Check if the workflow is still running. Consider if it is waiting for user "
        "input or has stalled."
    ),
    IssueType.MISSING_MILESTONES: (
        "Ensure each phase produces expected outputs and checkpoints. Log milestones "
        "as work progresses."
    ),
    IssueType.DECLINING_VELOCITY: (
        "Workflow is slowing down. Consider if complexity is increasing or if there "
        "are blocking issues."
    ),
    IssueType.INCOMPLETE_OUTPUTS: (
        "Ensure the command produces expected outputs before marking complete. Check "
        "for missing files or artifacts."
    ),
    IssueType.AGENT_SILENCE: (
        "Check if the spawned agent started correctly. Consider restarting or using a "
        "different agent."
    ),
    IssueType.ABRUPT_STOP: (
        "Workflow stopped unexpectedly after making progress. Check for crashes, "
        "timeouts, or user interruption."
    ),
    IssueType.PARTIAL_COMPLETION: (
        "Earlier workflow steps never ran. Resume the chain from the first pending "
        "step or confirm the skip was intended."
    ),
    IssueType.ABANDONED_AGENT: (
        "An agent started but never completed. Check for timeouts, errors, or stuck processes."
    ),
}

VIOLATION_AGENT: Dict[ViolationType, str] = {
    ViolationType.BRANCH: "debugger",
    ViolationType.TDD: "test-engineer",
    ViolationType.DOCS: "debugger",
}

# Context keys that are bookkeeping, not evidence
HIDDEN_CONTEXT_KEYS = ("anchor",)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
class ResponseType(str, Enum):
    AUTO_REMEDIATE = "auto_remediate"
    NOTIFY_SUGGEST = "notify_suggest"
    NOTIFY_ONLY = "notify_only"


class NotificationSound(str, Enum):
    ALERT = "Basso"
    WARNING = "Purr"
    INFO = "Pop"


@dataclass(frozen=True)
class Notification:
    """A title/message pair for the notification transport."""
    title: str
    message: str
    sound: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "message": self.message, "sound": self.sound}


@dataclass(frozen=True)
class Intervention:
    """
    The response planned for one issue or violation.

    task_input is what gets queued; task is filled in once the queue accepts
    it. A suppressed intervention duplicates a recent one and is not queued.
    """
    kind: str
    signature: str
    priority: TaskPriority
    response_type: ResponseType
    confidence: float
    notification: Notification
    task_input: CreateTaskInput
    suppressed: bool = False
    duplicate_of: Optional[str] = None
    task: Optional[Task] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "signature": self.signature,
            "priority": self.priority.value,
            "response_type": self.response_type.value,
            "confidence": round(self.confidence, 4),
            "notification": self.notification.to_dict(),
            "suppressed": self.suppressed,
            "duplicate_of": self.duplicate_of,
            "task_id": self.task.id if self.task else None,
            "details": dict(self.details),
        }


def issue_signature(issue_type: str, command: Optional[str], phase: Optional[str]) -> str:
    return f"{issue_type}:{command or '-'}:{phase or '-'}"


def violation_signature(violation: IronLawViolation) -> str:
    return f"iron_law:{violation.law}:{violation.type.value}:{violation.subject}"


# -----------------------------------------------------------------------------
# Formatting
# -----------------------------------------------------------------------------
def format_key(key: str) -> str:
    return " ".join(word.capitalize() for word in key.split("_"))


def format_duration_ms(value: float) -> str:
    seconds = int(round(value / 1000))
    if seconds >= 60:
        minutes, remaining = divmod(seconds, 60)
        return f"{minutes} minutes {remaining} seconds" if remaining else f"{minutes} minutes"
    return f"{seconds} seconds"


def format_context_value(key: str, value: Any) -> str:
    if key.endswith("_ms") and isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_duration_ms(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def render_prompt(title: str, description: str, evidence: Dict[str, Any], action: str, confidence: float) -> str:
    """Markdown task prompt handed to the executor."""
    sections: List[str] = [f"## Workflow Issue: {title}\n", f"### Issue Description\n{description}\n"]
    shown = {k: v for k, v in evidence.items() if k not in HIDDEN_CONTEXT_KEYS and v is not None}
    if shown:
        sections.append("### Evidence\n")
        for key, value in shown.items():
            sections.append(f"- **{format_key(key)}**: {format_context_value(key, value)}")
        sections.append("")
    sections.append(f"### Suggested Action\n{action}\n")
    sections.append(f"### Confidence\n{confidence * 100:.0f}%\n")
    return "\n".join(sections)


# -----------------------------------------------------------------------------
# Generator
# -----------------------------------------------------------------------------
class InterventionGenerator:
    """
    Maps issues to interventions and suppresses recent duplicates.

    When a queue is attached, its pending and recently created tasks are the
    dedup reference; signatures this generator emitted itself are remembered
    for the same window either way.
    """

    def __init__(
        self,
        settings: Optional[InterventionSettings] = None,
        queue: Optional[QueueManager] = None,
    ):
        self.settings = settings or InterventionSettings()
        self.queue = queue
        self._recent: Dict[str, datetime] = {}

    # -------------------------------------------------------------------------
    # Pure mapping
    # -------------------------------------------------------------------------
    def response_type_for(self, confidence: float) -> ResponseType:
        if confidence > self.settings.auto_remediate_above:
            return ResponseType.AUTO_REMEDIATE
        if confidence >= self.settings.notify_suggest_at:
            return ResponseType.NOTIFY_SUGGEST
        return ResponseType.NOTIFY_ONLY

    def sound_for(self, confidence: float) -> str:
        response = self.response_type_for(confidence)
        if response == ResponseType.AUTO_REMEDIATE:
            return NotificationSound.ALERT.value
        if response == ResponseType.NOTIFY_SUGGEST:
            return NotificationSound.WARNING.value
        return NotificationSound.INFO.value

    def priority_for(self, issue: WorkflowIssue) -> Optional[TaskPriority]:
        """Table priority adjusted by confidence; None when below the floor."""
        if issue.confidence < self.settings.drop_below:
            return None
        priority = ISSUE_PRIORITY[issue.type]
        if issue.confidence < self.settings.downgrade_below:
            priority = priority.downgraded()
        return priority

    def agent_for(self, issue: WorkflowIssue) -> str:
        agent_type = issue.context.get("agent_type")
        if agent_type:
            return str(agent_type)
        return ISSUE_AGENT.get(issue.type, "debugger")

    def build(
        self,
        issue: WorkflowIssue,
        command: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> Optional[Intervention]:
        """Plan the intervention for an issue without consulting the queue."""
        priority = self.priority_for(issue)
        if priority is None:
            logger.debug(f"Dropping {issue.type.value} at confidence {issue.confidence:.2f}")
            return None

        command = issue.context.get("command") or command
        phase = issue.context.get("phase") or phase
        signature = issue_signature(issue.type.value, command, phase)
        response_type = self.response_type_for(issue.confidence)
        name = ISSUE_NAMES[issue.type]
        source = str(issue.context.get("source") or ANALYZER_SOURCE)

        task_input = CreateTaskInput(
            priority=priority,
            source=source,
            anomaly_type=issue.type.value,
            prompt=render_prompt(
                name,
                issue.message,
                issue.context,
                SUGGESTED_ACTIONS[issue.type],
                issue.confidence,
            ),
            suggested_agent=self.agent_for(issue),
            context={
                **issue.context,
                "command": command,
                "phase": phase,
                "confidence": round(issue.confidence, 4),
                "response_type": response_type.value,
                "auto_execute": response_type == ResponseType.AUTO_REMEDIATE,
            },
            signature=signature,
        )
        return Intervention(
            kind=issue.type.value,
            signature=signature,
            priority=priority,
            response_type=response_type,
            confidence=issue.confidence,
            notification=Notification(
                title=f"{NOTIFICATION_PREFIX}: {name}",
                message=issue.message,
                sound=self.sound_for(issue.confidence),
            ),
            task_input=task_input,
            details={"occurrence": issue.occurrence_key},
        )

    def build_for_violation(self, violation: IronLawViolation) -> Intervention:
        signature = violation_signature(violation)
        title = f"IRON LAW #{violation.law} Violation"
        evidence = {
            "law": violation.law,
            "subject": violation.subject,
            "detected_at": violation.detected_at,
        }
        action = violation.corrective_action or "Stop current work and fix the violation immediately."
        task_input = CreateTaskInput(
            priority=TaskPriority.HIGH,
            source=COMPLIANCE_SOURCE,
            anomaly_type=violation.type.value,
            prompt=render_prompt(title, violation.message, evidence, action, 1.0),
            suggested_agent=VIOLATION_AGENT.get(violation.type, "debugger"),
            context={**evidence, "corrective_action": violation.corrective_action},
            signature=signature,
        )
        return Intervention(
            kind=violation.type.value,
            signature=signature,
            priority=TaskPriority.HIGH,
            response_type=ResponseType.NOTIFY_SUGGEST,
            confidence=1.0,
            notification=Notification(
                title=f"{NOTIFICATION_PREFIX}: {title}",
                message=violation.message,
                sound=NotificationSound.ALERT.value,
            ),
            task_input=task_input,
            details={"law": violation.law, "subject": violation.subject},
        )

    # -------------------------------------------------------------------------
    # Deduplicated generation
    # -------------------------------------------------------------------------
    async def generate(
        self,
        issue: WorkflowIssue,
        command: Optional[str] = None,
        phase: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Intervention]:
        """
        Plan an intervention and mark it suppressed if it duplicates a
        pending or recent task. Returns None when the issue is dropped.
        """
        intervention = self.build(issue, command, phase)
        if intervention is None:
            return None
        return await self._deduplicate(intervention, now or utc_now())

    async def generate_for_violation(
        self,
        violation: IronLawViolation,
        now: Optional[datetime] = None,
    ) -> Intervention:
        return await self._deduplicate(self.build_for_violation(violation), now or utc_now())

    def mark_queued(self, intervention: Intervention, task: Task, now: Optional[datetime] = None) -> Intervention:
        """Record the queued task and remember the signature for the dedup window."""
        self._recent[intervention.signature] = now or utc_now()
        return replace(intervention, task=task)

    async def _deduplicate(self, intervention: Intervention, now: datetime) -> Intervention:
        window = self.settings.dedup_window_seconds
        self._prune(now)

        seen_at = self._recent.get(intervention.signature)
        if seen_at is not None:
            return replace(intervention, suppressed=True)

        if self.queue is not None:
            existing = await self.queue.find_recent_by_signature(intervention.signature, window, now)
            if existing is not None:
                logger.debug(f"Suppressing {intervention.signature}: matches task {existing.id}")
                return replace(intervention, suppressed=True, duplicate_of=existing.id)
        return intervention

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.settings.dedup_window_seconds)
        for signature in [s for s, t in self._recent.items() if t < cutoff]:
            del self._recent[signature]
