"""
Workflow Analyzer

Turns an ordered sequence of workflow log entries into a health verdict and a
list of typed issues.

The analyzer first folds the entries into a summary of where the workflow is
(current command and phase, chain progress, milestones, live agents), then runs
sixteen independent detectors over the entries and the folded summary.

CRITICAL CONSTRAINTS:
- PURE: no I/O, no clock reads except when `now` is not supplied
- DETERMINISTIC: the same entries, baseline and `now` give an equal analysis
- ISOLATED: a detector that raises is logged and skipped; the rest still run
- HEURISTIC: confidence scores are best-effort, never proof
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .config import AnalyzerThresholds
from .workflow_model import (
    COMMAND_CHAIN,
    ActiveAgent,
    ChainStatus,
    HealthStatus,
    IssueType,
    LogEntry,
    SupervisorState,
    WorkflowAnalysis,
    WorkflowEvent,
    WorkflowIssue,
    empty_chain_progress,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("workflow_analyzer")

# A downstream command is healthy when any one of its prerequisites is complete
CHAIN_PREREQUISITES: Dict[str, List[str]] = {
    "build": ["plan", "ideate"],
    "ship": ["build"],
}

# Numeric milestone fields that count completed work
PROGRESS_KEYS: Tuple[str, ...] = (
    "completed",
    "passed",
    "tests_passing",
    "items_completed",
)

TDD_COMMAND = "build"
TDD_FIRST_PHASE = "RED"
TDD_LATER_PHASES = ("GREEN", "REFACTOR")

POSITIVE_EVENTS = (WorkflowEvent.MILESTONE, WorkflowEvent.PHASE_COMPLETE)


# -----------------------------------------------------------------------------
# Folded State
# -----------------------------------------------------------------------------
@dataclass
class TrackedAgent:
    """Live agent bookkeeping used while folding."""
    id: str
    type: str
    spawn_time: str
    last_seen: str
    parent_cmd: Optional[str] = None
    started: bool = False


@dataclass
class FoldedState:
    """Summary of the entry sequence that the time-based detectors read."""
    current_command: Optional[str] = None
    current_phase: Optional[str] = None
    phase_start_time: Optional[str] = None
    phase_last_activity: Optional[str] = None
    phase_complete: bool = False
    last_activity_time: Optional[str] = None
    last_positive_time: Optional[str] = None
    command_terminated: bool = False
    cycle_milestones: List[str] = field(default_factory=list)
    cycle_positive_signals: int = 0
    completed_phases: List[str] = field(default_factory=list)
    agents: Dict[str, TrackedAgent] = field(default_factory=dict)
    chain_progress: Dict[str, ChainStatus] = field(default_factory=empty_chain_progress)
    chain_at_start: Dict[str, Dict[str, ChainStatus]] = field(default_factory=dict)
    chain_start_time: Dict[str, str] = field(default_factory=dict)
    chain_complete_time: Dict[str, str] = field(default_factory=dict)


def canonical_data(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, default=str)


def _seconds_between(later: datetime, earlier: str) -> float:
    return (later - parse_timestamp(earlier)).total_seconds()


def _progress_values(entry: LogEntry) -> Dict[str, float]:
    values = {}
    for key in PROGRESS_KEYS:
        value = entry.data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        values[key] = float(value)
    return values


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, str)):
        return len(value) > 0
    return True


# -----------------------------------------------------------------------------
# Analyzer
# -----------------------------------------------------------------------------
class WorkflowAnalyzer:
    """
    Heuristic workflow health analyzer.

    Usage:
        analyzer = WorkflowAnalyzer()
        analysis = analyzer.analyze(entries, now=now)
    """

    def __init__(self, thresholds: Optional[AnalyzerThresholds] = None):
        self.thresholds = thresholds or AnalyzerThresholds()
        self._detectors: List[Tuple[IssueType, Callable[..., List[WorkflowIssue]]]] = [
            (IssueType.LOOP_DETECTED, self._detect_loops),
            (IssueType.PHASE_STUCK, self._detect_phase_stuck),
            (IssueType.REGRESSION, self._detect_regression),
            (IssueType.OUT_OF_ORDER, self._detect_out_of_order),
            (IssueType.CHAIN_BROKEN, self._detect_chain_broken),
            (IssueType.TDD_VIOLATION, self._detect_tdd_violation),
            (IssueType.EXPLICIT_FAILURE, self._detect_explicit_failures),
            (IssueType.AGENT_FAILED, self._detect_agent_failures),
            (IssueType.SILENCE, self._detect_silence),
            (IssueType.MISSING_MILESTONES, self._detect_missing_milestones),
            (IssueType.DECLINING_VELOCITY, self._detect_declining_velocity),
            (IssueType.INCOMPLETE_OUTPUTS, self._detect_incomplete_outputs),
            (IssueType.AGENT_SILENCE, self._detect_agent_silence),
            (IssueType.ABRUPT_STOP, self._detect_abrupt_stop),
            (IssueType.PARTIAL_COMPLETION, self._detect_partial_completion),
            (IssueType.ABANDONED_AGENT, self._detect_abandoned_agents),
        ]

    def analyze(
        self,
        entries: Sequence[LogEntry],
        now: Optional[datetime] = None,
        baseline: Optional[SupervisorState] = None,
    ) -> WorkflowAnalysis:
        """
        Analyze entries in file order.

        baseline seeds the fold with state restored from a previous run, so
        entries read before a restart still count toward chain progress.
        """
        now = now or utc_now()
        entries = list(entries)
        state = self.build_state(entries, baseline)

        issues: List[WorkflowIssue] = []
        for issue_type, detector in self._detectors:
            try:
                issues.extend(detector(entries, state, now))
            except Exception as e:
                logger.error(f"Detector {issue_type.value} failed: {e}")

        command = state.current_command
        expected = self.thresholds.expected_milestones.get(command, 0) if command else 0

        return WorkflowAnalysis(
            health=self.calculate_health(issues),
            issues=issues,
            current_command=command,
            current_phase=state.current_phase,
            phase_start_time=state.phase_start_time,
            last_activity_time=state.last_activity_time,
            command_terminated=state.command_terminated,
            milestone_timestamps=list(state.cycle_milestones),
            active_agents=[
                ActiveAgent(
                    id=a.id,
                    type=a.type,
                    spawn_time=a.spawn_time,
                    last_seen=a.last_seen,
                    parent_cmd=a.parent_cmd,
                )
                for a in state.agents.values()
            ],
            expected_milestones=expected,
            actual_milestones=len(state.cycle_milestones),
            chain_progress=dict(state.chain_progress),
        )

    def calculate_health(self, issues: Sequence[WorkflowIssue]) -> HealthStatus:
        if any(i.confidence > self.thresholds.critical_cutoff for i in issues):
            return HealthStatus.CRITICAL
        if any(i.confidence >= self.thresholds.warning_cutoff for i in issues):
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    # -------------------------------------------------------------------------
    # Fold
    # -------------------------------------------------------------------------
    def build_state(
        self,
        entries: Sequence[LogEntry],
        baseline: Optional[SupervisorState] = None,
    ) -> FoldedState:
        state = FoldedState()
        if baseline is not None:
            state.current_command = baseline.current_command
            state.current_phase = baseline.current_phase
            state.chain_progress = dict(baseline.chain_progress)
            state.cycle_milestones = list(baseline.milestone_timestamps)
            state.last_activity_time = baseline.last_activity_time
            state.command_terminated = baseline.command_terminated
            if baseline.current_phase:
                state.phase_last_activity = baseline.last_activity_time

        for entry in entries:
            ts = entry.timestamp
            state.last_activity_time = ts
            event = entry.event

            if state.current_command is None:
                state.current_command = entry.command

            if event == WorkflowEvent.START:
                state.current_command = entry.command
                state.current_phase = None
                state.phase_start_time = None
                state.phase_last_activity = None
                state.phase_complete = False
                state.command_terminated = False
                state.cycle_milestones = []
                state.cycle_positive_signals = 0
                state.completed_phases = []
                state.last_positive_time = None
                if entry.command in state.chain_progress:
                    state.chain_at_start[entry.command] = dict(state.chain_progress)
                    state.chain_start_time[entry.command] = ts
                    state.chain_progress[entry.command] = ChainStatus.IN_PROGRESS

            elif event == WorkflowEvent.PHASE_START:
                state.current_phase = entry.phase
                state.phase_start_time = ts
                state.phase_last_activity = ts
                state.phase_complete = False

            elif event == WorkflowEvent.PHASE_COMPLETE:
                if entry.phase == state.current_phase:
                    state.phase_complete = True
                if entry.phase and entry.phase not in state.completed_phases:
                    state.completed_phases.append(entry.phase)

            elif event == WorkflowEvent.MILESTONE:
                if entry.command == state.current_command:
                    state.cycle_milestones.append(ts)

            elif event == WorkflowEvent.COMPLETE:
                if entry.command == state.current_command:
                    state.command_terminated = True
                if entry.command in state.chain_progress:
                    state.chain_progress[entry.command] = ChainStatus.COMPLETE
                    state.chain_complete_time[entry.command] = ts

            elif event == WorkflowEvent.FAILED:
                if entry.command == state.current_command:
                    state.command_terminated = True
                if entry.command in state.chain_progress:
                    state.chain_progress[entry.command] = ChainStatus.FAILED

            if event in POSITIVE_EVENTS and entry.command == state.current_command:
                state.last_positive_time = ts
                state.cycle_positive_signals += 1

            if entry.phase and entry.phase == state.current_phase and state.phase_start_time:
                state.phase_last_activity = ts

            self._fold_agent(state, entry)

        return state

    def _fold_agent(self, state: FoldedState, entry: LogEntry) -> None:
        agent_id = entry.agent_id
        if not agent_id:
            return
        ts = entry.timestamp

        if entry.event == WorkflowEvent.AGENT_SPAWN:
            agent_type = entry.agent.type if entry.agent else str(entry.data.get("agent_type", "unknown"))
            parent = entry.agent.parent_cmd if entry.agent and entry.agent.parent_cmd else entry.command
            state.agents[agent_id] = TrackedAgent(
                id=agent_id,
                type=agent_type,
                spawn_time=ts,
                last_seen=ts,
                parent_cmd=parent,
            )
            return

        agent = state.agents.get(agent_id)
        if agent is None:
            return
        if entry.event in (WorkflowEvent.AGENT_COMPLETE, WorkflowEvent.FAILED):
            del state.agents[agent_id]
            return
        agent.last_seen = ts
        agent.started = True

    # -------------------------------------------------------------------------
    # Sequence Detectors
    # -------------------------------------------------------------------------
    def _detect_loops(self, entries, state, now) -> List[WorkflowIssue]:
        threshold = self.thresholds.loop_threshold
        counts: Dict[str, int] = {}
        crossed_at: Dict[str, str] = {}
        samples: Dict[str, LogEntry] = {}
        seen_milestones: Set[str] = set()

        for entry in entries:
            # Payloads vary between retries; only milestones are told apart by data
            signature = "|".join([entry.command, entry.phase or "", entry.event.value])
            if entry.event == WorkflowEvent.MILESTONE:
                milestone = f"{signature}|{canonical_data(entry.data)}"
                if milestone not in seen_milestones:
                    # New progress breaks every running repeat
                    seen_milestones.add(milestone)
                    counts.clear()
                    crossed_at.clear()
                    samples.clear()
            counts[signature] = counts.get(signature, 0) + 1
            samples.setdefault(signature, entry)
            if counts[signature] == threshold:
                crossed_at[signature] = entry.timestamp

        issues = []
        for signature, anchor in crossed_at.items():
            repeats = counts[signature]
            sample = samples[signature]
            issues.append(WorkflowIssue(
                type=IssueType.LOOP_DETECTED,
                confidence=min(0.98, 0.85 + (repeats - threshold) * 0.03),
                message=(
                    f"{sample.event.value} for {sample.command}"
                    f"{' / ' + sample.phase if sample.phase else ''} repeated "
                    f"{repeats} times without new progress"
                ),
                context={
                    "anchor": anchor,
                    "command": sample.command,
                    "phase": sample.phase,
                    "event": sample.event.value,
                    "repeat_count": repeats,
                },
            ))
        return issues

    def _detect_regression(self, entries, state, now) -> List[WorkflowIssue]:
        best: Dict[Tuple[str, str], float] = {}
        issues = []
        for entry in entries:
            if entry.event == WorkflowEvent.START:
                for key in [k for k in best if k[0] == entry.command]:
                    del best[key]
                continue
            if entry.event != WorkflowEvent.MILESTONE:
                continue
            for key, value in _progress_values(entry).items():
                slot = (entry.command, key)
                previous = best.get(slot)
                if previous is not None and value < previous:
                    drop = previous - value
                    ratio = drop / previous if previous > 0 else 1.0
                    issues.append(WorkflowIssue(
                        type=IssueType.REGRESSION,
                        confidence=min(0.95, 0.7 + 0.25 * ratio),
                        message=(
                            f"{entry.command}: {key} fell from {previous:g} to {value:g}"
                        ),
                        context={
                            "anchor": f"{entry.timestamp}:{key}",
                            "command": entry.command,
                            "phase": entry.phase,
                            "field": key,
                            "previous": previous,
                            "current": value,
                        },
                    ))
                if previous is None or value > previous:
                    best[slot] = value
        return issues

    def _detect_out_of_order(self, entries, state, now) -> List[WorkflowIssue]:
        open_phases: Set[Tuple[str, str]] = set()
        issues = []
        for entry in entries:
            if not entry.phase:
                continue
            key = (entry.command, entry.phase)
            if entry.event == WorkflowEvent.PHASE_START:
                open_phases.add(key)
            elif entry.event == WorkflowEvent.PHASE_COMPLETE:
                if key in open_phases:
                    open_phases.discard(key)
                    continue
                issues.append(WorkflowIssue(
                    type=IssueType.OUT_OF_ORDER,
                    confidence=0.85,
                    message=f"Phase {entry.phase} of {entry.command} completed without being started",
                    context={
                        "anchor": entry.timestamp,
                        "command": entry.command,
                        "phase": entry.phase,
                    },
                ))
        return issues

    def _detect_tdd_violation(self, entries, state, now) -> List[WorkflowIssue]:
        issues = []
        in_cycle = False
        red_complete = False
        reported = False

        for entry in entries:
            if entry.command != TDD_COMMAND:
                continue
            if entry.event == WorkflowEvent.START or not in_cycle:
                in_cycle = True
                red_complete = False
                reported = False
                if entry.event == WorkflowEvent.START:
                    continue
            if entry.event == WorkflowEvent.PHASE_COMPLETE and entry.phase == TDD_FIRST_PHASE:
                red_complete = True
                continue
            if (
                entry.phase in TDD_LATER_PHASES
                and entry.event in (WorkflowEvent.PHASE_START, WorkflowEvent.PHASE_COMPLETE, WorkflowEvent.MILESTONE)
                and not red_complete
                and not reported
            ):
                reported = True
                issues.append(WorkflowIssue(
                    type=IssueType.TDD_VIOLATION,
                    confidence=0.95,
                    message=(
                        f"{entry.phase} phase reached before the RED phase completed "
                        f"(write failing tests before implementation)"
                    ),
                    context={
                        "anchor": entry.timestamp,
                        "command": entry.command,
                        "phase": entry.phase,
                        "event": entry.event.value,
                    },
                ))
        return issues

    def _detect_explicit_failures(self, entries, state, now) -> List[WorkflowIssue]:
        issues = []
        for entry in entries:
            if entry.event != WorkflowEvent.FAILED:
                continue
            error = entry.data.get("error") or "Unknown error"
            issues.append(WorkflowIssue(
                type=IssueType.EXPLICIT_FAILURE,
                confidence=0.95,
                message=f"Command {entry.command} failed: {error}",
                context={
                    "anchor": entry.timestamp,
                    "command": entry.command,
                    "phase": entry.phase,
                    "error": error,
                },
            ))
        return issues

    def _detect_agent_failures(self, entries, state, now) -> List[WorkflowIssue]:
        spawned: Dict[str, TrackedAgent] = {}
        issues = []

        def failed(agent: TrackedAgent, entry: LogEntry, error: Any) -> WorkflowIssue:
            return WorkflowIssue(
                type=IssueType.AGENT_FAILED,
                confidence=0.95,
                message=f"Agent {agent.type} ({agent.id}) failed: {error or 'Unknown error'}",
                context={
                    "anchor": f"{agent.id}:{entry.timestamp}",
                    "command": agent.parent_cmd or entry.command,
                    "phase": entry.phase,
                    "agent_id": agent.id,
                    "agent_type": agent.type,
                    "error": error,
                },
            )

        for entry in entries:
            agent_id = entry.agent_id
            if entry.event == WorkflowEvent.AGENT_SPAWN and agent_id:
                spawned[agent_id] = TrackedAgent(
                    id=agent_id,
                    type=entry.agent.type if entry.agent else str(entry.data.get("agent_type", "unknown")),
                    spawn_time=entry.timestamp,
                    last_seen=entry.timestamp,
                    parent_cmd=(entry.agent.parent_cmd if entry.agent and entry.agent.parent_cmd else entry.command),
                )
            elif entry.event == WorkflowEvent.AGENT_COMPLETE and agent_id:
                agent = spawned.pop(agent_id, None)
                if entry.data.get("status") == "failed":
                    agent = agent or TrackedAgent(
                        id=agent_id,
                        type=entry.agent.type if entry.agent else "unknown",
                        spawn_time=entry.timestamp,
                        last_seen=entry.timestamp,
                        parent_cmd=entry.command,
                    )
                    issues.append(failed(agent, entry, entry.data.get("error")))
            elif entry.event == WorkflowEvent.FAILED:
                if agent_id and agent_id in spawned:
                    victims = [agent_id]
                elif not agent_id:
                    victims = [a.id for a in spawned.values() if a.parent_cmd == entry.command]
                else:
                    victims = []
                for victim in victims:
                    issues.append(failed(spawned.pop(victim), entry, entry.data.get("error")))
        return issues

    def _detect_chain_broken(self, entries, state, now) -> List[WorkflowIssue]:
        issues = []
        for command in COMMAND_CHAIN:
            prerequisites = CHAIN_PREREQUISITES.get(command)
            if not prerequisites:
                continue
            if state.chain_progress.get(command) != ChainStatus.IN_PROGRESS:
                continue
            at_start = state.chain_at_start.get(command)
            if at_start is None:
                continue
            if any(at_start.get(p) == ChainStatus.COMPLETE for p in prerequisites):
                continue
            upstream_failed = [p for p in prerequisites if at_start.get(p) == ChainStatus.FAILED]
            issues.append(WorkflowIssue(
                type=IssueType.CHAIN_BROKEN,
                # A session may join an existing workflow midway
                confidence=0.9 if upstream_failed else 0.6,
                message=(
                    f"Command {command} started without completing prerequisite: "
                    f"{' or '.join(prerequisites)}"
                ),
                context={
                    "anchor": state.chain_start_time.get(command, ""),
                    "command": command,
                    "expected_prerequisites": list(prerequisites),
                    "failed_prerequisites": upstream_failed,
                },
            ))
        return issues

    def _detect_missing_milestones(self, entries, state, now) -> List[WorkflowIssue]:
        ratio_floor = self.thresholds.missing_milestone_ratio
        command_counts: Dict[str, int] = {}
        phase_counts: Dict[Tuple[str, str], int] = {}
        issues = []

        def check(actual: int, expected: int, entry: LogEntry, scope: str) -> None:
            if expected <= 0:
                return
            ratio = actual / expected
            if ratio >= ratio_floor:
                return
            issues.append(WorkflowIssue(
                type=IssueType.MISSING_MILESTONES,
                confidence=0.5 + 0.4 * (1 - ratio),
                message=f"{scope} finished with {actual} milestones, expected at least {expected}",
                context={
                    "anchor": entry.timestamp,
                    "command": entry.command,
                    "phase": entry.phase,
                    "actual": actual,
                    "expected": expected,
                },
            ))

        for entry in entries:
            if entry.event == WorkflowEvent.START:
                command_counts[entry.command] = 0
            elif entry.event == WorkflowEvent.PHASE_START and entry.phase:
                phase_counts[(entry.command, entry.phase)] = 0
            elif entry.event == WorkflowEvent.MILESTONE:
                command_counts[entry.command] = command_counts.get(entry.command, 0) + 1
                if entry.phase:
                    key = (entry.command, entry.phase)
                    phase_counts[key] = phase_counts.get(key, 0) + 1
            elif entry.event == WorkflowEvent.PHASE_COMPLETE and entry.phase:
                key = (entry.command, entry.phase)
                if key in phase_counts:
                    check(
                        phase_counts.pop(key),
                        self.thresholds.expected_phase_milestones.get(entry.phase, 0),
                        entry,
                        f"Phase {entry.phase}",
                    )
            elif entry.event == WorkflowEvent.COMPLETE and entry.command in command_counts:
                check(
                    command_counts.pop(entry.command),
                    self.thresholds.expected_milestones.get(entry.command, 0),
                    entry,
                    f"Command {entry.command}",
                )
        return issues

    def _detect_incomplete_outputs(self, entries, state, now) -> List[WorkflowIssue]:
        issues = []
        for entry in entries:
            if entry.event != WorkflowEvent.COMPLETE:
                continue
            expected = self.thresholds.expected_outputs.get(entry.command) or []
            if not expected:
                continue
            missing = [f for f in expected if not _has_value(entry.data.get(f))]
            if not missing:
                continue
            issues.append(WorkflowIssue(
                type=IssueType.INCOMPLETE_OUTPUTS,
                confidence=0.6 + 0.2 * (len(missing) / len(expected)),
                message=f"Command {entry.command} completed without expected {', '.join(missing)}",
                context={
                    "anchor": entry.timestamp,
                    "command": entry.command,
                    "missing_fields": missing,
                },
            ))
        return issues

    # -------------------------------------------------------------------------
    # State Detectors
    # -------------------------------------------------------------------------
    def _detect_phase_stuck(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        if not state.current_phase or not state.phase_last_activity:
            return []
        if state.phase_complete or state.command_terminated:
            return []
        timeout = self.thresholds.stuck_timeout_seconds
        elapsed = _seconds_between(now, state.phase_last_activity)
        if elapsed <= timeout:
            return []
        return [WorkflowIssue(
            type=IssueType.PHASE_STUCK,
            confidence=min(0.95, 0.75 + (elapsed / timeout - 1) * 0.1),
            message=(
                f"Phase {state.current_phase} of {state.current_command} has had no "
                f"activity for {round(elapsed / 60, 1)} minutes"
            ),
            context={
                "anchor": f"{state.current_command}:{state.current_phase}:{state.phase_last_activity}",
                "command": state.current_command,
                "phase": state.current_phase,
                "elapsed_ms": int(elapsed * 1000),
            },
        )]

    def _detect_silence(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        if not state.current_command or not state.last_activity_time:
            return []
        if state.command_terminated:
            return []
        timeout = self.thresholds.stuck_timeout_seconds
        elapsed = _seconds_between(now, state.last_activity_time)
        if elapsed <= timeout:
            return []
        return [WorkflowIssue(
            type=IssueType.SILENCE,
            confidence=min(0.9, 0.7 + (elapsed / timeout - 1) * 0.1),
            message=(
                f"No activity for {round(elapsed / 60, 1)} minutes while "
                f"{state.current_command} is active"
            ),
            context={
                "anchor": state.last_activity_time,
                "command": state.current_command,
                "phase": state.current_phase,
                "silence_duration_ms": int(elapsed * 1000),
            },
        )]

    def _detect_declining_velocity(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        window = self.thresholds.velocity_window
        stamps = state.cycle_milestones[-(window + 1):]
        if len(stamps) < 4:
            return []
        times = [parse_timestamp(t) for t in stamps]
        gaps = [(b - a).total_seconds() for a, b in zip(times, times[1:])]
        count = len(gaps)
        mean_gap = sum(gaps) / count
        if mean_gap <= 0:
            return []

        mean_x = (count - 1) / 2
        numerator = sum((i - mean_x) * (g - mean_gap) for i, g in enumerate(gaps))
        denominator = sum((i - mean_x) ** 2 for i in range(count))
        slope = numerator / denominator
        # Growth of the gap over the window relative to the average gap
        trend = slope * (count - 1) / mean_gap
        if slope <= 0 or trend < self.thresholds.velocity_min_trend:
            return []
        return [WorkflowIssue(
            type=IssueType.DECLINING_VELOCITY,
            confidence=min(0.7, 0.4 + 0.3 * min(1.0, trend)),
            message="Time between milestones is increasing; the workflow may be slowing down",
            context={
                "anchor": stamps[-1],
                "command": state.current_command,
                "phase": state.current_phase,
                "gaps_ms": [int(g * 1000) for g in gaps],
                "trend": round(trend, 3),
            },
        )]

    def _detect_agent_silence(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        timeout = self.thresholds.agent_silence_timeout_seconds
        issues = []
        for agent in state.agents.values():
            if agent.started:
                continue
            elapsed = _seconds_between(now, agent.spawn_time)
            if elapsed <= timeout:
                continue
            issues.append(WorkflowIssue(
                type=IssueType.AGENT_SILENCE,
                confidence=min(0.9, 0.7 + (elapsed / timeout - 1) * 0.1),
                message=f"Agent {agent.type} ({agent.id}) spawned but has not produced any entries",
                context={
                    "anchor": f"{agent.id}:{agent.spawn_time}",
                    "command": agent.parent_cmd,
                    "agent_id": agent.id,
                    "agent_type": agent.type,
                    "silence_duration_ms": int(elapsed * 1000),
                },
            ))
        return issues

    def _detect_abandoned_agents(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        timeout = self.thresholds.agent_abandoned_timeout_seconds
        issues = []
        for agent in state.agents.values():
            elapsed = _seconds_between(now, agent.last_seen)
            if elapsed <= timeout:
                continue
            issues.append(WorkflowIssue(
                type=IssueType.ABANDONED_AGENT,
                confidence=0.8,
                message=f"Agent {agent.type} ({agent.id}) never completed",
                context={
                    "anchor": f"{agent.id}:{agent.last_seen}",
                    "command": agent.parent_cmd,
                    "agent_id": agent.id,
                    "agent_type": agent.type,
                    "idle_ms": int(elapsed * 1000),
                },
            ))
        return issues

    def _detect_abrupt_stop(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        if state.command_terminated or not state.current_command:
            return []
        if state.cycle_positive_signals == 0 or not state.last_positive_time:
            return []
        elapsed = _seconds_between(now, state.last_positive_time)
        if elapsed <= self.thresholds.abrupt_stop_timeout_seconds:
            return []
        return [WorkflowIssue(
            type=IssueType.ABRUPT_STOP,
            confidence=0.85,
            message=(
                f"{state.current_command} was making progress but stopped "
                f"{round(elapsed / 60, 1)} minutes ago without finishing"
            ),
            context={
                "anchor": state.last_positive_time,
                "command": state.current_command,
                "phase": state.current_phase,
                "progress_signals": state.cycle_positive_signals,
            },
        )]

    def _detect_partial_completion(self, entries, state: FoldedState, now) -> List[WorkflowIssue]:
        issues = []
        for index, command in enumerate(COMMAND_CHAIN):
            if state.chain_progress.get(command) != ChainStatus.COMPLETE:
                continue
            if command not in state.chain_complete_time:
                continue
            pending = [
                earlier for earlier in COMMAND_CHAIN[:index]
                if state.chain_progress.get(earlier) == ChainStatus.PENDING
            ]
            if not pending:
                continue
            issues.append(WorkflowIssue(
                type=IssueType.PARTIAL_COMPLETION,
                confidence=min(0.8, 0.5 + 0.1 * len(pending)),
                message=f"{command} completed while {', '.join(pending)} never ran",
                context={
                    "anchor": state.chain_complete_time[command],
                    "command": command,
                    "pending_steps": pending,
                },
            ))
        return issues
