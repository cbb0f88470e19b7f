"""
Watcher Supervisor

Orchestrates the workflow watcher:
    LogReader -> WorkflowAnalyzer -> InterventionGenerator -> QueueManager
with the ComplianceMonitor feeding the same generator on its own schedule.

Lifecycle: IDLE -> RUNNING -> STOPPED, and STOPPED -> RUNNING on a new start().

CRITICAL CONSTRAINTS:
- FILE ORDER: entries are analyzed in the order they were appended
- ONCE PER OCCURRENCE: an issue occurrence that already produced an
  intervention is never raised again, across restarts
- ISOLATED OBSERVERS: callbacks run in registration order; one that raises
  is logged and the rest still run
- NEVER FATAL: loop errors are logged and the next tick proceeds
- CLEAN STOP: stop() lets the current tick finish, so a queued task always
  reaches its observers before the state is saved
- BOUNDED WINDOW: entries before a finished command, or beyond
  max_window_entries, are folded into the baseline and released
"""

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from .compliance_monitor import ComplianceMonitor, ComplianceResult, IronLawViolation
from .config import WatcherSettings
from .intervention_engine import Intervention, InterventionGenerator
from .log_reader import LogReader
from .queue_manager import QueueManager
from .remote_analyzer import RemoteAnalyzer
from .storage import atomic_write_json, load_json
from .workflow_analyzer import WorkflowAnalyzer
from .workflow_model import (
    LogEntry,
    SupervisorState,
    WorkflowAnalysis,
    WorkflowIssue,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger("watcher_supervisor")

AnalyzeCallback = Callable[[WorkflowAnalysis, List[LogEntry]], Any]
InterventionCallback = Callable[[Intervention], Any]
NotifyCallback = Callable[[str, str, Optional[str]], Any]
ComplianceCallback = Callable[[List[IronLawViolation]], Any]


class SupervisorStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class WatcherSupervisor:
    """
    Runs the log poll loop and the compliance loop and fans results out to
    registered observers.

    Usage:
        supervisor = WatcherSupervisor(load_settings())
        supervisor.on_notify(show_notification)
        await supervisor.start()
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        settings: Optional[WatcherSettings] = None,
        queue: Optional[QueueManager] = None,
        analyzer: Optional[WorkflowAnalyzer] = None,
        generator: Optional[InterventionGenerator] = None,
        compliance: Optional[ComplianceMonitor] = None,
        remote: Optional[RemoteAnalyzer] = None,
        log_reader: Optional[LogReader] = None,
    ):
        self.settings = settings or WatcherSettings()
        self.queue = queue or QueueManager(
            self.settings.queue_file,
            max_size=self.settings.queue.max_size,
            task_lifetime_seconds=self.settings.queue.task_lifetime_seconds,
            history_limit=self.settings.queue.history_limit,
            archive_file=self.settings.queue_archive_file,
        )
        self.analyzer = analyzer or WorkflowAnalyzer(self.settings.analyzer)
        self.generator = generator or InterventionGenerator(self.settings.intervention, self.queue)
        self.compliance = compliance or ComplianceMonitor(
            self.settings.project_dir,
            self.settings.compliance_state_file,
            self.settings.compliance,
        )
        self.remote = remote or RemoteAnalyzer(self.settings.remote)
        self.log_reader = log_reader or LogReader(self.settings.log_file)
        self.state_file = self.settings.state_file

        self._status = SupervisorStatus.IDLE
        self._log_task: Optional[asyncio.Task] = None
        self._compliance_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._processing = False

        self._entries: List[LogEntry] = []
        self._baseline: Optional[SupervisorState] = None
        self._state = SupervisorState()
        self._processed: List[str] = []
        self._processed_set = set()
        self._last_analysis_at: Optional[datetime] = None

        self._analyze_callbacks: List[AnalyzeCallback] = []
        self._intervention_callbacks: List[InterventionCallback] = []
        self._notify_callbacks: List[NotifyCallback] = []
        self._compliance_callbacks: List[ComplianceCallback] = []

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------
    def on_analyze(self, callback: AnalyzeCallback) -> None:
        self._analyze_callbacks.append(callback)

    def on_intervention(self, callback: InterventionCallback) -> None:
        self._intervention_callbacks.append(callback)

    def on_notify(self, callback: NotifyCallback) -> None:
        self._notify_callbacks.append(callback)

    def on_compliance_violation(self, callback: ComplianceCallback) -> None:
        self._compliance_callbacks.append(callback)

    async def _emit(self, callbacks: List[Callable[..., Any]], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @property
    def status(self) -> SupervisorStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == SupervisorStatus.RUNNING

    async def start(self, now: Optional[datetime] = None) -> None:
        """Restore state, then begin log polling and compliance checks."""
        if self.is_running:
            return
        self._status = SupervisorStatus.RUNNING

        if not self._restore_state():
            await self._bootstrap(now or utc_now())

        self._stop_event = asyncio.Event()
        self._log_task = asyncio.create_task(self._log_loop())
        if self.settings.compliance.mode == "always":
            self._compliance_task = asyncio.create_task(self._compliance_loop())
        logger.info(f"Watcher supervisor started on {self.log_reader.log_path}")

    async def stop(self) -> None:
        """
        Let the current tick of each loop finish, then persist the latest state.

        A loop still busy after stop_timeout_seconds is cancelled.
        """
        if not self.is_running:
            return
        self._status = SupervisorStatus.STOPPED
        if self._stop_event is not None:
            self._stop_event.set()
        timeout = self.settings.supervisor.stop_timeout_seconds
        for task in (self._log_task, self._compliance_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Supervisor loop did not finish within {timeout}s, cancelled")
            except asyncio.CancelledError:
                pass
        self._log_task = None
        self._compliance_task = None
        self._save_state()
        logger.info("Watcher supervisor stopped")

    def get_state(self) -> SupervisorState:
        return SupervisorState.from_dict(self._state.to_dict())

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------
    def _restore_state(self) -> bool:
        """Load persisted state. Returns False when there is none usable."""
        self._entries = []
        self._baseline = None
        self._last_analysis_at = None
        data = load_json(self.state_file)
        if data is None:
            return False
        try:
            state = SupervisorState.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable supervisor state {self.state_file}: {e}")
            return False
        self._state = state
        self._baseline = SupervisorState.from_dict(state.to_dict())
        self._processed = list(state.processed_signatures)
        self._processed_set = set(self._processed)
        logger.info(f"Restored supervisor state at log offset {state.log_offset}")
        return True

    async def _bootstrap(self, now: datetime) -> None:
        """
        First run over an existing log: derive the state and mark what is
        already wrong as seen, without raising interventions for history.
        """
        self._state = SupervisorState()
        self._processed = []
        self._processed_set = set()
        entries, offset = self.log_reader.read(0)
        self._entries = entries
        self._state.log_offset = offset
        if entries:
            analysis = self.analyzer.analyze(self._entries, now=now)
            for issue in analysis.issues:
                self._mark_processed(issue.occurrence_key)
            self._update_state(analysis, now)
            logger.info(
                f"Caught up on {len(entries)} existing log entries, "
                f"{len(analysis.issues)} issue(s) marked as seen"
            )
        self._save_state()

    def _mark_processed(self, key: str) -> None:
        if key in self._processed_set:
            return
        self._processed.append(key)
        self._processed_set.add(key)
        limit = self.settings.supervisor.processed_signature_limit
        if len(self._processed) > limit:
            for old in self._processed[:-limit]:
                self._processed_set.discard(old)
            self._processed = self._processed[-limit:]

    def _update_state(self, analysis: WorkflowAnalysis, now: datetime) -> None:
        self._state.current_command = analysis.current_command
        self._state.current_phase = analysis.current_phase
        self._state.chain_progress = dict(analysis.chain_progress)
        self._state.milestone_timestamps = list(analysis.milestone_timestamps)
        self._state.last_activity_time = analysis.last_activity_time
        self._state.command_terminated = analysis.command_terminated
        self._state.processed_signatures = list(self._processed)
        self._state.updated_at = format_timestamp(now)

    def _save_state(self) -> None:
        self._state.processed_signatures = list(self._processed)
        atomic_write_json(self.state_file, self._state.to_dict())

    # -------------------------------------------------------------------------
    # Log Processing
    # -------------------------------------------------------------------------
    async def poll_log(self, now: Optional[datetime] = None, force: bool = False) -> Optional[WorkflowAnalysis]:
        """
        Read new log entries and analyze.

        With no new entries the analysis still runs once the idle interval
        has passed, so time-based issues surface. Returns None when nothing
        ran, including when a poll is already in progress.
        """
        if self._processing:
            return None
        now = now or utc_now()
        self._processing = True
        try:
            entries, offset = self.log_reader.read(self._state.log_offset)
            if offset < self._state.log_offset:
                logger.info("Workflow log was truncated or rotated")
            self._state.log_offset = offset
            if entries:
                self._entries.extend(entries)
                return await self.process(now, entries)

            idle_for = None
            if self._last_analysis_at is not None:
                idle_for = (now - self._last_analysis_at).total_seconds()
            if force or idle_for is None or idle_for >= self.settings.supervisor.idle_analysis_interval_seconds:
                return await self.process(now, [])
            return None
        finally:
            self._processing = False

    async def process(
        self,
        now: Optional[datetime] = None,
        new_entries: Optional[List[LogEntry]] = None,
    ) -> WorkflowAnalysis:
        """
        Analyze everything read so far and act on issue occurrences not yet
        handled. Remote analysis is only consulted for new entries that the
        heuristics found nothing wrong with.
        """
        now = now or utc_now()
        analysis = self.analyzer.analyze(self._entries, now=now, baseline=self._baseline)
        self._last_analysis_at = now

        fresh: List[WorkflowIssue] = [
            i for i in analysis.issues if i.occurrence_key not in self._processed_set
        ]
        if new_entries and not analysis.issues and self.remote.enabled:
            remote_issue = await self.remote.analyze(self._entries)
            if remote_issue is not None and remote_issue.occurrence_key not in self._processed_set:
                fresh.append(remote_issue)

        interventions: List[Intervention] = []
        for issue in fresh:
            intervention = await self.generator.generate(
                issue,
                command=analysis.current_command,
                phase=analysis.current_phase,
                now=now,
            )
            if intervention is not None and not intervention.suppressed:
                task = await self.queue.add_task(intervention.task_input, now=now)
                intervention = self.generator.mark_queued(intervention, task, now)
                interventions.append(intervention)
            self._mark_processed(issue.occurrence_key)

        window = list(self._entries)
        self._update_state(analysis, now)
        self._compact(analysis)
        self._save_state()

        await self._emit(self._analyze_callbacks, analysis, window)
        for intervention in interventions:
            await self._emit(self._intervention_callbacks, intervention)
            note = intervention.notification
            await self._emit(self._notify_callbacks, note.title, note.message, note.sound)
        return analysis

    def _compact(self, analysis: WorkflowAnalysis) -> None:
        """
        Fold entries that can no longer change detection into the baseline.

        Everything goes once the current command has finished with no agent
        still running; otherwise only the overflow past max_window_entries.
        """
        if analysis.command_terminated and not analysis.active_agents:
            drop = len(self._entries)
        else:
            drop = len(self._entries) - self.settings.supervisor.max_window_entries
        if drop <= 0:
            return
        folded = self.analyzer.build_state(self._entries[:drop], self._baseline)
        self._baseline = SupervisorState(
            current_command=folded.current_command,
            current_phase=folded.current_phase,
            chain_progress=dict(folded.chain_progress),
            milestone_timestamps=list(folded.cycle_milestones),
            last_activity_time=folded.last_activity_time,
            command_terminated=folded.command_terminated,
        )
        self._entries = self._entries[drop:]
        logger.debug(f"Folded {drop} entries into the baseline, {len(self._entries)} kept")

    async def _log_loop(self) -> None:
        interval = self.settings.supervisor.poll_interval_seconds
        while self.is_running:
            try:
                await self.poll_log()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Log poll error: {e}")
            await self._pause(interval)

    # -------------------------------------------------------------------------
    # Compliance
    # -------------------------------------------------------------------------
    async def run_compliance_check(self, now: Optional[datetime] = None) -> Optional[ComplianceResult]:
        """
        Poll the compliance monitor once and act on newly opened violations.

        Returns None if a check was already running.
        """
        now = now or utc_now()
        result = await self.compliance.poll(now)
        if result is None:
            return None

        if result.open_violations:
            await self._emit(self._compliance_callbacks, list(result.open_violations))

        for violation in result.opened:
            intervention = await self.generator.generate_for_violation(violation, now)
            if intervention.suppressed:
                continue
            task = await self.queue.add_task(intervention.task_input, now=now)
            intervention = self.generator.mark_queued(intervention, task, now)
            await self._emit(self._intervention_callbacks, intervention)
            note = intervention.notification
            await self._emit(self._notify_callbacks, note.title, note.message, note.sound)
        return result

    async def check_compliance(self, now: Optional[datetime] = None) -> List[IronLawViolation]:
        """On-demand check; returns the violations open afterwards."""
        result = await self.run_compliance_check(now)
        if result is None:
            return self.compliance.get_violations(include_resolved=False)
        return list(result.open_violations)

    async def _compliance_loop(self) -> None:
        interval = self.settings.compliance.check_interval_seconds
        while self.is_running:
            try:
                await self.run_compliance_check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Compliance check error: {e}")
            await self._pause(interval)

    async def _pause(self, seconds: float) -> None:
        """Sleep between ticks, waking early once stop() is called."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def track_file_change(self, path: str, action: str) -> None:
        self.compliance.track_file_change(path, action)

    def track_tool_call(self, tool: str, path: str) -> None:
        self.compliance.track_tool_call(tool, path)

    def set_active_feature(self, feature: str) -> None:
        self.compliance.set_active_feature(feature)
