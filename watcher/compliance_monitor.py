"""
Iron Law Compliance Monitor

Checks process rules that cannot be seen in the workflow log:
- IRON LAW #1: source files are paired with tests (TDD)
- IRON LAW #4: work does not happen on a protected trunk branch
- IRON LAW #6: the active feature keeps a current PROGRESS.md

CRITICAL CONSTRAINTS:
- SNAPSHOT THEN JUDGE: I/O collects a ComplianceSnapshot; the checks are pure
  predicates over it
- AUDIT TRAIL: violations are never deleted; a passing check marks the open
  record resolved
- NO OVERLAP: a poll that starts while another is running returns None
- TOLERANT: git errors or unreadable files mean "cannot tell", never a crash
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import ComplianceSettings
from .storage import atomic_write_json, load_json
from .workflow_model import format_timestamp, utc_now

logger = logging.getLogger("compliance_monitor")

LAW_TDD = 1
LAW_BRANCH = 4
LAW_DOCS = 6

SOURCE_EXTENSIONS = (".py", ".ts", ".tsx", ".js", ".jsx")
TEST_MARKERS = (".test.", ".spec.")
PROGRESS_FILE = "PROGRESS.md"
TRACKING_LIMIT = 100


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ViolationType(str, Enum):
    TDD = "iron_law_tdd"
    BRANCH = "iron_law_branch"
    DOCS = "iron_law_docs"


@dataclass
class IronLawViolation:
    """
    One violation of one law about one subject.

    resolved_at stays None while the violation is open.
    """
    law: int
    type: ViolationType
    message: str
    subject: str
    detected_at: str
    resolved_at: Optional[str] = None
    corrective_action: Optional[str] = None

    @property
    def key(self) -> Tuple[int, str, str]:
        return (self.law, self.type.value, self.subject)

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "law": self.law,
            "type": self.type.value,
            "message": self.message,
            "subject": self.subject,
            "detected_at": self.detected_at,
            "resolved_at": self.resolved_at,
            "corrective_action": self.corrective_action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IronLawViolation":
        return cls(
            law=int(data["law"]),
            type=ViolationType(data["type"]),
            message=data.get("message", ""),
            subject=data.get("subject", ""),
            detected_at=data["detected_at"],
            resolved_at=data.get("resolved_at"),
            corrective_action=data.get("corrective_action"),
        )


@dataclass(frozen=True)
class CheckFailure:
    """A failed rule as reported by a check predicate."""
    law: int
    type: ViolationType
    subject: str
    message: str
    corrective_action: Optional[str] = None

    @property
    def key(self) -> Tuple[int, str, str]:
        return (self.law, self.type.value, self.subject)


@dataclass(frozen=True)
class ComplianceSnapshot:
    """External state observed at one point in time."""
    branch: Optional[str] = None
    active_feature: Optional[str] = None
    progress_path: Optional[str] = None
    progress_exists: bool = False
    progress_mtime: Optional[float] = None
    latest_source_change: Optional[float] = None
    unpaired_sources: Tuple[str, ...] = ()


@dataclass
class ComplianceResult:
    """Outcome of one poll."""
    open_violations: List[IronLawViolation] = field(default_factory=list)
    opened: List[IronLawViolation] = field(default_factory=list)
    resolved: List[IronLawViolation] = field(default_factory=list)

    @property
    def has_violations(self) -> bool:
        return bool(self.open_violations)


# -----------------------------------------------------------------------------
# File Classification
# -----------------------------------------------------------------------------
def is_source_file(path: str) -> bool:
    return path.endswith(SOURCE_EXTENSIONS)


def is_test_file(path: str) -> bool:
    name = os.path.basename(path)
    if any(marker in name for marker in TEST_MARKERS):
        return True
    stem, ext = os.path.splitext(name)
    return ext == ".py" and (stem.startswith("test_") or stem.endswith("_test"))


def candidate_test_paths(source_path: str) -> List[str]:
    """Paths where a test for source_path may live."""
    directory, name = os.path.split(source_path)
    stem, ext = os.path.splitext(name)
    if ext == ".py":
        return [
            os.path.join(directory, f"test_{stem}.py"),
            os.path.join(directory, f"{stem}_test.py"),
            os.path.join(directory, "tests", f"test_{stem}.py"),
            os.path.join(os.path.dirname(directory), "tests", f"test_{stem}.py"),
        ]
    return [
        os.path.join(directory, f"{stem}.test{ext}"),
        os.path.join(directory, f"{stem}.spec{ext}"),
    ]


def source_for_test(test_path: str) -> str:
    directory, name = os.path.split(test_path)
    for marker in TEST_MARKERS:
        if marker in name:
            return os.path.join(directory, name.replace(marker, "."))
    stem, ext = os.path.splitext(name)
    if stem.startswith("test_"):
        stem = stem[len("test_"):]
    elif stem.endswith("_test"):
        stem = stem[:-len("_test")]
    if os.path.basename(directory) == "tests":
        directory = os.path.dirname(directory)
    return os.path.join(directory, f"{stem}{ext}")


# -----------------------------------------------------------------------------
# Check Predicates
# -----------------------------------------------------------------------------
def check_branch(snapshot: ComplianceSnapshot, protected: List[str]) -> List[CheckFailure]:
    """IRON LAW #4: never work directly on a protected branch."""
    if not snapshot.branch or snapshot.branch not in protected:
        return []
    return [CheckFailure(
        law=LAW_BRANCH,
        type=ViolationType.BRANCH,
        subject=snapshot.branch,
        message=f"On {snapshot.branch} branch - create a feature branch first",
        corrective_action="git checkout -b feat/your-feature-name",
    )]


def check_tdd(snapshot: ComplianceSnapshot) -> List[CheckFailure]:
    """IRON LAW #1: every changed source file has a test."""
    failures = []
    for source in snapshot.unpaired_sources:
        name = os.path.basename(source)
        failures.append(CheckFailure(
            law=LAW_TDD,
            type=ViolationType.TDD,
            subject=source,
            message=f"{name} written without test - write test first",
            corrective_action=f"Write test for {name} before implementing",
        ))
    return failures


def check_docs(snapshot: ComplianceSnapshot, stale_after_seconds: float) -> List[CheckFailure]:
    """IRON LAW #6: the active feature has a PROGRESS.md that keeps up with the code."""
    feature = snapshot.active_feature
    if not feature:
        return []
    if not snapshot.progress_exists:
        return [CheckFailure(
            law=LAW_DOCS,
            type=ViolationType.DOCS,
            subject=feature,
            message=f"Missing {PROGRESS_FILE} for {feature}",
            corrective_action=f"Create {snapshot.progress_path}",
        )]
    if snapshot.progress_mtime is not None and snapshot.latest_source_change is not None:
        lag = snapshot.latest_source_change - snapshot.progress_mtime
        if lag > stale_after_seconds:
            return [CheckFailure(
                law=LAW_DOCS,
                type=ViolationType.DOCS,
                subject=feature,
                message=(
                    f"{PROGRESS_FILE} for {feature} is {int(lag // 60)} minutes behind "
                    f"the latest code change"
                ),
                corrective_action=f"Update {snapshot.progress_path}",
            )]
    return []


# -----------------------------------------------------------------------------
# Monitor
# -----------------------------------------------------------------------------
class ComplianceMonitor:
    """
    Polls Iron Law checks and keeps the violation history.

    File changes and tool calls reported by the host feed the TDD check.
    """

    def __init__(
        self,
        project_dir: Path,
        state_file: Path,
        settings: Optional[ComplianceSettings] = None,
        home_dir: Optional[Path] = None,
    ):
        self.project_dir = Path(project_dir)
        self.state_file = Path(state_file)
        self.settings = settings or ComplianceSettings()
        self._home_dir = Path(home_dir) if home_dir else Path.home()
        self._checking = False
        self._active_feature: Optional[str] = None
        self._violations: List[IronLawViolation] = []
        self._pending_sources: List[str] = []
        self._recent_file_changes: List[Dict[str, Any]] = []
        self._recent_tool_calls: List[Dict[str, Any]] = []
        self._last_source_change: Optional[float] = None
        self._last_check: Optional[str] = None
        self._load_state()

    @property
    def is_checking(self) -> bool:
        return self._checking

    @property
    def active_feature(self) -> Optional[str]:
        return self._active_feature

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------
    def set_active_feature(self, feature: Optional[str]) -> None:
        self._active_feature = feature or None

    def track_file_change(self, path: str, action: str, now: Optional[datetime] = None) -> None:
        """Record a file created/modified/deleted by the workflow."""
        now = now or utc_now()
        self._recent_file_changes.append({
            "path": path,
            "action": action,
            "timestamp": format_timestamp(now),
        })
        self._recent_file_changes = self._recent_file_changes[-TRACKING_LIMIT:]

        if is_test_file(path):
            if action in ("created", "modified"):
                self._forget_source(source_for_test(path))
            return
        if not is_source_file(path):
            return
        if action == "deleted":
            self._forget_source(path)
            return
        self._last_source_change = now.timestamp()
        if action == "created":
            self._add_pending_source(path)

    def track_tool_call(self, tool: str, path: str, now: Optional[datetime] = None) -> None:
        """Record an editor tool call; a Write of source before its test is a TDD miss."""
        now = now or utc_now()
        earlier_writes = {c["path"] for c in self._recent_tool_calls if c["tool"] == "Write"}
        self._recent_tool_calls.append({
            "tool": tool,
            "path": path,
            "timestamp": format_timestamp(now),
        })
        self._recent_tool_calls = self._recent_tool_calls[-TRACKING_LIMIT:]

        if tool != "Write":
            return
        if is_test_file(path):
            self._forget_source(source_for_test(path))
        elif is_source_file(path):
            self._last_source_change = now.timestamp()
            if not any(c in earlier_writes for c in candidate_test_paths(path)):
                self._add_pending_source(path)

    def _add_pending_source(self, source: str) -> None:
        if source in self._pending_sources:
            return
        self._pending_sources.append(source)
        self._pending_sources = self._pending_sources[-TRACKING_LIMIT:]

    def _forget_source(self, source: str) -> None:
        if source in self._pending_sources:
            self._pending_sources.remove(source)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------
    async def get_current_branch(self) -> Optional[str]:
        """Current git branch, or None when it cannot be determined."""
        try:
            process = await asyncio.create_subprocess_exec(
                "git", "branch", "--show-current",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.project_dir),
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            logger.debug(f"git unavailable for {self.project_dir}: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(),
                timeout=self.settings.git_timeout_seconds,
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                logger.debug("git process already exited")
            logger.warning(f"git branch timed out after {self.settings.git_timeout_seconds}s")
            return None

        if process.returncode != 0:
            return None
        branch = stdout.decode().strip()
        return branch or None

    def get_dev_docs_path(self) -> Path:
        """Project .oss/dev, then project dev/, then ~/.oss/dev."""
        for candidate in (self.project_dir / ".oss" / "dev", self.project_dir / "dev"):
            if (candidate / "active").exists():
                return candidate
        return self._home_dir / ".oss" / "dev"

    def find_unpaired_sources(self) -> Tuple[str, ...]:
        unpaired = []
        for source in self._pending_sources:
            candidates = [self._resolve(c) for c in candidate_test_paths(source)]
            if not any(c.exists() for c in candidates):
                unpaired.append(source)
        return tuple(unpaired)

    async def collect_snapshot(self) -> ComplianceSnapshot:
        branch = await self.get_current_branch() if self.settings.check_branch else None

        progress_path = None
        progress_exists = False
        progress_mtime = None
        if self._active_feature:
            path = self.get_dev_docs_path() / "active" / self._active_feature / PROGRESS_FILE
            progress_path = str(path)
            try:
                progress_mtime = path.stat().st_mtime
                progress_exists = True
            except FileNotFoundError:
                progress_exists = False
            except OSError as e:
                logger.warning(f"Cannot stat {path}: {e}")
                progress_exists = True

        return ComplianceSnapshot(
            branch=branch,
            active_feature=self._active_feature,
            progress_path=progress_path,
            progress_exists=progress_exists,
            progress_mtime=progress_mtime,
            latest_source_change=self._last_source_change,
            unpaired_sources=self.find_unpaired_sources() if self.settings.check_tdd else (),
        )

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.project_dir / candidate

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------
    def evaluate(self, snapshot: ComplianceSnapshot) -> List[CheckFailure]:
        failures: List[CheckFailure] = []
        if self.settings.check_tdd:
            failures.extend(check_tdd(snapshot))
        if self.settings.check_branch:
            failures.extend(check_branch(snapshot, self.settings.protected_branches))
        if self.settings.check_docs:
            failures.extend(check_docs(snapshot, self.settings.docs_stale_after_seconds))
        return failures

    async def poll(self, now: Optional[datetime] = None) -> Optional[ComplianceResult]:
        """
        Run every enabled check once.

        Returns None without checking if a poll is already running.
        """
        if self._checking:
            logger.debug("Compliance check already running, skipping")
            return None
        self._checking = True
        try:
            snapshot = await self.collect_snapshot()
            return self.apply(self.evaluate(snapshot), now or utc_now())
        finally:
            self._checking = False

    def apply(self, failures: List[CheckFailure], now: datetime) -> ComplianceResult:
        """Open, keep or resolve violations to match the latest failures."""
        stamp = format_timestamp(now)
        failing = {f.key: f for f in failures}
        result = ComplianceResult()

        for violation in self._violations:
            if violation.is_open and violation.key not in failing:
                violation.resolved_at = stamp
                result.resolved.append(violation)
                logger.info(f"IRON LAW #{violation.law} resolved: {violation.subject}")

        open_keys = {v.key for v in self._violations if v.is_open}
        for key, failure in failing.items():
            if key in open_keys:
                continue
            violation = IronLawViolation(
                law=failure.law,
                type=failure.type,
                message=failure.message,
                subject=failure.subject,
                detected_at=stamp,
                corrective_action=failure.corrective_action,
            )
            self._violations.append(violation)
            result.opened.append(violation)
            logger.warning(f"IRON LAW #{failure.law} violated: {failure.message}")

        self._trim_history()
        result.open_violations = [v for v in self._violations if v.is_open]
        self._last_check = stamp
        self._save_state()
        return result

    def get_violations(self, include_resolved: bool = True) -> List[IronLawViolation]:
        if include_resolved:
            return list(self._violations)
        return [v for v in self._violations if v.is_open]

    def get_state(self) -> Dict[str, Any]:
        return {
            "last_check": self._last_check,
            "active_feature": self._active_feature,
            "violations": [v.to_dict() for v in self._violations],
            "pending_source_files": list(self._pending_sources),
            "recent_file_changes": list(self._recent_file_changes),
            "recent_tool_calls": list(self._recent_tool_calls),
        }

    def _trim_history(self) -> None:
        overflow = len(self._violations) - self.settings.history_limit
        if overflow <= 0:
            return
        # Oldest resolved records go first; open ones only if nothing else is left
        resolved = [v for v in self._violations if not v.is_open][:overflow]
        drop = {id(v) for v in resolved}
        kept = [v for v in self._violations if id(v) not in drop]
        self._violations = kept[-self.settings.history_limit:]

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def _load_state(self) -> None:
        state = load_json(self.state_file)
        if state is None:
            return
        for raw in state.get("violations") or []:
            try:
                self._violations.append(IronLawViolation.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Dropping unreadable violation record: {e}")
        self._pending_sources = [str(p) for p in state.get("pending_source_files") or []][-TRACKING_LIMIT:]
        self._recent_file_changes = list(state.get("recent_file_changes") or [])[-TRACKING_LIMIT:]
        self._recent_tool_calls = list(state.get("recent_tool_calls") or [])[-TRACKING_LIMIT:]
        self._active_feature = state.get("active_feature") or None
        self._last_check = state.get("last_check")

    def _save_state(self) -> None:
        atomic_write_json(self.state_file, self.get_state())
