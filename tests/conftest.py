"""
Pytest configuration for workflow watcher tests.

This module provides:
1. Entry builders on a fixed clock so time-based detectors are deterministic
2. Temporary directory and settings fixtures
3. Log file helpers
"""

import json
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pytest

from watcher.config import ComplianceSettings, WatcherSettings
from watcher.workflow_model import AgentInfo, LogEntry, WorkflowEvent, format_timestamp


BASE_TIME = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------
def at(seconds: float) -> datetime:
    """BASE_TIME shifted by seconds."""
    return BASE_TIME + timedelta(seconds=seconds)


def make_entry(
    seconds: float,
    command: str,
    event: WorkflowEvent,
    phase: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    agent: Optional[AgentInfo] = None,
) -> LogEntry:
    return LogEntry(
        timestamp=format_timestamp(at(seconds)),
        command=command,
        event=event,
        phase=phase,
        data=data or {},
        agent=agent,
    )


def write_log(path: Path, entries: Iterable[LogEntry], mode: str = "w") -> None:
    """Write entries as JSON lines, one per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, mode) as f:
        for entry in entries:
            f.write(json.dumps(entry.to_dict()) + "\n")


def append_log(path: Path, entries: Iterable[LogEntry]) -> None:
    write_log(path, entries, mode="a")


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_dir():
    """Create a temporary directory removed after the test."""
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def watcher_settings(temp_dir):
    """Settings rooted in the temp dir, with the compliance loop off."""
    project_dir = temp_dir / "project"
    project_dir.mkdir()
    return WatcherSettings(
        oss_dir=temp_dir / ".oss",
        project_dir=project_dir,
        compliance=ComplianceSettings(mode="manual"),
    )
