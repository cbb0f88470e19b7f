"""
Workflow Log Reader

Incrementally tails the append-only workflow log.

The log interleaves JSON records with human summary lines (starting with '#').
Reading resumes from a byte offset so a restarted supervisor picks up exactly
where it left off.

CRITICAL CONSTRAINTS:
- READ-ONLY: the log is never written or truncated here
- TOLERANT: summary lines, blank lines and corrupt records are skipped
- DEFERRED: a trailing line without a newline is left for the next read
- ROTATION-SAFE: a file shorter than the offset is re-read from the start
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .workflow_model import LogEntry, WorkflowEvent

logger = logging.getLogger("log_reader")

SUMMARY_PREFIX = "#"


class LogReader:
    """Reads LogEntry records from the workflow log."""

    def __init__(self, log_path: Path):
        self._log_path = Path(log_path)

    @property
    def log_path(self) -> Path:
        return self._log_path

    def exists(self) -> bool:
        return self._log_path.exists()

    def read(self, since_offset: int = 0) -> Tuple[List[LogEntry], int]:
        """
        Read complete records appended after since_offset.

        Returns (entries, new_offset) where new_offset points just past the
        last complete line consumed.
        """
        if not self._log_path.exists():
            return [], 0

        try:
            size = self._log_path.stat().st_size
            offset = max(0, since_offset)
            if size < offset:
                logger.info(
                    f"Log {self._log_path} shrank below offset ({size} < {offset}), "
                    f"re-reading from start"
                )
                offset = 0
            if size == offset:
                return [], offset

            with open(self._log_path, "rb") as f:
                f.seek(offset)
                chunk = f.read(size - offset)
        except OSError as e:
            logger.warning(f"Failed to read log {self._log_path}: {e}")
            return [], since_offset

        last_newline = chunk.rfind(b"\n")
        if last_newline < 0:
            # Only a partial line so far
            return [], offset

        complete = chunk[:last_newline + 1]
        entries = self._parse_lines(complete)
        return entries, offset + len(complete)

    def read_all(self) -> List[LogEntry]:
        """Every complete entry currently in the log."""
        entries, _ = self.read(0)
        return entries

    def query_last(
        self,
        cmd: Optional[str] = None,
        event: Optional[WorkflowEvent] = None,
        phase: Optional[str] = None,
    ) -> Optional[LogEntry]:
        """Most recent entry matching every filter given."""
        for entry in reversed(self.read_all()):
            if cmd is not None and entry.command != cmd:
                continue
            if event is not None and entry.event != event:
                continue
            if phase is not None and entry.phase != phase:
                continue
            return entry
        return None

    def _parse_lines(self, raw: bytes) -> List[LogEntry]:
        entries: List[LogEntry] = []
        for line_number, raw_line in enumerate(raw.split(b"\n"), start=1):
            try:
                line = raw_line.decode("utf-8").strip()
            except UnicodeDecodeError:
                logger.debug(f"Skipping undecodable line {line_number}")
                continue
            if not line or line.startswith(SUMMARY_PREFIX):
                continue
            entry = parse_line(line)
            if entry is None:
                logger.debug(f"Skipping malformed log line: {line[:80]}")
                continue
            entries.append(entry)
        return entries


def parse_line(line: str) -> Optional[LogEntry]:
    """Decode one log line, or None if it is not a valid record."""
    try:
        return LogEntry.from_dict(json.loads(line))
    except (json.JSONDecodeError, KeyError, ValueError, TypeError):
        return None
