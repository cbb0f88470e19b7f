"""
Remote Analysis Fallback

Optional second opinion for log windows where the heuristics found nothing.
The recent log excerpt is POSTed to a scoring endpoint; a confident, well-formed
answer becomes one WorkflowIssue.

CRITICAL CONSTRAINTS:
- FAIL OPEN: any network error, non-200 status or malformed payload means
  "no additional issue", never an exception
- ADVISORY: results below the confidence threshold are discarded
"""

import json
import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from .config import RemoteAnalysisSettings
from .workflow_model import IssueType, LogEntry, WorkflowIssue

logger = logging.getLogger("remote_analyzer")

EXCERPT_CHARS = 300


class RemoteAnalyzer:
    """Asks a remote endpoint whether a log window looks anomalous."""

    def __init__(self, settings: RemoteAnalysisSettings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self.settings.enabled and self.settings.url and self.settings.api_key)

    def build_log_content(self, entries: Sequence[LogEntry]) -> str:
        recent = list(entries)[-self.settings.max_entries:]
        return "\n".join(json.dumps(e.to_dict(), sort_keys=True) for e in recent)

    async def analyze(self, entries: Sequence[LogEntry]) -> Optional[WorkflowIssue]:
        if not self.enabled or not entries:
            return None
        log_content = self.build_log_content(entries)
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout_seconds) as client:
                response = await client.post(
                    self.settings.url,
                    headers={"Authorization": f"Bearer {self.settings.api_key}"},
                    json={"log_content": log_content},
                )
            if response.status_code != 200:
                logger.warning(f"Remote analysis returned HTTP {response.status_code}")
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Remote analysis failed: {e}")
            return None

        return self.parse_response(payload, entries[-1], log_content)

    def parse_response(
        self,
        payload: Any,
        last_entry: LogEntry,
        log_content: str = "",
    ) -> Optional[WorkflowIssue]:
        """Convert an endpoint response into an issue, or None."""
        if not isinstance(payload, dict) or not payload.get("anomaly_detected"):
            return None
        try:
            issue_type = IssueType(payload.get("anomaly_type"))
            confidence = float(payload.get("confidence") or 0.0)
        except (ValueError, TypeError):
            logger.debug(f"Ignoring remote analysis with unknown type: {payload.get('anomaly_type')}")
            return None
        if not 0.0 <= confidence <= 1.0 or confidence < self.settings.confidence_threshold:
            return None

        context: Dict[str, Any] = {
            "anchor": f"remote:{last_entry.timestamp}",
            "source": "remote_analyzer",
            "command": last_entry.command,
            "phase": last_entry.phase,
            "analysis": payload.get("analysis"),
            "log_excerpt": log_content[:EXCERPT_CHARS],
        }
        if payload.get("suggested_agent"):
            context["agent_type"] = str(payload["suggested_agent"])
        return WorkflowIssue(
            type=issue_type,
            confidence=confidence,
            message=str(payload.get("analysis") or f"Remote analysis flagged {issue_type.value}"),
            context=context,
        )
