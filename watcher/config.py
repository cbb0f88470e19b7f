"""
Watcher Configuration

Thresholds, limits and paths for the workflow watcher.

Settings come from three layers, later layers winning:
1. Defaults declared on the models below
2. An optional YAML file (WATCHER_CONFIG or <oss_dir>/watcher.yaml)
3. Environment overrides for directories and credentials

A missing or invalid config file is logged and the defaults are used;
configuration problems never stop the watcher from starting.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("watcher_config")

# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------
OSS_DIR = Path(os.getenv("WATCHER_OSS_DIR", str(Path.home() / ".oss")))
CONFIG_FILE = os.getenv("WATCHER_CONFIG")
REMOTE_API_KEY = os.getenv("WATCHER_REMOTE_API_KEY")

LOG_FILE_NAME = "workflow.log"
QUEUE_FILE_NAME = "queue.json"
QUEUE_ARCHIVE_FILE_NAME = "queue-archive.json"
STATE_FILE_NAME = "workflow-state.json"
COMPLIANCE_STATE_FILE_NAME = "iron-law-state.json"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# -----------------------------------------------------------------------------
# Settings Models
# -----------------------------------------------------------------------------
class AnalyzerThresholds(BaseModel):
    """Timeouts, counts and cutoffs used by the workflow analyzer."""
    stuck_timeout_seconds: float = Field(default=240.0, gt=0)
    agent_silence_timeout_seconds: float = Field(default=50.0, gt=0)
    agent_abandoned_timeout_seconds: float = Field(default=90.0, gt=0)
    abrupt_stop_timeout_seconds: float = Field(default=150.0, gt=0)
    loop_threshold: int = Field(default=3, ge=2)
    missing_milestone_ratio: float = Field(default=0.5, gt=0, le=1.0)
    velocity_window: int = Field(default=5, ge=3)
    velocity_min_trend: float = Field(default=0.1, ge=0)
    critical_cutoff: float = Field(default=0.9, ge=0, le=1.0)
    warning_cutoff: float = Field(default=0.7, ge=0, le=1.0)
    expected_milestones: Dict[str, int] = Field(default_factory=lambda: {
        "ideate": 2,
        "plan": 3,
        "build": 4,
        "ship": 2,
    })
    expected_phase_milestones: Dict[str, int] = Field(default_factory=lambda: {
        "RED": 1,
        "GREEN": 1,
        "REFACTOR": 1,
    })
    expected_outputs: Dict[str, List[str]] = Field(default_factory=lambda: {
        "ideate": ["outputs"],
        "plan": ["outputs"],
        "build": ["outputs"],
    })


class InterventionSettings(BaseModel):
    """Priority overrides and deduplication for generated interventions."""
    dedup_window_seconds: float = Field(default=300.0, ge=0)
    downgrade_below: float = Field(default=0.5, ge=0, le=1.0)
    drop_below: float = Field(default=0.3, ge=0, le=1.0)
    auto_remediate_above: float = Field(default=0.9, ge=0, le=1.0)
    notify_suggest_at: float = Field(default=0.7, ge=0, le=1.0)


class QueueSettings(BaseModel):
    max_size: int = Field(default=50, ge=1)
    task_lifetime_seconds: float = Field(default=86400.0, gt=0)
    history_limit: int = Field(default=200, ge=0)


class ComplianceSettings(BaseModel):
    """Iron Law checks and their schedule."""
    mode: str = Field(default="always", pattern=r"^(always|manual|off)$")
    check_interval_seconds: float = Field(default=60.0, gt=0)
    check_branch: bool = True
    check_tdd: bool = True
    check_docs: bool = True
    protected_branches: List[str] = Field(default_factory=lambda: ["main", "master"])
    docs_stale_after_seconds: float = Field(default=3600.0, gt=0)
    git_timeout_seconds: float = Field(default=5.0, gt=0)
    history_limit: int = Field(default=100, ge=1)


class RemoteAnalysisSettings(BaseModel):
    """Optional remote confidence-scoring fallback."""
    enabled: bool = False
    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0, le=1.0)
    max_entries: int = Field(default=50, ge=1)


class SupervisorSettings(BaseModel):
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    idle_analysis_interval_seconds: float = Field(default=15.0, gt=0)
    processed_signature_limit: int = Field(default=500, ge=1)
    max_window_entries: int = Field(default=2000, ge=1)
    stop_timeout_seconds: float = Field(default=30.0, gt=0)


class WatcherSettings(BaseModel):
    """Top-level watcher configuration."""
    oss_dir: Path = OSS_DIR
    project_dir: Path = Field(default_factory=Path.cwd)
    analyzer: AnalyzerThresholds = Field(default_factory=AnalyzerThresholds)
    intervention: InterventionSettings = Field(default_factory=InterventionSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    compliance: ComplianceSettings = Field(default_factory=ComplianceSettings)
    remote: RemoteAnalysisSettings = Field(default_factory=RemoteAnalysisSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)

    @property
    def log_file(self) -> Path:
        return self.oss_dir / LOG_FILE_NAME

    @property
    def queue_file(self) -> Path:
        return self.oss_dir / QUEUE_FILE_NAME

    @property
    def queue_archive_file(self) -> Path:
        return self.oss_dir / QUEUE_ARCHIVE_FILE_NAME

    @property
    def state_file(self) -> Path:
        return self.oss_dir / STATE_FILE_NAME

    @property
    def compliance_state_file(self) -> Path:
        return self.oss_dir / COMPLIANCE_STATE_FILE_NAME


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------
def read_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Read a YAML mapping; an empty file yields {}."""
    with open(file_path, "r") as f:
        return yaml.safe_load(f) or {}


def load_settings(path: Optional[Path] = None, oss_dir: Optional[Path] = None) -> WatcherSettings:
    """
    Load settings from YAML with environment overrides applied.

    Never raises: unreadable or invalid configuration falls back to defaults.
    """
    base_dir = Path(oss_dir) if oss_dir else OSS_DIR
    if path is None:
        path = Path(CONFIG_FILE) if CONFIG_FILE else base_dir / "watcher.yaml"
    path = Path(path)

    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            raw = read_yaml_file(path)
            if not isinstance(raw, dict):
                logger.warning(f"Config file {path} is not a mapping, using defaults")
                raw = {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to read config file {path}: {e}")
            raw = {}

    raw.setdefault("oss_dir", str(base_dir))
    if REMOTE_API_KEY:
        raw.setdefault("remote", {})
        if isinstance(raw["remote"], dict):
            raw["remote"].setdefault("api_key", REMOTE_API_KEY)

    try:
        return WatcherSettings(**raw)
    except ValidationError as e:
        logger.warning(f"Invalid watcher configuration in {path}, using defaults: {e}")
        return WatcherSettings(oss_dir=base_dir)


def configure_logging(level: int = logging.INFO) -> None:
    """Apply the standard log format for hosts embedding the watcher."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
