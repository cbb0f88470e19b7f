"""
JSON file persistence shared by the queue, supervisor and compliance stores.

Writes go to a sibling temp file that is then renamed over the target, so a
reader never sees a half-written file.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("watcher_storage")


def ensure_parent(path: Path) -> None:
    """Ensure the directory holding path exists."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.debug(f"Could not create directory {path.parent}: {e}")


def atomic_write_json(path: Path, data: Dict[str, Any]) -> bool:
    """Write data to path atomically. Returns False if the write failed."""
    ensure_parent(path)
    temp_file = path.with_suffix(path.suffix + ".tmp")
    try:
        temp_file.write_text(json.dumps(data, indent=2, default=str))
        temp_file.replace(path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save {path}: {e}")
        try:
            temp_file.unlink()
        except OSError as cleanup_error:
            logger.debug(f"Could not remove {temp_file}: {cleanup_error}")
        return False


def load_json(path: Path) -> Optional[Dict[str, Any]]:
    """
    Load a JSON object from path.

    Returns None when the file is missing, unreadable, corrupt or not an
    object. Callers treat None as "no prior state".
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to load {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"{path} does not hold a JSON object (was {type(data).__name__}), ignoring")
        return None
    return data
