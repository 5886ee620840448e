import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .common import utc_now

audit_logger = logging.getLogger("omega.audit")


class AuditLog:
    """Append-only MCP audit trail.

    Each record goes to the `omega.audit` logger (stderr) and, when a path is
    configured, to a JSONL file. A failed file write never fails the call.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path

    def record(self, action: str, details: Dict[str, Any], success: bool) -> Dict[str, Any]:
        entry = {
            "timestamp": utc_now(),
            "type": "MCP_AUDIT",
            "action": action,
            "success": success,
            **details,
        }
        line = json.dumps(entry, default=str)
        if success:
            audit_logger.info(line)
        else:
            audit_logger.warning(line)

        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as f:
                    f.write(line + "\n")
            except OSError as e:
                audit_logger.warning(f"Failed to append audit record: {e}")
        return entry
