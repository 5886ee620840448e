
import os
import json
import logging
import sys
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# stdout carries JSON-RPC; everything human-readable goes to stderr
logging.basicConfig(
    level=os.environ.get("OMEGA_LOG_LEVEL", "WARNING").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("omega")

KIND_OK = "ok"
KIND_DENIED = "denied"
KIND_ERROR = "error"

WRITE_PATHS = [
    "pulse_proposals:pending_review",
    "pulse_confidence_events:outcome",
]


def utc_now() -> str:
    return iso_utc(datetime.now(timezone.utc))


def get_omega_home() -> Path:
    """Get the Omega state directory from environment or default."""
    path = Path(os.environ.get("OMEGA_HOME", ".omega"))
    path.mkdir(parents=True, exist_ok=True)
    return path


def canon_block() -> Dict[str, Any]:
    return {
        "mode": "observer_only",
        "authority": "none",
        "write_paths": list(WRITE_PATHS),
    }


def make_response(kind: str, result: Any = None, denial: Optional[Dict] = None,
                  error: Optional[Dict] = None) -> str:
    """Standardized tool response: always a kind discriminator, never a bare value."""
    if kind not in (KIND_OK, KIND_DENIED, KIND_ERROR):
        raise ValueError(f"Unknown response kind: {kind}")

    envelope: Dict[str, Any] = {"kind": kind, "_canon": canon_block()}
    if kind == KIND_OK:
        envelope["result"] = result
    elif kind == KIND_DENIED:
        envelope["denial"] = denial or {}
    else:
        envelope["error"] = error or {}
    envelope["timestamp"] = utc_now()
    return json.dumps(envelope, indent=2, default=str)


def iso_utc(dt: datetime) -> str:
    """Same format as utc_now(), so stored timestamps compare lexically."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")
