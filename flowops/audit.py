"""
flowops/audit.py - Structured audit trail for rotation runs.

One JSON object per line, appended to AUDIT_LOG:
    {"timestamp", "action", "actor", "resource", "environment", "result", "metadata"}

Newly generated secret values are never written here.
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

ACTOR = "rotation-agent"


def make_event(
    action: str, resource: str, environment: str, result: str, metadata: dict | None = None
) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "actor": ACTOR,
        "resource": resource,
        "environment": environment,
        "result": result,
        "metadata": metadata or {},
    }


class AuditLog:
    def __init__(self, path: Path | None) -> None:
        self.path = path

    def write(self, event: dict[str, Any]) -> None:
        """Append an event; an unwritable audit file is logged and otherwise ignored."""
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            log.warning(f"Audit write to {self.path} failed (non-fatal): {e}")
