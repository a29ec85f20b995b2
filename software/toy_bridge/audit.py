"""Structured ops log for the toy bridge.

Every connection change, device event, and command failure lands as one JSON
line in ``logs/ops_events.jsonl``.  Operators grep this after a session to see
why a toy went quiet; tests read it back to check failures were recorded.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "TOY_BRIDGE_LOG_DIR"
LOG_FILENAME = "ops_events.jsonl"


def resolve_log_dir(log_dir: Optional[Path] = None) -> Path:
    if log_dir is None:
        log_dir_env = os.environ.get(LOG_DIR_ENV)
        if log_dir_env:
            candidate = Path(log_dir_env)
            if candidate.is_absolute():
                log_dir = candidate
            else:
                log_dir = REPO_ROOT / candidate
        else:
            log_dir = REPO_ROOT / "logs"
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


class AuditLogger:
    def __init__(self, log_dir: Optional[Path] = None):
        self.log_path = resolve_log_dir(log_dir) / LOG_FILENAME
        self.operator = (
            os.environ.get("OPERATOR_ID")
            or os.environ.get("USER")
            or os.environ.get("USERNAME")
            or "unknown"
        )
        self.host = os.environ.get("HOSTNAME", "unknown_host")
        # The bridge loop thread and OSC handler threads both write here.
        self._lock = threading.Lock()

    def write(self, action, status="info", message=None, details=None):
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operator": self.operator,
            "host": self.host,
            "action": action,
            "status": status,
        }
        if message:
            event["message"] = message
        if details is not None:
            event["details"] = details
        line = json.dumps(event, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(line)

    def events(self, action: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read back logged events, optionally filtered by ``action``."""

        if not self.log_path.exists():
            return []
        with self._lock:
            lines = self.log_path.read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines if line.strip()]
        if action is not None:
            events = [event for event in events if event["action"] == action]
        return events
