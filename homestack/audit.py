"""
Operation audit logging with structured JSON-Lines.
"""
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

AUDIT_FILENAME = "audit.jsonl"
REDACTED_KEYS = ("password", "token", "secret", "key")


class AuditLogger:
    """Writes structured JSONL audit logs without sensitive data."""
    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self.log_file = self.log_dir / AUDIT_FILENAME

    def log(self, event_type: str, **kwargs: Any) -> None:
        """Log a structured operation event."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": kwargs
        }

        for key in REDACTED_KEYS:
            if key in entry["details"]:
                entry["details"][key] = "*****"

        line = json.dumps(entry, default=str) + "\n"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            sys.stderr.write(f"[homestack audit] Failed to write log: {e}\n")
            try:
                fallback = Path.home() / ".homestack_audit_fallback.log"
                with fallback.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                pass

def get_audit_log(log_dir: Path, last_n: int = 50) -> List[Dict[str, Any]]:
    """Retrieve the last N events from the audit log."""
    log_file = Path(log_dir) / AUDIT_FILENAME
    if not log_file.exists():
        return []

    try:
        with log_file.open("r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError:
        return []

    parsed = []
    for line in lines[-last_n:]:
        if line.strip():
            try:
                parsed.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return parsed
