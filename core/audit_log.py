"""
Scalp Monitor Core: Audit Logger

Structured JSONL trail of committed exits and run summaries for debugging
and after-the-fact profit reconciliation.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs:
    - Every committed exit (position, reason, quantity, price, profit, mode)
    - One summary line per monitor run

    Output format: JSONL (one JSON object per line). Write failures are
    logged and never propagate into the engine.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/exit_audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/exit_audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_exit(self, entry: Dict[str, Any]) -> None:
        """Record one committed exit."""
        self._append({"type": "exit", **entry})

    def log_run(self, summary: Dict[str, Any]) -> None:
        """Record the summary of a monitor run."""
        self._append({"type": "run", **summary})

    def _append(self, entry: Dict[str, Any]) -> None:
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
