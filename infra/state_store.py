"""
Scalp Monitor Infrastructure: Position Store

Persistent position records with atomic writes and optimistic versioning.

The engine only ever needs two calls:
- list_managed_open_positions()
- update_position(id, patch, expected_version)

Every committed write bumps the record's `version`; a write carrying a stale
`expected_version` is rejected so two overlapping runs cannot both apply the
same exit.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pathlib import Path
import logging

from core.exceptions import PersistenceFailure, StaleVersion
from core.position import Position

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "positions": {},  # position id -> position record
    "last_updated_at": None,
}

PATCHABLE_FIELDS = frozenset({
    "stage",
    "status",
    "remaining_quantity",
    "realized_profit_usd",
    "peak_price",
    "peak_pct",
})


class PositionStore(ABC):
    """Interface the exit engine consumes."""

    @abstractmethod
    def list_managed_open_positions(self) -> List[Position]:
        """Open, managed positions (non-terminal stage, status holding)."""

    @abstractmethod
    def update_position(self, position_id: str, patch: Dict[str, Any],
                        expected_version: Optional[int] = None) -> Position:
        """Apply `patch`; raises StaleVersion when `expected_version` is out of date."""


class JsonPositionStore(PositionStore):
    """
    Position storage in a single JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Optimistic version check per record
    - Append-only partial exit history
    - Thread-safe read-modify-write
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize position store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/positions.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/positions.json"))

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized JsonPositionStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Raises:
            PersistenceFailure: file exists but cannot be read or parsed
        """
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return {"positions": {}, "last_updated_at": None}

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceFailure("*", f"cannot read {self.state_file}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceFailure("*", f"invalid state file format in {self.state_file}")

        state = {**DEFAULT_STATE, **data}
        state["positions"] = dict(state.get("positions") or {})
        return state

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Raises:
            PersistenceFailure: write or rename failed
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".positions_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)

            os.replace(temp_path, self.state_file)
            logger.debug("Saved state to file")
        except OSError as e:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            raise PersistenceFailure("*", f"cannot write {self.state_file}: {e}") from e

    def list_managed_open_positions(self) -> List[Position]:
        """Positions still holding and flagged as engine-managed."""
        state = self.load()
        positions = []
        for position_id, record in state["positions"].items():
            try:
                position = Position.from_record({"id": position_id, **record})
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed position record {position_id}: {e}")
                continue
            if position.managed and position.is_open:
                positions.append(position)
        return positions

    def get_position(self, position_id: str) -> Optional[Position]:
        record = self.load()["positions"].get(position_id)
        if record is None:
            return None
        return Position.from_record({"id": position_id, **record})

    def upsert_position(self, position: Position) -> Position:
        """Insert or replace a full record (used when an external buy is imported)."""
        with self._lock:
            state = self.load()
            record = position.to_record()
            record["updated_at"] = datetime.now(timezone.utc).isoformat()
            state["positions"][position.id] = record
            state["last_updated_at"] = record["updated_at"]
            self.save(state)
        return Position.from_record(record)

    def update_position(self, position_id: str, patch: Dict[str, Any],
                        expected_version: Optional[int] = None) -> Position:
        """
        Apply `patch` to one record and bump its version.

        Args:
            position_id: Record to update
            patch: Any of PATCHABLE_FIELDS plus `append_partial_exit` (a dict)
            expected_version: Version the caller read; None skips the check

        Returns:
            The committed position

        Raises:
            StaleVersion: record changed since `expected_version`
            PersistenceFailure: record missing or the write failed
        """
        unknown = set(patch) - PATCHABLE_FIELDS - {"append_partial_exit"}
        if unknown:
            raise PersistenceFailure(position_id, f"unsupported patch fields: {sorted(unknown)}")

        with self._lock:
            state = self.load()
            record = state["positions"].get(position_id)
            if record is None:
                raise PersistenceFailure(position_id, "position not found")

            current_version = int(record.get("version") or 0)
            if expected_version is not None and current_version != expected_version:
                raise StaleVersion(position_id, expected_version, current_version)

            for key in PATCHABLE_FIELDS:
                if key in patch:
                    record[key] = patch[key]

            entry = patch.get("append_partial_exit")
            if entry:
                record["partial_exits"] = list(record.get("partial_exits") or []) + [entry]

            now = datetime.now(timezone.utc).isoformat()
            record["version"] = current_version + 1
            record["updated_at"] = now
            state["positions"][position_id] = record
            state["last_updated_at"] = now
            self.save(state)

        return Position.from_record({"id": position_id, **record})


def create_position_store_from_config(state_cfg: Optional[Dict[str, Any]] = None) -> PositionStore:
    """Factory for the configured store backend."""
    state_cfg = state_cfg or {}
    backend = (state_cfg.get("backend") or "json").lower()
    if backend != "json":
        raise ValueError(f"Unsupported position store backend: {backend}")
    return JsonPositionStore(state_file=state_cfg.get("file"))
