"""
Scalp Monitor Core: Position Model

Shared types for the exit engine: the managed position record, its exit
stages, partial-exit history entries and the decision variants produced by
the position state machine.

Stages: INITIAL → (STOPPED_OUT | TP1_HIT) → LADDER_100 → (DUMP_EXITED | COMPLETED)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Exit lifecycle stages"""
    INITIAL = "initial"            # Entry filled, no exit yet
    TP1_HIT = "tp1_hit"            # Primary take-profit sold, moon bag retained
    LADDER_100 = "ladder_100"      # Half of moon bag sold at +100%
    STOPPED_OUT = "stopped_out"    # Stop-loss sold everything
    DUMP_EXITED = "dump_exited"    # Dump protection sold the moon bag
    COMPLETED = "completed"        # Ladder +300% sold the remainder

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def tracks_peak(self) -> bool:
        return self in (Stage.TP1_HIT, Stage.LADDER_100)

    def can_transition_to(self, other: "Stage") -> bool:
        return other in VALID_TRANSITIONS.get(self, frozenset())

    @classmethod
    def parse(cls, value: Optional[str]) -> "Stage":
        """Parse a stored stage, accepting the legacy names older records carry."""
        if not value:
            return cls.INITIAL
        if isinstance(value, Stage):
            return value
        normalized = LEGACY_STAGE_NAMES.get(value, value)
        return cls(normalized)


TERMINAL_STAGES = frozenset({Stage.STOPPED_OUT, Stage.DUMP_EXITED, Stage.COMPLETED})

VALID_TRANSITIONS = {
    Stage.INITIAL: frozenset({Stage.STOPPED_OUT, Stage.TP1_HIT}),
    Stage.TP1_HIT: frozenset({Stage.LADDER_100, Stage.DUMP_EXITED, Stage.COMPLETED}),
    Stage.LADDER_100: frozenset({Stage.DUMP_EXITED, Stage.COMPLETED}),
}

LEGACY_STAGE_NAMES = {
    "stop_loss": Stage.STOPPED_OUT.value,
    "dump_exit": Stage.DUMP_EXITED.value,
}


class ExitReason(Enum):
    """Why an exit was triggered"""
    STOP_LOSS = "stop_loss"
    TP1 = "tp1"
    LADDER_100 = "ladder_100"
    LADDER_300 = "ladder_300"
    DUMP_EXIT = "dump_exit"


class PositionStatus(Enum):
    HOLDING = "holding"
    SOLD = "sold"


@dataclass(frozen=True)
class PeakUpdate:
    """New local high for dump-protection tracking"""
    price: float
    pct: float


@dataclass(frozen=True)
class NoAction:
    """Nothing to sell this tick; optionally a new peak to record"""
    peak: Optional[PeakUpdate] = None


@dataclass(frozen=True)
class Exit:
    """
    Sell `percent` of the remaining quantity.

    `next_stage` is the stage committed once execution succeeds; `peak` is
    committed alongside it when set.
    """
    percent: float
    reason: ExitReason
    next_stage: Stage
    price_change_pct: float = 0.0
    peak: Optional[PeakUpdate] = None
    drop_from_peak_pct: Optional[float] = None

    @property
    def is_full_exit(self) -> bool:
        return self.percent >= 100.0


Decision = Union[NoAction, Exit]


@dataclass
class PartialExit:
    """One entry in a position's exit history"""
    percent: float
    quantity: float
    price: float
    reference_id: str
    reason: str
    timestamp: str
    proceeds_usd: Optional[float] = None
    profit_usd: Optional[float] = None
    peak_price: Optional[float] = None
    drop_from_peak_pct: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "percent": self.percent,
            "quantity": self.quantity,
            "price": self.price,
            "reference_id": self.reference_id,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "proceeds_usd": self.proceeds_usd,
            "profit_usd": self.profit_usd,
        }
        if self.peak_price is not None:
            data["peak_price"] = self.peak_price
        if self.drop_from_peak_pct is not None:
            data["drop_from_peak_pct"] = self.drop_from_peak_pct
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialExit":
        return cls(
            percent=float(data.get("percent", 0.0)),
            quantity=float(data.get("quantity", 0.0)),
            price=float(data.get("price", 0.0)),
            reference_id=str(data.get("reference_id") or data.get("signature") or ""),
            reason=str(data.get("reason", "")),
            timestamp=str(data.get("timestamp", "")),
            proceeds_usd=_opt_float(data.get("proceeds_usd")),
            profit_usd=_opt_float(data.get("profit_usd", data.get("profit"))),
            peak_price=_opt_float(data.get("peak_price")),
            drop_from_peak_pct=_opt_float(data.get("drop_from_peak_pct")),
        )


@dataclass
class Position:
    """
    Managed position snapshot as read from the position store.

    Quantities are in token units, prices in USD per token. Threshold fields
    left as None fall back to the configured exit defaults.
    """
    # Identity
    id: str
    token_id: str
    token_symbol: Optional[str] = None
    is_test: bool = False

    # Economics
    entry_price: float = 0.0
    entry_quantity: float = 0.0
    entry_cost_usd: float = 0.0
    remaining_quantity: float = 0.0
    realized_profit_usd: float = 0.0

    # Thresholds and execution parameters
    take_profit_pct: Optional[float] = None
    stop_loss_pct: Optional[float] = None
    moon_bag_pct: Optional[float] = None
    slippage_bps: Optional[int] = None
    priority_fee_mode: Optional[str] = None

    # Lifecycle
    stage: Stage = Stage.INITIAL
    status: str = PositionStatus.HOLDING.value
    managed: bool = True

    # Peak tracking
    peak_price: Optional[float] = None
    peak_pct: Optional[float] = None
    dump_threshold_pct: Optional[float] = None

    # History
    partial_exits: List[PartialExit] = field(default_factory=list)

    version: int = 0
    updated_at: Optional[str] = None

    @property
    def label(self) -> str:
        return self.token_symbol or self.token_id[:8]

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.HOLDING.value and not self.stage.is_terminal

    def price_change_pct(self, current_price: float) -> float:
        """Percent move of `current_price` relative to entry."""
        return round(((current_price / self.entry_price) - 1.0) * 100.0, 8)

    def with_defaults(self, defaults: "ExitDefaults") -> "Position":
        """Copy with missing thresholds filled from `defaults`."""
        return replace(
            self,
            take_profit_pct=_first_set(self.take_profit_pct, defaults.take_profit_pct),
            stop_loss_pct=_first_set(self.stop_loss_pct, defaults.stop_loss_pct),
            moon_bag_pct=moon_bag_or_default(self.moon_bag_pct, defaults.moon_bag_pct),
            slippage_bps=_first_set(self.slippage_bps, defaults.slippage_bps),
            priority_fee_mode=self.priority_fee_mode or defaults.priority_fee_mode,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token_id": self.token_id,
            "token_symbol": self.token_symbol,
            "is_test": self.is_test,
            "entry_price": self.entry_price,
            "entry_quantity": self.entry_quantity,
            "entry_cost_usd": self.entry_cost_usd,
            "remaining_quantity": self.remaining_quantity,
            "realized_profit_usd": self.realized_profit_usd,
            "take_profit_pct": self.take_profit_pct,
            "stop_loss_pct": self.stop_loss_pct,
            "moon_bag_pct": self.moon_bag_pct,
            "slippage_bps": self.slippage_bps,
            "priority_fee_mode": self.priority_fee_mode,
            "stage": self.stage.value,
            "status": self.status,
            "managed": self.managed,
            "peak_price": self.peak_price,
            "peak_pct": self.peak_pct,
            "dump_threshold_pct": self.dump_threshold_pct,
            "partial_exits": [entry.to_dict() for entry in self.partial_exits],
            "version": self.version,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Position":
        entry_quantity = float(record.get("entry_quantity") or 0.0)
        remaining = record.get("remaining_quantity")
        return cls(
            id=str(record["id"]),
            token_id=str(record["token_id"]),
            token_symbol=record.get("token_symbol"),
            is_test=bool(record.get("is_test", False)),
            entry_price=float(record.get("entry_price") or 0.0),
            entry_quantity=entry_quantity,
            entry_cost_usd=float(record.get("entry_cost_usd") or 0.0),
            remaining_quantity=float(remaining) if remaining is not None else entry_quantity,
            realized_profit_usd=float(record.get("realized_profit_usd") or 0.0),
            take_profit_pct=_opt_float(record.get("take_profit_pct")),
            stop_loss_pct=_opt_float(record.get("stop_loss_pct")),
            moon_bag_pct=_opt_float(record.get("moon_bag_pct")),
            slippage_bps=_opt_int(record.get("slippage_bps")),
            priority_fee_mode=record.get("priority_fee_mode"),
            stage=Stage.parse(record.get("stage")),
            status=record.get("status") or PositionStatus.HOLDING.value,
            managed=bool(record.get("managed", True)),
            peak_price=_opt_float(record.get("peak_price")),
            peak_pct=_opt_float(record.get("peak_pct")),
            dump_threshold_pct=_opt_float(record.get("dump_threshold_pct")),
            partial_exits=[PartialExit.from_dict(e) for e in record.get("partial_exits") or []],
            version=int(record.get("version") or 0),
            updated_at=record.get("updated_at"),
        )


@dataclass(frozen=True)
class ExitDefaults:
    """Fallback thresholds for positions that do not carry their own"""
    take_profit_pct: float = 50.0
    stop_loss_pct: float = 35.0
    moon_bag_pct: float = 10.0
    slippage_bps: int = 1500
    priority_fee_mode: str = "high"


def moon_bag_or_default(value: Optional[float], fallback: float) -> float:
    """
    Moon bag share to keep after tp1.

    Must lie strictly between 0 and 100: a zero bag would empty the position
    while leaving it in a non-terminal stage.
    """
    if value is None or value <= 0 or value >= 100:
        return fallback
    return value


def _first_set(value, fallback):
    return fallback if value is None else value


def _opt_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric value {value!r}")
        return None


def _opt_int(value) -> Optional[int]:
    number = _opt_float(value)
    return int(number) if number is not None else None
