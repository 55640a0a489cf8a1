"""
Scalp Monitor Core: Execution Dispatcher

Applies exit decisions. Each position is routed to one of two interchangeable
executors by its test flag:

- SimulatedExecutor: fills at the trigger price, no network
- RealExecutor: delegates the sell to the external trade executor

Stage, quantity, profit, peak and history are committed to the position store
only after the executor confirms. A failed sell leaves the record untouched
so the same rule fires again next tick.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.exceptions import ExecutionFailure, NotifierFailure, PersistenceFailure, StaleVersion
from core.position import (
    Decision,
    Exit,
    ExitReason,
    NoAction,
    PartialExit,
    Position,
    PositionStatus,
)

logger = logging.getLogger(__name__)

MODE_SIMULATED = "simulated"
MODE_REAL = "real"

NOTIFY_REASONS = frozenset({ExitReason.TP1, ExitReason.DUMP_EXIT})


@dataclass
class Fill:
    """What an executor reports for one exit"""
    success: bool
    exit_quantity: float = 0.0
    proceeds_usd: float = 0.0
    profit_usd: float = 0.0
    reference_id: Optional[str] = None
    pnl_estimated: bool = False
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of applying one exit decision"""
    success: bool
    position_id: str
    token_id: str
    action: str
    mode: str
    stage_before: str
    stage_after: str
    percent: float
    exit_quantity: float
    remaining_quantity: float
    price: float
    price_change_pct: float
    reference_id: Optional[str] = None
    proceeds_usd: Optional[float] = None
    profit_usd: Optional[float] = None
    pnl_estimated: bool = False
    drop_from_peak_pct: Optional[float] = None
    persisted: bool = False
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def exit_quantity_for(position: Position, decision: Exit) -> float:
    """Token quantity sold by `decision`; a full exit sells exactly what remains."""
    if decision.is_full_exit:
        return position.remaining_quantity
    return position.remaining_quantity * decision.percent / 100.0


def cost_basis_for(position: Position, quantity: float) -> float:
    """Entry cost attributable to `quantity` tokens."""
    if position.entry_quantity <= 0:
        return 0.0
    return position.entry_cost_usd * quantity / position.entry_quantity


class Executor(ABC):
    """Sells part of a position. Implementations never touch the store."""

    mode = "abstract"

    @abstractmethod
    def execute(self, position: Position, decision: Exit, current_price: float,
                quote_price: Optional[float] = None, time_left: Optional[float] = None) -> Fill:
        """
        Sell `decision.percent` of the remaining quantity.

        Args:
            time_left: Seconds left in the run budget, if the caller has one
        """


class SimulatedExecutor(Executor):
    """Deterministic paper fill at the trigger price."""

    mode = MODE_SIMULATED

    def __init__(self, wall_clock: Callable[[], float] = time.time):
        self._wall_clock = wall_clock

    def execute(self, position: Position, decision: Exit, current_price: float,
                quote_price: Optional[float] = None, time_left: Optional[float] = None) -> Fill:
        quantity = exit_quantity_for(position, decision)
        filled_value = quantity * current_price
        profit = filled_value - cost_basis_for(position, quantity)
        reference_id = f"SIMULATED_{decision.reason.value.upper()}_{int(self._wall_clock() * 1000)}"
        return Fill(
            success=True,
            exit_quantity=quantity,
            proceeds_usd=filled_value,
            profit_usd=profit,
            reference_id=reference_id,
        )


class RealExecutor(Executor):
    """Delegates the sell to the external trade executor."""

    mode = MODE_REAL

    def __init__(self, client):
        self.client = client

    def execute(self, position: Position, decision: Exit, current_price: float,
                quote_price: Optional[float] = None, time_left: Optional[float] = None) -> Fill:
        quantity = exit_quantity_for(position, decision)
        response = self.client.sell(
            position_id=position.id,
            exit_percent=decision.percent,
            reason=decision.reason.value,
            slippage_bps=position.slippage_bps,
            priority_fee_mode=position.priority_fee_mode,
            time_left=time_left,
        )
        if not response.success:
            return Fill(success=False, error=response.error or "executor reported failure")

        cost_basis = cost_basis_for(position, quantity)
        estimated = False
        if response.realized_pnl_usd is not None:
            profit = response.realized_pnl_usd
            proceeds = cost_basis + profit
        elif response.out_amount_quote and quote_price:
            proceeds = response.out_amount_quote * quote_price
            profit = proceeds - cost_basis
        else:
            proceeds = quantity * current_price
            profit = proceeds - cost_basis
            estimated = True

        return Fill(
            success=True,
            exit_quantity=quantity,
            proceeds_usd=proceeds,
            profit_usd=profit,
            reference_id=response.reference_id,
            pnl_estimated=estimated,
        )


class ExecutionDispatcher:
    """
    Single entry point for applying decisions.

    Responsibilities:
    - Route exits to the simulated or real executor by the position's test flag
    - Commit stage/quantity/peak/history only after a confirmed fill
    - Persist peak-only updates for NoAction decisions
    - Best-effort notifications on tp1 and dump exits
    - Audit trail and metrics for every committed exit
    """

    def __init__(self,
                 store,
                 simulated: Executor,
                 real: Executor,
                 notifier=None,
                 audit_logger=None,
                 metrics=None,
                 recipient: Optional[str] = None):
        self.store = store
        self.executors = {True: simulated, False: real}
        self.notifier = notifier
        self.audit_logger = audit_logger
        self.metrics = metrics
        self.recipient = recipient

    def execute(self, position: Position, decision: Decision, current_price: float,
                quote_price: Optional[float] = None,
                time_left: Optional[float] = None) -> Optional[ExecutionResult]:
        """
        Apply `decision` to `position`.

        `time_left` is the remaining run budget in seconds; the real executor
        bounds its request timeouts and retries by it.

        Returns:
            None for NoAction, otherwise the ExecutionResult (check `success`
            and `persisted`)
        """
        if isinstance(decision, NoAction):
            if decision.peak is not None:
                self._persist_peak(position, decision)
            return None
        return self._apply_exit(position, decision, current_price, quote_price, time_left)

    def _apply_exit(self, position: Position, decision: Exit, current_price: float,
                    quote_price: Optional[float], time_left: Optional[float]) -> ExecutionResult:
        executor = self.executors[bool(position.is_test)]
        result = ExecutionResult(
            success=False,
            position_id=position.id,
            token_id=position.token_id,
            action=decision.reason.value,
            mode=executor.mode,
            stage_before=position.stage.value,
            stage_after=position.stage.value,
            percent=decision.percent,
            exit_quantity=0.0,
            remaining_quantity=position.remaining_quantity,
            price=current_price,
            price_change_pct=decision.price_change_pct,
            drop_from_peak_pct=decision.drop_from_peak_pct,
        )

        if not position.stage.can_transition_to(decision.next_stage):
            result.error = f"invalid transition {position.stage.value} -> {decision.next_stage.value}"
            logger.error(f"[{position.label}] refusing exit: {result.error}")
            return result

        logger.info(
            f"[{position.label}] {decision.reason.value.upper()} at {decision.price_change_pct:+.1f}%: "
            f"selling {decision.percent:.1f}% of remaining ({executor.mode})"
        )

        try:
            fill = executor.execute(position, decision, current_price, quote_price, time_left)
            if not fill.success:
                raise ExecutionFailure(position.id, fill.error or "unconfirmed")
        except ExecutionFailure as e:
            logger.warning(f"⚠️ Exit failed for {position.label} ({decision.reason.value}): {e.reason}")
            result.error = e.reason
            self._metric("record_execution_failure", decision.reason.value, executor.mode)
            return result

        remaining = 0.0 if decision.is_full_exit else max(position.remaining_quantity - fill.exit_quantity, 0.0)
        result.success = True
        result.exit_quantity = fill.exit_quantity
        result.remaining_quantity = remaining
        result.reference_id = fill.reference_id
        result.proceeds_usd = fill.proceeds_usd
        result.profit_usd = fill.profit_usd
        result.pnl_estimated = fill.pnl_estimated

        patch = self._exit_patch(position, decision, fill, remaining, current_price, result.timestamp)
        try:
            self.store.update_position(position.id, patch, expected_version=position.version)
        except StaleVersion as e:
            logger.error(f"Position {position.id} changed underneath exit {decision.reason.value}: {e.reason}")
            result.error = e.reason
            self._metric("record_persistence_failure", "stale_version")
            return result
        except PersistenceFailure as e:
            logger.error(f"Failed to persist exit for {position.id}: {e.reason}")
            result.error = e.reason
            self._metric("record_persistence_failure", "write")
            return result

        result.persisted = True
        result.stage_after = decision.next_stage.value
        logger.info(
            f"✅ {decision.reason.value} committed for {position.label}: "
            f"sold {fill.exit_quantity:.6f} @ ${current_price:.8f}, "
            f"profit ${fill.profit_usd:.2f}, remaining {remaining:.6f}"
        )
        self._metric("record_exit", decision.reason.value, executor.mode)
        if self.audit_logger is not None:
            self.audit_logger.log_exit(result.to_dict())
        if decision.reason in NOTIFY_REASONS:
            self._notify(position, decision, result)
        return result

    @staticmethod
    def _exit_patch(position: Position, decision: Exit, fill: Fill, remaining: float,
                    current_price: float, timestamp: str) -> Dict[str, Any]:
        entry = PartialExit(
            percent=decision.percent,
            quantity=fill.exit_quantity,
            price=current_price,
            reference_id=fill.reference_id or "",
            reason=decision.reason.value,
            timestamp=timestamp,
            proceeds_usd=fill.proceeds_usd,
            profit_usd=fill.profit_usd,
            peak_price=position.peak_price if decision.reason == ExitReason.DUMP_EXIT else None,
            drop_from_peak_pct=decision.drop_from_peak_pct,
        )
        patch: Dict[str, Any] = {
            "stage": decision.next_stage.value,
            "remaining_quantity": remaining,
            "realized_profit_usd": position.realized_profit_usd + fill.profit_usd,
            "append_partial_exit": entry.to_dict(),
        }
        if decision.peak is not None:
            patch["peak_price"] = decision.peak.price
            patch["peak_pct"] = decision.peak.pct
        if decision.next_stage.is_terminal:
            patch["status"] = PositionStatus.SOLD.value
        return patch

    def _persist_peak(self, position: Position, decision: NoAction) -> bool:
        logger.info(
            f"📈 New peak for {position.label}: ${decision.peak.price:.8f} (+{decision.peak.pct:.1f}%)"
        )
        try:
            self.store.update_position(
                position.id,
                {"peak_price": decision.peak.price, "peak_pct": decision.peak.pct},
                expected_version=position.version,
            )
        except PersistenceFailure as e:
            logger.warning(f"Failed to persist new peak for {position.id}: {e.reason}")
            self._metric("record_persistence_failure", "peak")
            return False
        return True

    def _notify(self, position: Position, decision: Exit, result: ExecutionResult) -> None:
        if self.notifier is None:
            return
        tag = "[TEST] " if position.is_test else ""
        if decision.reason == ExitReason.TP1:
            moon_bag = 100.0 - decision.percent
            subject = f"{tag}Scalp TP Hit: {position.label} +{decision.price_change_pct:.0f}%"
            message = (
                f"Sold {decision.percent:.0f}% at +{decision.price_change_pct:.1f}%, "
                f"keeping {moon_bag:.0f}% moon bag. Moon bag peak tracking started."
            )
            severity = "success"
        else:
            subject = (
                f"{tag}Moon Bag Dump Exit: {position.label} "
                f"-{(decision.drop_from_peak_pct or 0.0):.0f}% from peak"
            )
            message = (
                f"Sold remaining moon bag after {(decision.drop_from_peak_pct or 0.0):.1f}% drop "
                f"from peak price of ${(position.peak_price or 0.0):.6f}. Current: ${result.price:.6f}"
            )
            severity = "warning"

        try:
            self.notifier.notify_recipient(self.recipient, subject, message, severity)
        except NotifierFailure as e:
            logger.warning(f"Notification failed for {position.id} ({decision.reason.value}): {e}")
        except Exception as e:
            logger.warning(
                f"Notifier error for {position.id} ({decision.reason.value}), exit stays committed: {e}"
            )

    def _metric(self, method: str, *args) -> None:
        if self.metrics is not None:
            getattr(self.metrics, method)(*args)