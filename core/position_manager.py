"""
Position Management: Staged Exit Rules for Scalp Positions

Maps a position snapshot and the current token price to a single exit
decision. Implements stop-loss, primary take-profit with a retained moon bag,
ladder sells at +100% / +300% and peak-relative dump protection.

The rules never touch the store or the executor; the dispatcher applies
whatever `decide()` returns.
"""
import logging
from typing import Optional, Tuple

from core.position import (
    Decision,
    Exit,
    ExitDefaults,
    ExitReason,
    NoAction,
    PeakUpdate,
    Position,
    Stage,
    moon_bag_or_default,
)

logger = logging.getLogger(__name__)

LADDER_100_PCT = 100.0
LADDER_300_PCT = 300.0
LADDER_100_SELL_PCT = 50.0

# (min peak gain %, allowed drop from peak %), highest bucket first
DUMP_THRESHOLDS: Tuple[Tuple[float, float], ...] = (
    (200.0, 50.0),
    (100.0, 40.0),
    (50.0, 30.0),
)
DEFAULT_DUMP_THRESHOLD_PCT = 25.0


def graduated_dump_threshold(peak_pct: Optional[float]) -> float:
    """
    Allowed retrace from peak before dump protection sells.

    The higher the peak gain, the more room the moon bag gets. Lower bounds
    are inclusive: a +100% peak gets the 40% bucket.
    """
    peak = peak_pct or 0.0
    for min_peak_pct, threshold in DUMP_THRESHOLDS:
        if peak >= min_peak_pct:
            return threshold
    return DEFAULT_DUMP_THRESHOLD_PCT


def drop_from_peak_pct(peak_price: float, current_price: float) -> float:
    return round(((peak_price - current_price) / peak_price) * 100.0, 8)


def decide(position: Position, current_price: float) -> Decision:
    """
    Evaluate exit rules for one position at `current_price`.

    Priority (first match wins):
    1. Stop-loss (initial)
    2. Primary take-profit (initial)
    3. Ladder +100% (tp1_hit)
    4. Ladder +300% (tp1_hit, ladder_100)
    5. Dump protection / peak tracking (tp1_hit, ladder_100)

    Thresholds missing on the position fall back to ExitDefaults.
    """
    if position.stage.is_terminal:
        return NoAction()
    if not current_price or current_price <= 0 or not position.entry_price or position.entry_price <= 0:
        return NoAction()

    defaults = ExitDefaults()
    stage = position.stage
    change_pct = position.price_change_pct(current_price)

    if stage == Stage.INITIAL:
        stop_loss_pct = _threshold(position.stop_loss_pct, defaults.stop_loss_pct)
        take_profit_pct = _threshold(position.take_profit_pct, defaults.take_profit_pct)
        moon_bag_pct = moon_bag_or_default(position.moon_bag_pct, defaults.moon_bag_pct)

        if change_pct <= -stop_loss_pct:
            return Exit(
                percent=100.0,
                reason=ExitReason.STOP_LOSS,
                next_stage=Stage.STOPPED_OUT,
                price_change_pct=change_pct,
            )

        if change_pct >= take_profit_pct:
            return Exit(
                percent=100.0 - moon_bag_pct,
                reason=ExitReason.TP1,
                next_stage=Stage.TP1_HIT,
                price_change_pct=change_pct,
                peak=PeakUpdate(price=current_price, pct=change_pct),
            )

        return NoAction()

    if stage == Stage.TP1_HIT and change_pct >= LADDER_100_PCT:
        return Exit(
            percent=LADDER_100_SELL_PCT,
            reason=ExitReason.LADDER_100,
            next_stage=Stage.LADDER_100,
            price_change_pct=change_pct,
            peak=PeakUpdate(price=current_price, pct=change_pct),
        )

    if stage.tracks_peak and change_pct >= LADDER_300_PCT:
        return Exit(
            percent=100.0,
            reason=ExitReason.LADDER_300,
            next_stage=Stage.COMPLETED,
            price_change_pct=change_pct,
        )

    if stage.tracks_peak:
        return _check_dump(position, current_price, change_pct)

    return NoAction()


def _check_dump(position: Position, current_price: float, change_pct: float) -> Decision:
    reference_peak = position.peak_price or position.entry_price
    if current_price > reference_peak:
        return NoAction(peak=PeakUpdate(price=current_price, pct=change_pct))

    if not position.peak_price:
        # Peak tracking never initialised and price is at or below entry
        return NoAction()

    drop_pct = drop_from_peak_pct(position.peak_price, current_price)
    if position.dump_threshold_pct:
        threshold = position.dump_threshold_pct
    else:
        threshold = graduated_dump_threshold(position.peak_pct)

    logger.debug(
        f"[{position.label}] peak=${position.peak_price:.8f}, now=${current_price:.8f}, "
        f"drop={drop_pct:.1f}%, threshold={threshold}%"
    )

    if drop_pct >= threshold:
        return Exit(
            percent=100.0,
            reason=ExitReason.DUMP_EXIT,
            next_stage=Stage.DUMP_EXITED,
            price_change_pct=change_pct,
            drop_from_peak_pct=drop_pct,
        )
    return NoAction()


def _threshold(value: Optional[float], fallback: float) -> float:
    return fallback if value is None else value


class PositionManager:
    """
    Evaluates every open position against the staged exit rules.

    Responsibilities:
    - Fill missing per-position thresholds from configured defaults
    - Return the prepared position together with its decision
    """

    def __init__(self, defaults: Optional[ExitDefaults] = None):
        self.defaults = defaults or ExitDefaults()
        logger.info(
            f"PositionManager initialized: TP={self.defaults.take_profit_pct}%, "
            f"SL={self.defaults.stop_loss_pct}%, moon_bag={self.defaults.moon_bag_pct}%"
        )

    def prepare(self, position: Position) -> Position:
        return position.with_defaults(self.defaults)

    def evaluate(self, position: Position, current_price: float) -> Tuple[Position, Decision]:
        """
        Fill missing thresholds, then decide.

        Returns:
            (prepared position, decision); the dispatcher must be handed the
            prepared copy so executors see the same thresholds as the rules
        """
        prepared = self.prepare(position)
        decision = decide(prepared, current_price)
        logger.debug(
            f"[{prepared.label}] stage={prepared.stage.value}, "
            f"change={prepared.price_change_pct(current_price):.1f}%, "
            f"TP={prepared.take_profit_pct}%, SL={prepared.stop_loss_pct}%"
            f"{' [TEST]' if prepared.is_test else ''} -> {type(decision).__name__}"
        )
        return prepared, decision

