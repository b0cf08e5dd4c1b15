"""
ArbitrageController: entry/exit state machine for the two-venue hedge.

Thread Safety:
    One lock covers reading the market view, pricing both venues, deciding,
    and writing PositionState. Decisions leave the critical section as
    values; order placement happens in the caller, outside the lock.

Lifecycle of a decision:
    evaluate()  commits the transition and returns Open/CloseDecision
    reconcile() keeps it (both legs filled), rolls it back (no leg filled)
                or halts the controller (one leg filled, or a leg timed out
                and its outcome is unknown)
While a decision is unreconciled or the controller is halted, evaluate()
returns None.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from hedgearb.config.config import ArbitrageConfig
from hedgearb.core.decisions import (
    CloseDecision,
    Decision,
    ExecutionOutcome,
    LegOrder,
    OpenDecision,
    OutcomeStatus,
    UnhedgedExposure,
)
from hedgearb.core.errors import QuoteUnavailable, StaleDepthError
from hedgearb.core.event_bus import EventBus, EventType
from hedgearb.core.types import Phase, PositionState, Side, SyntheticQuote, is_valid_price
from hedgearb.market_data.price_store import PriceStore
from hedgearb.strategy.quotes import SyntheticQuoteBuilder

log = logging.getLogger("hedgearb")


def compute_gap(short_price: float, long_price: float) -> Optional[float]:
    """Percent gap of selling at `short_price` against buying at `long_price`."""
    if not is_valid_price(long_price) or not is_valid_price(short_price):
        return None
    gap = (short_price - long_price) / long_price * 100.0
    return gap if math.isfinite(gap) else None


# Float rounding slack for the inclusive exit boundary.
GAP_TOLERANCE_PCT = 1e-12


def exit_reached(entry_gap: float, current_gap: float, exit_reduction_pct: float) -> bool:
    return abs(entry_gap - current_gap) >= exit_reduction_pct - GAP_TOLERANCE_PCT


def leg_price(quote: SyntheticQuote, side: Side) -> float:
    """Price an order on `side` is expected to execute at on this venue."""
    return quote.long_price if side is Side.LONG else quote.short_price


@dataclass(frozen=True)
class ControllerSnapshot:
    state: PositionState
    quotes: Dict[str, SyntheticQuote]
    gap_ab: Optional[float]
    gap_ba: Optional[float]
    exposure: Optional[UnhedgedExposure]
    in_flight: bool


class ArbitrageController:
    def __init__(
        self,
        config: ArbitrageConfig,
        store: PriceStore,
        builder: SyntheticQuoteBuilder,
        venue_a: str,
        venue_b: str,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.venue_a = venue_a
        self.venue_b = venue_b
        self._store = store
        self._builder = builder
        self._bus = bus
        self._clock = clock
        self._lock = threading.Lock()
        self._state = PositionState.idle()
        self._in_flight: Optional[Decision] = None
        self._exposure: Optional[UnhedgedExposure] = None
        self._quotes: Dict[str, SyntheticQuote] = {}
        self._gap_ab: Optional[float] = None
        self._gap_ba: Optional[float] = None

    @property
    def state(self) -> PositionState:
        return self._state

    @property
    def halted(self) -> bool:
        return self._exposure is not None

    @property
    def exposure(self) -> Optional[UnhedgedExposure]:
        return self._exposure

    def _emit(self, event_type: EventType, **data) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, source="controller", **data)

    # ========== Evaluation ==========

    def evaluate(self, now: Optional[float] = None) -> Optional[Decision]:
        """Run one evaluation cycle. Returns at most one decision."""
        now = now if now is not None else self._clock()
        unavailable: Optional[QuoteUnavailable] = None
        decision: Optional[Decision] = None
        with self._lock:
            if self._exposure is not None or self._in_flight is not None:
                return None
            view = self._store.market_view()
            try:
                qa = self._builder.build(view, self.venue_a, now)
                qb = self._builder.build(view, self.venue_b, now)
            except QuoteUnavailable as exc:
                self._gap_ab = self._gap_ba = None
                unavailable = exc
                self._emit(EventType.QUOTE_UNAVAILABLE, venue=exc.venue, reason=exc.reason)
            else:
                decision = self._decide_locked(qa, qb, now)

        if unavailable is not None:
            event = "depth_stale" if isinstance(unavailable, StaleDepthError) else "quote_unavailable"
            log.debug(json.dumps({"event": event, "venue": unavailable.venue, "reason": unavailable.reason}))
            return None
        if isinstance(decision, OpenDecision):
            log.info(json.dumps({
                "event": "open_decision",
                "gap": decision.gap,
                "legs": [(l.venue, l.side.value, l.quantity) for l in decision.legs],
            }))
        elif isinstance(decision, CloseDecision):
            log.info(json.dumps({
                "event": "close_decision",
                "entry_gap": decision.entry_gap,
                "current_gap": decision.current_gap,
                "reduction": abs(decision.entry_gap - decision.current_gap),
            }))
        return decision

    def _decide_locked(self, qa: SyntheticQuote, qb: SyntheticQuote, now: float) -> Optional[Decision]:
        self._quotes = {self.venue_a: qa, self.venue_b: qb}
        gap_ab = compute_gap(qa.short_price, qb.long_price)
        gap_ba = compute_gap(qb.short_price, qa.long_price)
        self._gap_ab, self._gap_ba = gap_ab, gap_ba
        self._emit(
            EventType.GAP_COMPUTED,
            gap_ab=gap_ab,
            gap_ba=gap_ba,
            phase=self._state.phase.value,
            quotes={v: {"long": q.long_price, "short": q.short_price, "mode": q.mode.value}
                    for v, q in self._quotes.items()},
        )
        if gap_ab is None or gap_ba is None:
            return None

        if self._state.is_open:
            decision = self._decide_close(qa, qb, gap_ab, gap_ba, now)
        else:
            decision = self._decide_open(qa, qb, gap_ab, gap_ba, now)
        if decision is not None:
            self._state = decision.committed
            self._in_flight = decision
        return decision

    def _decide_open(
        self, qa: SyntheticQuote, qb: SyntheticQuote, gap_ab: float, gap_ba: float, now: float
    ) -> Optional[OpenDecision]:
        threshold = self.config.entry_threshold_pct
        ab_ok = gap_ab > threshold
        ba_ok = gap_ba > threshold
        if not ab_ok and not ba_ok:
            return None
        # Larger gap wins; an exact tie goes to A-short/B-long.
        if ab_ok and (not ba_ok or gap_ab >= gap_ba):
            gap, side_a = gap_ab, Side.SHORT
        else:
            gap, side_a = gap_ba, Side.LONG
        side_b = side_a.inverse

        notional = self.config.position_notional
        px_a = leg_price(qa, side_a)
        px_b = leg_price(qb, side_b)
        leg_a = LegOrder(self.venue_a, side_a, notional / px_a, px_a)
        leg_b = LegOrder(self.venue_b, side_b, notional / px_b, px_b)
        committed = PositionState(
            phase=Phase.OPEN,
            entry_gap=gap,
            leg_a_side=side_a,
            leg_b_side=side_b,
            opened_at=now,
            leg_a_qty=leg_a.quantity,
            leg_b_qty=leg_b.quantity,
        )
        return OpenDecision(legs=(leg_a, leg_b), gap=gap, prior=self._state, committed=committed, decided_at=now)

    def _decide_close(
        self, qa: SyntheticQuote, qb: SyntheticQuote, gap_ab: float, gap_ba: float, now: float
    ) -> Optional[CloseDecision]:
        st = self._state
        current = gap_ab if st.leg_a_side is Side.SHORT else gap_ba
        if not exit_reached(st.entry_gap, current, self.config.exit_reduction_pct):
            return None
        close_a = st.leg_a_side.inverse
        close_b = st.leg_b_side.inverse
        legs = (
            LegOrder(self.venue_a, close_a, st.leg_a_qty, leg_price(qa, close_a), reduce_only=True),
            LegOrder(self.venue_b, close_b, st.leg_b_qty, leg_price(qb, close_b), reduce_only=True),
        )
        return CloseDecision(
            legs=legs,
            entry_gap=st.entry_gap,
            current_gap=current,
            prior=st,
            committed=PositionState.idle(),
            decided_at=now,
        )

    # ========== Reconciliation ==========

    def reconcile(self, decision: Decision, outcome: ExecutionOutcome) -> PositionState:
        """Fold an execution outcome back into PositionState."""
        exposure: Optional[UnhedgedExposure] = None
        with self._lock:
            if self._in_flight is not decision:
                state = self._state
                known = False
            else:
                known = True
                self._in_flight = None
                if outcome.status is OutcomeStatus.FAILED and not outcome.outcome_unknown:
                    self._state = decision.prior
                elif outcome.status is not OutcomeStatus.SUCCESS:
                    # Committed state stays: a timed-out leg may still be live.
                    exposure = self._exposure_for(decision, outcome)
                    self._exposure = exposure
                state = self._state

        if not known:
            log.error(json.dumps({"event": "reconcile_unknown_decision", "kind": decision.kind}))
        elif outcome.status is OutcomeStatus.SUCCESS:
            self._emit_transition(decision)
        elif exposure is None:
            log.warning(json.dumps({
                "event": "decision_rolled_back",
                "kind": decision.kind,
                "phase": state.phase.value,
                "errors": [str(r.error) for r in outcome.legs],
            }))
            self._emit(EventType.ROLLBACK, kind=decision.kind, phase=state.phase.value)
        else:
            log.critical(json.dumps({"event": "controller_halted", **exposure.to_dict()}))
        return state

    def _exposure_for(self, decision: Decision, outcome: ExecutionOutcome) -> UnhedgedExposure:
        if outcome.filled_legs:
            filled = outcome.filled_legs[0]
            failed = outcome.failed_legs[0]
            filled_qty = filled.fill.quantity
        else:
            # No confirmed fill: report the timed-out leg at its ordered size.
            filled = next(r for r in outcome.legs if r.error.kind == "timeout")
            failed = next(r for r in outcome.legs if r is not filled)
            filled_qty = filled.leg.quantity
        return UnhedgedExposure(
            decision_kind=decision.kind,
            filled_venue=filled.leg.venue,
            filled_side=filled.leg.side,
            filled_qty=filled_qty,
            failed_venue=failed.leg.venue,
            failed_side=failed.leg.side,
            error=str(failed.error),
            detected_at=self._clock(),
            outcome_unknown=outcome.outcome_unknown,
        )

    def _emit_transition(self, decision: Decision) -> None:
        if isinstance(decision, OpenDecision):
            log.info(json.dumps({"event": "position_opened", **decision.committed.to_dict()}))
            self._emit(EventType.POSITION_OPENED, gap=decision.gap, **decision.committed.to_dict())
        else:
            held_sec = decision.decided_at - decision.prior.opened_at
            log.info(json.dumps({
                "event": "position_closed",
                "entry_gap": decision.entry_gap,
                "exit_gap": decision.current_gap,
                "held_sec": round(held_sec, 3),
            }))
            self._emit(
                EventType.POSITION_CLOSED,
                entry_gap=decision.entry_gap,
                exit_gap=decision.current_gap,
                held_sec=held_sec,
            )

    def clear_halt(self) -> Optional[UnhedgedExposure]:
        """Operator acknowledgement that an unhedged exposure has been handled."""
        with self._lock:
            exposure, self._exposure = self._exposure, None
        if exposure is not None:
            log.warning(json.dumps({"event": "halt_cleared", **exposure.to_dict()}))
        return exposure

    def reset_position(self) -> None:
        """Force IDLE after manual intervention. Only valid while halted."""
        with self._lock:
            if self._exposure is None:
                raise RuntimeError("reset_position requires a halted controller")
            self._state = PositionState.idle()

    # ========== Read-only ==========

    def try_snapshot(self) -> Optional[ControllerSnapshot]:
        if not self._lock.acquire(blocking=False):
            return None
        try:
            return ControllerSnapshot(
                state=self._state,
                quotes=dict(self._quotes),
                gap_ab=self._gap_ab,
                gap_ba=self._gap_ba,
                exposure=self._exposure,
                in_flight=self._in_flight is not None,
            )
        finally:
            self._lock.release()
