"""
Tests for the ArbitrageController state machine.

Tests cover:
- Gap computation and direction selection
- Entry threshold and exact exit boundary
- One transition per cycle, no double open
- Reconciliation: success, rollback, partial failure and timeout halts
- PositionState invariants
"""

import pytest

from hedgearb.config.config import ArbitrageConfig
from hedgearb.core.decisions import CloseDecision, ExecutionOutcome, LegResult, OpenDecision
from hedgearb.core.errors import InvariantViolation, OrderError
from hedgearb.core.event_bus import EventType
from hedgearb.core.types import DepthUpdate, Fill, Phase, PositionState, QuoteMode, Side, SyntheticQuote
from hedgearb.strategy.controller import ArbitrageController, compute_gap, exit_reached


def filled(leg):
    return LegResult(leg=leg, fill=Fill(leg.venue, leg.side, leg.quantity, leg.expected_price))


def failed(leg, kind="rejected"):
    return LegResult(leg=leg, error=OrderError(leg.venue, leg.side.value, kind, "test"))


def outcome(decision, *results):
    return ExecutionOutcome(decision=decision, legs=tuple(results))


def success(decision):
    return outcome(decision, *(filled(l) for l in decision.legs))


class StubBuilder:
    """Returns fixed quotes per venue."""

    def __init__(self, quotes):
        self.quotes = quotes

    def build(self, view, venue, now=None):
        return self.quotes[venue]


class TestGapMath:
    def test_compute_gap(self):
        assert compute_gap(101.0, 100.0) == pytest.approx(1.0)
        assert compute_gap(99.0, 100.0) == pytest.approx(-1.0)

    @pytest.mark.parametrize("short_px,long_px", [(100.0, 0.0), (0.0, 100.0), (float("nan"), 1.0), (1.0, float("inf"))])
    def test_invalid_prices_have_no_gap(self, short_px, long_px):
        assert compute_gap(short_px, long_px) is None

    def test_exit_boundary_is_inclusive(self):
        assert exit_reached(1.5, 1.25, 0.25) is True

    @pytest.mark.parametrize("entry,reduction", [(0.7, 0.1), (0.3, 0.1), (1.1, 0.3), (0.909, 0.2), (2.17, 0.07)])
    def test_exit_boundary_inclusive_for_inexact_floats(self, entry, reduction):
        assert exit_reached(entry, entry - reduction, reduction) is True
        assert exit_reached(entry, entry + reduction, reduction) is True

    def test_exit_boundary_epsilon_below(self):
        assert exit_reached(1.5, 1.25 + 1e-9, 0.25) is False
        assert exit_reached(0.7, 0.7 - 0.1 + 1e-9, 0.1) is False

    def test_exit_counts_widening_gap(self):
        assert exit_reached(0.5, 0.8, 0.25) is True


class TestOpen:
    def test_spread_mode_scenario_opens_short_a_long_b(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        assert isinstance(decision, OpenDecision)
        # (99.95 - 99.0495) / 99.0495 * 100
        assert decision.gap == pytest.approx(0.909, abs=1e-3)
        leg_a, leg_b = decision.legs
        assert (leg_a.venue, leg_a.side) == ("binance", Side.SHORT)
        assert (leg_b.venue, leg_b.side) == ("bitmart", Side.LONG)
        assert leg_a.expected_price == pytest.approx(99.95)
        assert leg_b.expected_price == pytest.approx(99.0495)
        assert leg_a.quantity == pytest.approx(100.0 / 99.95)
        assert leg_b.quantity == pytest.approx(100.0 / 99.0495)
        assert not leg_a.reduce_only and not leg_b.reduce_only

    def test_opposite_direction_opens_long_a_short_b(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 101.0)
        decision = controller.evaluate()
        assert isinstance(decision, OpenDecision)
        assert decision.legs[0].side is Side.LONG
        assert decision.legs[1].side is Side.SHORT

    def test_below_threshold_does_nothing(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 100.2)
        assert controller.evaluate() is None
        assert controller.state.phase is Phase.IDLE

    def test_exactly_at_threshold_does_not_open(self, store, bus, clock):
        quotes = {
            "binance": SyntheticQuote("binance", long_price=200.0, short_price=100.3, mode=QuoteMode.DEPTH),
            "bitmart": SyntheticQuote("bitmart", long_price=100.0, short_price=50.0, mode=QuoteMode.DEPTH),
        }
        cfg = ArbitrageConfig(entry_threshold_pct=compute_gap(100.3, 100.0), exit_reduction_pct=0.1)
        ctl = ArbitrageController(cfg, store, StubBuilder(quotes), "binance", "bitmart", bus=bus, clock=clock)
        assert ctl.evaluate() is None

    def test_tie_prefers_short_a(self, arb_config, store, bus, clock):
        quotes = {
            "binance": SyntheticQuote("binance", long_price=100.0, short_price=101.0, mode=QuoteMode.DEPTH),
            "bitmart": SyntheticQuote("bitmart", long_price=100.0, short_price=101.0, mode=QuoteMode.DEPTH),
        }
        ctl = ArbitrageController(arb_config, store, StubBuilder(quotes), "binance", "bitmart", bus=bus, clock=clock)
        decision = ctl.evaluate()
        assert decision.legs[0].side is Side.SHORT
        assert decision.legs[1].side is Side.LONG

    def test_larger_gap_wins(self, arb_config, store, bus, clock):
        quotes = {
            "binance": SyntheticQuote("binance", long_price=100.0, short_price=101.0, mode=QuoteMode.DEPTH),
            "bitmart": SyntheticQuote("bitmart", long_price=100.0, short_price=102.0, mode=QuoteMode.DEPTH),
        }
        ctl = ArbitrageController(arb_config, store, StubBuilder(quotes), "binance", "bitmart", bus=bus, clock=clock)
        decision = ctl.evaluate()
        assert decision.gap == pytest.approx(2.0)
        assert decision.legs[1].side is Side.SHORT

    def test_transition_committed_at_decision_time(self, controller, store, clock):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        st = controller.state
        assert st.phase is Phase.OPEN
        assert st.entry_gap == pytest.approx(decision.gap)
        assert st.leg_a_side is Side.SHORT and st.leg_b_side is Side.LONG
        assert st.opened_at == clock.now
        assert decision.prior == PositionState.idle()

    def test_no_decision_while_in_flight(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        assert controller.evaluate() is not None
        for _ in range(3):
            assert controller.evaluate() is None

    def test_no_double_open(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, success(decision))
        # Same prices: stays OPEN, never re-opens.
        for _ in range(3):
            assert controller.evaluate() is None
        assert controller.state.phase is Phase.OPEN
        assert controller.state.entry_gap == pytest.approx(decision.gap)


class TestQuoteAvailability:
    def test_missing_venue_skips_cycle(self, controller, store, bus):
        store.upsert("binance", 100.0)
        assert controller.evaluate() is None
        events = bus.get_history(EventType.QUOTE_UNAVAILABLE)
        assert events and events[-1].data["venue"] == "bitmart"

    def test_stale_depth_skips_cycle(self, controller, store, clock):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        store.upsert_depth(DepthUpdate("bitmart", asks=((99.0, 100.0),), bids=((98.9, 100.0),), timestamp=clock.now - 60))
        assert controller.evaluate() is None
        assert controller.state.phase is Phase.IDLE

    def test_gap_event_published(self, controller, store, bus):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 100.0)
        controller.evaluate()
        ev = bus.get_history(EventType.GAP_COMPUTED)[-1]
        assert ev.data["gap_ab"] == pytest.approx(compute_gap(99.95, 100.05))
        assert set(ev.data["quotes"]) == {"binance", "bitmart"}


def _open(controller, store):
    store.upsert("binance", 100.0)
    store.upsert("bitmart", 99.0)
    decision = controller.evaluate()
    controller.reconcile(decision, success(decision))
    return decision


class TestClose:
    def test_close_when_gap_converges(self, controller, store):
        opened = _open(controller, store)
        store.upsert("bitmart", 99.9)
        decision = controller.evaluate()
        assert isinstance(decision, CloseDecision)
        assert decision.entry_gap == pytest.approx(opened.gap)
        leg_a, leg_b = decision.legs
        assert leg_a.side is Side.LONG and leg_a.reduce_only
        assert leg_b.side is Side.SHORT and leg_b.reduce_only
        assert leg_a.quantity == pytest.approx(opened.legs[0].quantity)
        assert leg_b.quantity == pytest.approx(opened.legs[1].quantity)
        assert controller.state.phase is Phase.IDLE

    def test_small_move_keeps_position(self, controller, store):
        _open(controller, store)
        store.upsert("bitmart", 99.05)
        assert controller.evaluate() is None
        assert controller.state.phase is Phase.OPEN

    def test_close_success_emits_closed(self, controller, store, bus):
        _open(controller, store)
        store.upsert("bitmart", 99.9)
        decision = controller.evaluate()
        controller.reconcile(decision, success(decision))
        assert controller.state == PositionState.idle()
        assert bus.get_history(EventType.POSITION_CLOSED)

    def test_failed_close_keeps_position_and_retries(self, controller, store, bus):
        _open(controller, store)
        before = controller.state
        store.upsert("bitmart", 99.9)
        decision = controller.evaluate()
        after = controller.reconcile(decision, outcome(decision, failed(decision.legs[0]), failed(decision.legs[1], "http_status")))
        assert after == before
        assert controller.state == before
        assert bus.get_history(EventType.ROLLBACK)

        retry = controller.evaluate()
        assert isinstance(retry, CloseDecision)
        assert retry.prior == before


class TestFailures:
    def test_failed_open_rolls_back_to_idle(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, failed(decision.legs[0]), failed(decision.legs[1])))
        assert controller.state == PositionState.idle()
        assert isinstance(controller.evaluate(), OpenDecision)

    def test_partial_failure_halts(self, controller, store, clock):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, filled(decision.legs[0]), failed(decision.legs[1])))
        assert controller.halted
        exposure = controller.exposure
        assert exposure.filled_venue == "binance"
        assert exposure.filled_side is Side.SHORT
        assert exposure.failed_venue == "bitmart"
        assert exposure.failed_side is Side.LONG
        assert exposure.detected_at == clock.now
        # Committed transition is kept; nothing is decided while halted.
        assert controller.state.phase is Phase.OPEN
        store.upsert("bitmart", 99.9)
        assert controller.evaluate() is None

    def test_clear_halt_resumes(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, failed(decision.legs[0]), filled(decision.legs[1])))
        cleared = controller.clear_halt()
        assert cleared is not None and cleared.filled_venue == "bitmart"
        assert not controller.halted
        assert controller.clear_halt() is None

    def test_timed_out_legs_halt_instead_of_rolling_back(self, controller, store, bus, caplog):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        with caplog.at_level("CRITICAL", logger="hedgearb"):
            state = controller.reconcile(
                decision, outcome(decision, failed(decision.legs[0], "timeout"), failed(decision.legs[1], "timeout"))
            )
        assert state == decision.committed
        assert controller.halted
        exposure = controller.exposure
        assert exposure.outcome_unknown is True
        assert exposure.filled_venue == "binance"
        assert exposure.filled_qty == pytest.approx(decision.legs[0].quantity)
        assert exposure.failed_venue == "bitmart"
        assert not bus.get_history(EventType.ROLLBACK)
        assert "controller_halted" in caplog.text
        assert controller.evaluate() is None

    def test_one_timeout_one_rejection_halts(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, failed(decision.legs[0]), failed(decision.legs[1], "timeout")))
        exposure = controller.exposure
        assert exposure.outcome_unknown is True
        assert exposure.filled_venue == "bitmart"
        assert exposure.failed_venue == "binance"
        assert controller.state.phase is Phase.OPEN

    def test_partial_failure_with_timeout_flags_unknown(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, filled(decision.legs[0]), failed(decision.legs[1], "timeout")))
        assert controller.exposure.outcome_unknown is True
        assert controller.exposure.to_dict()["outcome_unknown"] is True

    def test_reset_position_requires_halt(self, controller):
        with pytest.raises(RuntimeError):
            controller.reset_position()

    def test_reset_position_while_halted(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, outcome(decision, filled(decision.legs[0]), failed(decision.legs[1])))
        controller.reset_position()
        assert controller.state == PositionState.idle()
        assert controller.halted

    def test_reconcile_unknown_decision_is_ignored(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        decision = controller.evaluate()
        controller.reconcile(decision, success(decision))
        state = controller.state
        assert controller.reconcile(decision, outcome(decision, failed(decision.legs[0]), failed(decision.legs[1]))) == state


class TestSnapshot:
    def test_snapshot(self, controller, store):
        store.upsert("binance", 100.0)
        store.upsert("bitmart", 99.0)
        controller.evaluate()
        snap = controller.try_snapshot()
        assert snap.in_flight
        assert snap.state.phase is Phase.OPEN
        assert snap.quotes["binance"].mode is QuoteMode.SPREAD

    def test_snapshot_none_when_busy(self, controller):
        controller._lock.acquire()
        try:
            assert controller.try_snapshot() is None
        finally:
            controller._lock.release()


class TestPositionStateInvariants:
    def test_idle_default(self):
        st = PositionState.idle()
        assert st.phase is Phase.IDLE and not st.is_open

    def test_open_missing_fields(self):
        with pytest.raises(InvariantViolation):
            PositionState(phase=Phase.OPEN, entry_gap=1.0)

    def test_idle_with_fields(self):
        with pytest.raises(InvariantViolation):
            PositionState(entry_gap=1.0)

    def test_same_side_legs(self):
        with pytest.raises(InvariantViolation):
            PositionState(
                phase=Phase.OPEN,
                entry_gap=1.0,
                leg_a_side=Side.LONG,
                leg_b_side=Side.LONG,
                opened_at=0.0,
                leg_a_qty=1.0,
                leg_b_qty=1.0,
            )
