"""
Two-leg order placement for controller decisions.

Both legs go out concurrently, each bounded by its own timeout. The
orchestrator never retries and never unwinds: it reports what happened per
leg and leaves the state consequences to ArbitrageController.reconcile().
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Dict, Mapping, Optional

from hedgearb.core.decisions import (
    Decision,
    ExecutionOutcome,
    LegOrder,
    LegResult,
    OutcomeStatus,
)
from hedgearb.core.errors import OrderError
from hedgearb.core.event_bus import EventBus, EventType
from hedgearb.core.types import Fill, Side
from hedgearb.execution.gateways import OrderGateway

log = logging.getLogger("hedgearb")


def slippage_pct(side: Side, expected: float, actual: float) -> Optional[float]:
    """Adverse slippage in percent; None when either price is unknown."""
    if expected <= 0 or actual <= 0:
        return None
    if side is Side.LONG:
        return (actual - expected) / expected * 100.0
    return (expected - actual) / expected * 100.0


class OrderExecutionOrchestrator:
    def __init__(
        self,
        symbol: str,
        gateways: Mapping[str, OrderGateway],
        order_timeout_sec: float = 5.0,
        slippage_tolerance_pct: float = 0.1,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.symbol = symbol
        self._gateways: Dict[str, OrderGateway] = dict(gateways)
        self.order_timeout_sec = order_timeout_sec
        self.slippage_tolerance_pct = slippage_tolerance_pct
        self._bus = bus

    def _emit(self, event_type: EventType, **data) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, source="orchestrator", **data)

    async def execute(self, decision: Decision) -> ExecutionOutcome:
        results = await asyncio.gather(*(self._place_leg(leg) for leg in decision.legs))
        outcome = ExecutionOutcome(decision=decision, legs=tuple(results))

        if outcome.status is OutcomeStatus.PARTIAL_FAILURE:
            filled = outcome.filled_legs[0]
            failed = outcome.failed_legs[0]
            payload = {
                "decision": decision.kind,
                "filled_venue": filled.leg.venue,
                "filled_side": filled.leg.side.value,
                "filled_qty": filled.fill.quantity,
                "failed_venue": failed.leg.venue,
                "failed_side": failed.leg.side.value,
                "error": str(failed.error),
                "outcome_unknown": outcome.outcome_unknown,
            }
            log.critical(json.dumps({"event": "partial_failure", **payload}))
            self._emit(EventType.PARTIAL_FAILURE, **payload)
        elif outcome.status is OutcomeStatus.FAILED and outcome.outcome_unknown:
            payload = {
                "decision": decision.kind,
                "timed_out": [r.leg.venue for r in outcome.legs if r.error.kind == "timeout"],
                "errors": [str(r.error) for r in outcome.legs],
            }
            log.critical(json.dumps({"event": "execution_outcome_unknown", **payload}))
            self._emit(EventType.OUTCOME_UNKNOWN, **payload)
        elif outcome.status is OutcomeStatus.FAILED:
            log.error(json.dumps({
                "event": "execution_failed",
                "decision": decision.kind,
                "errors": [str(r.error) for r in outcome.legs],
            }))
        else:
            log.info(json.dumps({
                "event": "execution_complete",
                "decision": decision.kind,
                "fills": [
                    {"venue": r.fill.venue, "side": r.fill.side.value, "qty": r.fill.quantity, "px": r.fill.avg_price}
                    for r in outcome.legs
                ],
            }))
        return outcome

    async def _place_leg(self, leg: LegOrder) -> LegResult:
        started = time.perf_counter()
        try:
            fill = await self._submit(leg)
        except OrderError as exc:
            latency_ms = (time.perf_counter() - started) * 1000
            log.error(json.dumps({
                "event": "leg_failed",
                "venue": leg.venue,
                "side": leg.side.value,
                "kind": exc.kind,
                "err": exc.message,
            }))
            self._emit(
                EventType.LEG_FAILED,
                venue=leg.venue,
                side=leg.side.value,
                kind=exc.kind,
                err=exc.message,
                latency_ms=latency_ms,
            )
            return LegResult(leg=leg, error=exc, latency_ms=latency_ms)

        latency_ms = (time.perf_counter() - started) * 1000
        slip = slippage_pct(leg.side, leg.expected_price, fill.avg_price)
        self._emit(
            EventType.LEG_FILLED,
            venue=leg.venue,
            side=leg.side.value,
            qty=fill.quantity,
            price=fill.avg_price,
            expected_price=leg.expected_price,
            slippage_pct=slip,
            latency_ms=latency_ms,
        )
        if slip is not None and slip > self.slippage_tolerance_pct:
            log.warning(json.dumps({
                "event": "slippage_exceeded",
                "venue": leg.venue,
                "side": leg.side.value,
                "expected": leg.expected_price,
                "actual": fill.avg_price,
                "slippage_pct": round(slip, 4),
                "tolerance_pct": self.slippage_tolerance_pct,
            }))
            self._emit(
                EventType.SLIPPAGE_EXCEEDED,
                venue=leg.venue,
                side=leg.side.value,
                slippage_pct=slip,
                tolerance_pct=self.slippage_tolerance_pct,
            )
        return LegResult(leg=leg, fill=fill, latency_ms=latency_ms, slippage_pct=slip)

    async def _submit(self, leg: LegOrder) -> Fill:
        gateway = self._gateways.get(leg.venue)
        if gateway is None:
            raise OrderError(leg.venue, leg.side.value, "no_gateway")
        try:
            return await asyncio.wait_for(
                gateway.place_order(self.symbol, leg.side, leg.quantity, reduce_only=leg.reduce_only),
                timeout=self.order_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise OrderError(leg.venue, leg.side.value, "timeout", f"no response in {self.order_timeout_sec}s") from exc
        except OrderError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Any other gateway error fails only this leg.
            raise OrderError(leg.venue, leg.side.value, "unexpected", repr(exc)) from exc

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()
