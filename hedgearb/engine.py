"""
ArbitrageEngine: wires feeds, the controller and order execution together.

Feed tasks call on_price_update/on_depth_update, which write the PriceStore and
wake the evaluation task. The evaluation task runs one controller cycle per
wake-up and, when a decision comes out, places both legs and reconciles.

Order placement is shielded: cancelling the evaluation loop never abandons a
pair of legs half way; shutdown() waits for the in-flight pair and its
reconciliation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Union

from hedgearb.core.decisions import Decision, ExecutionOutcome, UnhedgedExposure
from hedgearb.core.event_bus import EventBus
from hedgearb.core.types import DepthBook, DepthUpdate, PositionState, PriceUpdate, SyntheticQuote
from hedgearb.execution.orchestrator import OrderExecutionOrchestrator
from hedgearb.market_data.price_store import PriceStore, UpdateResult
from hedgearb.strategy.controller import ArbitrageController

log = logging.getLogger("hedgearb")


@dataclass(frozen=True)
class EngineSnapshot:
    prices: Mapping[str, float]
    depth: Mapping[str, DepthBook]
    quotes: Dict[str, SyntheticQuote]
    state: PositionState
    gap_ab: Optional[float]
    gap_ba: Optional[float]
    exposure: Optional[UnhedgedExposure]
    in_flight: bool
    taken_at: float


class ArbitrageEngine:
    def __init__(
        self,
        store: PriceStore,
        controller: ArbitrageController,
        orchestrator: OrderExecutionOrchestrator,
        bus: Optional[EventBus] = None,
        idle_eval_sec: float = 1.0,
    ) -> None:
        self.store = store
        self.controller = controller
        self.orchestrator = orchestrator
        self.bus = bus
        self._idle_eval_sec = idle_eval_sec
        self._wake = asyncio.Event()
        self._running = False
        self._inflight: Optional[asyncio.Task] = None
        self.cycles = 0
        self.decisions = 0

    # ========== Feed entry points ==========

    def on_price_update(self, update: PriceUpdate) -> UpdateResult:
        result = self.store.upsert(update.venue, update.price)
        if result is UpdateResult.STORED:
            self._wake.set()
        return result

    def on_depth_update(self, update: DepthUpdate) -> UpdateResult:
        result = self.store.upsert_depth(update)
        if result is UpdateResult.STORED:
            self._wake.set()
        return result

    def on_update(self, update: Union[PriceUpdate, DepthUpdate]) -> UpdateResult:
        """Single callback for FeedAdapter."""
        if isinstance(update, DepthUpdate):
            return self.on_depth_update(update)
        return self.on_price_update(update)

    # ========== Evaluation ==========

    async def run_once(self, now: Optional[float] = None) -> Optional[ExecutionOutcome]:
        """One controller cycle; places and reconciles orders if it decides."""
        self.cycles += 1
        decision = self.controller.evaluate(now)
        if decision is None:
            return None
        self.decisions += 1
        task = asyncio.ensure_future(self._execute(decision))
        self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def _execute(self, decision: Decision) -> ExecutionOutcome:
        try:
            outcome = await self.orchestrator.execute(decision)
        except Exception:
            log.exception(json.dumps({"event": "execution_crashed", "decision": decision.kind}))
            raise
        self.controller.reconcile(decision, outcome)
        return outcome

    async def run_evaluation_loop(self) -> None:
        self._running = True
        log.info(json.dumps({"event": "evaluation_loop_started"}))
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._idle_eval_sec)
            except asyncio.TimeoutError:
                # Idle tick: depth staleness is re-checked without new data.
                pass
            self._wake.clear()
            if not self._running:
                break
            await self.run_once()

    def stop(self) -> None:
        self._running = False
        self._wake.set()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop evaluating and wait for an in-flight leg pair to be reconciled."""
        self.stop()
        task = self._inflight
        if task is not None and not task.done():
            log.warning(json.dumps({"event": "shutdown_waiting_for_inflight"}))
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                log.critical(json.dumps({"event": "shutdown_inflight_unreconciled"}))
        self._inflight = None
        log.info(json.dumps({"event": "engine_stopped", "cycles": self.cycles, "decisions": self.decisions}))

    # ========== Read-only ==========

    def try_snapshot(self) -> Optional[EngineSnapshot]:
        """Consistent view for monitors, or None if either lock is busy."""
        view = self.store.try_market_view()
        if view is None:
            return None
        ctl = self.controller.try_snapshot()
        if ctl is None:
            return None
        return EngineSnapshot(
            prices=view.prices,
            depth=view.depth,
            quotes=ctl.quotes,
            state=ctl.state,
            gap_ab=ctl.gap_ab,
            gap_ba=ctl.gap_ba,
            exposure=ctl.exposure,
            in_flight=ctl.in_flight,
            taken_at=time.time(),
        )
