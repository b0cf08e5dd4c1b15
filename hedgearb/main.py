"""
Entry point wiring all components.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Dict, List, Optional

from hedgearb.app import run_all
from hedgearb.config.config import Settings
from hedgearb.core.event_bus import EventBus
from hedgearb.engine import ArbitrageEngine
from hedgearb.execution.gateways import (
    BinanceFuturesGateway,
    BitmartFuturesGateway,
    OrderGateway,
    PaperGateway,
)
from hedgearb.execution.orchestrator import OrderExecutionOrchestrator
from hedgearb.infra.logging_cfg import build_logger, log_event
from hedgearb.market_data.feeds import FeedAdapter, build_codecs
from hedgearb.market_data.price_store import PriceStore
from hedgearb.monitoring.alerting import AlertSeverity, configure_alerts
from hedgearb.monitoring.dashboard import Dashboard
from hedgearb.monitoring.metrics import ArbMetrics, start_metrics_server
from hedgearb.strategy.controller import ArbitrageController
from hedgearb.strategy.quotes import QuoteBuilderConfig, SyntheticQuoteBuilder

log = logging.getLogger("hedgearb")


def build_gateways(cfg: Settings, builder: SyntheticQuoteBuilder, store: PriceStore) -> Dict[str, OrderGateway]:
    venues = (cfg.venue_a, cfg.venue_b)
    if cfg.dry_run:
        def quote_source(venue: str):
            return builder.build(store.market_view(), venue)
        return {v: PaperGateway(v, quote_source) for v in venues}

    gateways: Dict[str, OrderGateway] = {}
    for venue in venues:
        if venue == "binance":
            gateways[venue] = BinanceFuturesGateway(
                api_key=cfg.binance_api_key,
                secret_key=cfg.binance_secret_key,
                base_url=cfg.binance_base_url,
                qty_decimals=cfg.binance_qty_decimals,
                timeout=cfg.http_timeout,
                venue=venue,
            )
        elif venue == "bitmart":
            gateways[venue] = BitmartFuturesGateway(
                api_key=cfg.bitmart_api_key,
                secret_key=cfg.bitmart_secret_key,
                memo=cfg.bitmart_memo,
                base_url=cfg.bitmart_base_url,
                contract_size=cfg.bitmart_contract_size,
                leverage=cfg.leverage,
                timeout=cfg.http_timeout,
                venue=venue,
            )
        else:
            raise ValueError(f"unsupported venue: {venue}")
    return gateways


def build_feeds(cfg: Settings, engine: ArbitrageEngine, bus: EventBus) -> List[FeedAdapter]:
    urls = {"binance": cfg.binance_ws_url, "bitmart": cfg.bitmart_ws_url}
    use_depth = {"binance": cfg.use_depth_binance, "bitmart": cfg.use_depth_bitmart}
    codecs = build_codecs(
        cfg.symbol,
        cfg.venue_a,
        cfg.venue_b,
        use_depth.get(cfg.venue_a, False),
        use_depth.get(cfg.venue_b, False),
    )
    return [FeedAdapter(urls[c.venue], c, engine.on_update, bus=bus) for c in codecs]


def build_engine(cfg: Settings, bus: EventBus) -> ArbitrageEngine:
    arb = cfg.arbitrage()
    store = PriceStore()
    builder = SyntheticQuoteBuilder(QuoteBuilderConfig(
        target_notional=arb.position_notional,
        half_spread=arb.half_spread,
        depth_stale_after_sec=arb.depth_stale_after_sec,
    ))
    controller = ArbitrageController(arb, store, builder, cfg.venue_a, cfg.venue_b, bus=bus)
    orchestrator = OrderExecutionOrchestrator(
        cfg.symbol,
        build_gateways(cfg, builder, store),
        order_timeout_sec=arb.order_timeout_sec,
        slippage_tolerance_pct=arb.slippage_tolerance_pct,
        bus=bus,
    )
    return ArbitrageEngine(store, controller, orchestrator, bus=bus)


def _status(engine: ArbitrageEngine) -> Optional[dict]:
    snap = engine.try_snapshot()
    if snap is None:
        return None
    return {
        "prices": dict(snap.prices),
        "quotes": {v: {"long": q.long_price, "short": q.short_price, "mode": q.mode.value} for v, q in snap.quotes.items()},
        "gap_ab": snap.gap_ab,
        "gap_ba": snap.gap_ba,
        "position": snap.state.to_dict(),
        "halted": snap.exposure.to_dict() if snap.exposure else None,
        "in_flight": snap.in_flight,
    }


async def main(dashboard: Optional[bool] = None) -> int:
    # Console only until settings name the log file.
    build_logger("hedgearb", file_path=None)
    try:
        cfg = Settings.load()
    except ValueError as exc:
        log.error(json.dumps({"event": "config_invalid", "err": str(exc)}))
        return 1
    build_logger("hedgearb", level=cfg.log_level, file_path=cfg.log_file)
    log_event(log, "settings", **cfg.dump())

    alert_manager = configure_alerts(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.INFO,
        enabled=cfg.alert_enabled,
        symbol=cfg.symbol,
    )

    bus = EventBus()
    metrics = ArbMetrics()
    bus.subscribe_all(metrics.observe, name="metrics")
    alert_manager.attach(bus)

    engine = build_engine(cfg, bus)
    feeds = build_feeds(cfg, engine, bus)
    use_dashboard = cfg.dashboard if dashboard is None else dashboard
    monitor = Dashboard(engine, cfg.venue_a, cfg.venue_b, cfg.symbol) if use_dashboard else None

    srv = None
    if cfg.metrics_port > 0:
        srv = await start_metrics_server(metrics, cfg.metrics_port, status_provider=lambda: _status(engine))

    log_event(log, "startup", symbol=cfg.symbol, venues=[cfg.venue_a, cfg.venue_b], dry_run=cfg.dry_run)
    await alert_manager.alert_startup([cfg.venue_a, cfg.venue_b], symbol=cfg.symbol, dry_run=cfg.dry_run)

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(run_all(engine, feeds, bus, monitor))

    def stop_all() -> None:
        if not run_task.done():
            run_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    exit_code = 0
    reason = "normal"
    try:
        await run_task
    except asyncio.CancelledError:
        log.info(json.dumps({"event": "shutdown_signal"}))
        reason = "signal_received"
    except Exception as exc:
        log.critical(json.dumps({"event": "fatal", "err": str(exc)}))
        reason = "crash"
        exit_code = 1
    finally:
        log.info(json.dumps({"event": "shutdown_begin"}))
        await engine.shutdown(timeout=cfg.order_timeout_sec * 2)
        await engine.orchestrator.close()
        await alert_manager.alert_shutdown(reason)
        await bus.drain()
        await alert_manager.close()
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        if engine.controller.halted:
            log.critical(json.dumps({"event": "exit_with_unhedged_exposure", **engine.controller.exposure.to_dict()}))
        log.info(json.dumps({"event": "shutdown_complete"}))
    return exit_code


def cli(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="hedgearb", description="Two-venue hedged futures arbitrage engine")
    parser.add_argument("--dashboard", action="store_true", default=None, help="show the terminal monitor")
    args = parser.parse_args(argv)
    try:
        code = asyncio.run(main(dashboard=args.dashboard))
    except KeyboardInterrupt:
        print("\nStopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
