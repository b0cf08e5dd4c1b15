"""
Prometheus metrics for the arbitrage engine, fed from the event bus.

Organized into: evaluation, transitions, legs, feeds.

`ArbMetrics.observe` is subscribed to every bus event, so nothing on the
decision path touches a metric directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from hedgearb.core.event_bus import Event, EventType

log = logging.getLogger("hedgearb")


class ArbMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Evaluation ===
        self.gap_pct = Gauge(
            'gap_pct',
            'Latest executable gap (%) per direction',
            labelnames=['direction'],
            registry=reg
        )
        self.quote_price = Gauge(
            'quote_price',
            'Latest synthetic quote per venue and side',
            labelnames=['venue', 'side'],
            registry=reg
        )
        self.quotes_unavailable = Counter(
            'quotes_unavailable_total',
            'Cycles skipped because a venue could not be priced',
            labelnames=['venue'],
            registry=reg
        )

        # === Transitions ===
        self.position_open = Gauge(
            'position_open',
            '1 while a hedged position is open',
            registry=reg
        )
        self.transitions = Counter(
            'transitions_total',
            'Committed position transitions',
            labelnames=['kind'],
            registry=reg
        )
        self.rollbacks = Counter(
            'rollbacks_total',
            'Decisions rolled back after both legs failed',
            labelnames=['kind'],
            registry=reg
        )
        self.entry_gap_pct = Histogram(
            'entry_gap_pct',
            'Gap at entry (%)',
            buckets=[0.1, 0.2, 0.3, 0.5, 0.75, 1.0, 2.0, 5.0],
            registry=reg
        )
        self.hold_time_sec = Histogram(
            'hold_time_sec',
            'Seconds between open and close',
            buckets=[1, 5, 30, 60, 300, 900, 3600, 14400],
            registry=reg
        )

        # === Legs ===
        self.legs_filled = Counter(
            'legs_filled_total',
            'Leg orders filled',
            labelnames=['venue', 'side'],
            registry=reg
        )
        self.legs_failed = Counter(
            'legs_failed_total',
            'Leg orders failed',
            labelnames=['venue', 'kind'],
            registry=reg
        )
        self.leg_latency_ms = Histogram(
            'leg_latency_ms',
            'Leg submit-to-fill latency (milliseconds)',
            labelnames=['venue'],
            buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )
        self.slippage_exceeded = Counter(
            'slippage_exceeded_total',
            'Fills worse than the slippage tolerance',
            labelnames=['venue'],
            registry=reg
        )
        self.partial_failures = Counter(
            'partial_failures_total',
            'Decisions where exactly one leg filled',
            registry=reg
        )
        self.outcome_unknown = Counter(
            'outcome_unknown_total',
            'Decisions halted because no leg filled and a leg timed out',
            registry=reg
        )

        # === Feeds ===
        self.feed_errors = Counter(
            'feed_errors_total',
            'Malformed feed messages dropped',
            labelnames=['venue'],
            registry=reg
        )

        self._handlers: Dict[EventType, Callable[[Dict[str, Any]], None]] = {
            EventType.GAP_COMPUTED: self._on_gap,
            EventType.QUOTE_UNAVAILABLE: lambda d: self.quotes_unavailable.labels(venue=d.get("venue", "")).inc(),
            EventType.POSITION_OPENED: self._on_opened,
            EventType.POSITION_CLOSED: self._on_closed,
            EventType.ROLLBACK: lambda d: self.rollbacks.labels(kind=d.get("kind", "")).inc(),
            EventType.LEG_FILLED: self._on_leg_filled,
            EventType.LEG_FAILED: self._on_leg_failed,
            EventType.PARTIAL_FAILURE: lambda d: self.partial_failures.inc(),
            EventType.OUTCOME_UNKNOWN: lambda d: self.outcome_unknown.inc(),
            EventType.SLIPPAGE_EXCEEDED: lambda d: self.slippage_exceeded.labels(venue=d.get("venue", "")).inc(),
            EventType.FEED_ERROR: lambda d: self.feed_errors.labels(venue=d.get("venue", "")).inc(),
        }

    def observe(self, event: Event) -> None:
        handler = self._handlers.get(event.type)
        if handler is not None:
            handler(event.data)

    def _on_gap(self, data: Dict[str, Any]) -> None:
        if data.get("gap_ab") is not None:
            self.gap_pct.labels(direction="a_short_b_long").set(data["gap_ab"])
        if data.get("gap_ba") is not None:
            self.gap_pct.labels(direction="b_short_a_long").set(data["gap_ba"])
        for venue, q in (data.get("quotes") or {}).items():
            self.quote_price.labels(venue=venue, side="long").set(q["long"])
            self.quote_price.labels(venue=venue, side="short").set(q["short"])

    def _on_opened(self, data: Dict[str, Any]) -> None:
        self.position_open.set(1)
        self.transitions.labels(kind="open").inc()
        if data.get("entry_gap") is not None:
            self.entry_gap_pct.observe(data["entry_gap"])

    def _on_closed(self, data: Dict[str, Any]) -> None:
        self.position_open.set(0)
        self.transitions.labels(kind="close").inc()
        if data.get("held_sec") is not None:
            self.hold_time_sec.observe(data["held_sec"])

    def _on_leg_filled(self, data: Dict[str, Any]) -> None:
        venue = data.get("venue", "")
        self.legs_filled.labels(venue=venue, side=data.get("side", "")).inc()
        if data.get("latency_ms") is not None:
            self.leg_latency_ms.labels(venue=venue).observe(data["latency_ms"])

    def _on_leg_failed(self, data: Dict[str, Any]) -> None:
        venue = data.get("venue", "")
        self.legs_failed.labels(venue=venue, kind=data.get("kind", "")).inc()
        if data.get("latency_ms") is not None:
            self.leg_latency_ms.labels(venue=venue).observe(data["latency_ms"])

    def render(self) -> bytes:
        return generate_latest(self.registry)


async def start_metrics_server(
    metrics: ArbMetrics,
    port: int,
    status_provider: Optional[Callable[[], Optional[Dict[str, Any]]]] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Serve:
    - GET /metrics - Prometheus text format
    - GET /status  - engine snapshot JSON (503 when no consistent view is available)
    - GET /health  - liveness
    """
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path = "/"
        first_line = req.split(b"\r\n", 1)[0]
        parts = first_line.split(b" ")
        if len(parts) >= 2:
            path = urlparse(parts[1].decode("utf-8", errors="ignore")).path

        if path == "/health":
            status, ctype, body = b"200 OK", b"application/json", b'{"healthy": true}'
        elif path == "/status" and status_provider is not None:
            snap = status_provider()
            if snap is None:
                status, ctype, body = b"503 Service Unavailable", b"application/json", b'{"busy": true}'
            else:
                status, ctype, body = b"200 OK", b"application/json", json.dumps(snap, default=str).encode()
        else:
            status, ctype, body = b"200 OK", CONTENT_TYPE_LATEST.encode(), metrics.render()

        writer.write(
            b"HTTP/1.1 " + status + b"\r\n"
            b"Content-Type: " + ctype + b"\r\n"
            b"Connection: close\r\n\r\n"
            + body
        )
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, host, port)
    log.info(json.dumps({"event": "metrics_server_started", "port": port}))
    return server
