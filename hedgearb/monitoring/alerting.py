"""
Webhook alerting for trading events.

- Generic JSON, Slack and Discord payload formats
- Severity threshold and per-type rate limiting
- Non-critical alerts are batched within a short window
- CRITICAL alerts (unhedged exposure) skip both rate limit and batching
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional

import httpx

from hedgearb.core.event_bus import Event, EventBus, EventType

log = logging.getLogger("hedgearb")


class AlertSeverity(Enum):
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    PARTIAL_FAILURE = auto()
    OUTCOME_UNKNOWN = auto()
    ORDER_FAILED = auto()
    SLIPPAGE = auto()
    POSITION_OPENED = auto()
    POSITION_CLOSED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "symbol": self.symbol,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between alerts of one type
    batch_window_ms: int = 2000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "HedgeArb"
    symbol: Optional[str] = None


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")

        fields = []
        if alert.symbol:
            fields.append({"title": "Symbol", "value": alert.symbol, "short": True})
        fields.append({"title": "Type", "value": alert.alert_type.name, "short": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:6]:
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)

        fields = []
        if alert.symbol:
            fields.append({"name": "Symbol", "value": alert.symbol, "inline": True})
        fields.append({"name": "Type", "value": alert.alert_type.name, "inline": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:6]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Usage:
        manager = configure_alerts(webhook_url=..., webhook_type="slack")
        manager.attach(bus)
        await manager.alert_startup(...)
    """

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[AlertType, int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._client = client
        self._owns_client = client is None
        self.delivered = 0
        self.failed = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._batch_task is not None and not self._batch_task.done():
            await asyncio.gather(self._batch_task, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send_alert(self, alert: Alert) -> bool:
        """
        Deliver (CRITICAL) or queue an alert.

        Returns False if alerting is disabled, no webhook is set, the alert is
        below the severity threshold, or it was rate limited.
        """
        if not self.config.enabled or not self.config.webhook_url:
            log.debug(json.dumps({"event": "alert_not_sent", "title": alert.title}))
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False
        if alert.symbol is None:
            alert.symbol = self.config.symbol

        if alert.severity is AlertSeverity.CRITICAL:
            return await self._deliver_single(alert)

        now_ms = int(time.time() * 1000)
        last_time = self._last_alert_times.get(alert.alert_type, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            log.debug(json.dumps({"event": "alert_rate_limited", "type": alert.alert_type.name}))
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[alert.alert_type] = now_ms
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()
        if not alerts:
            return
        if len(alerts) == 1:
            await self._deliver_single(alerts[0])
        else:
            await self._deliver_batch(alerts)

    async def _deliver_single(self, alert: Alert) -> bool:
        return await self._http_post(self._format_alert(alert))

    async def _deliver_batch(self, alerts: List[Alert]) -> bool:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
        elif self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
        else:
            payload = {"alerts": [alert.to_dict() for alert in alerts]}
        return await self._http_post(payload)

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        client = self._get_client()
        for attempt in range(retries + 1):
            try:
                resp = await client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    self.delivered += 1
                    return True
                log.warning(json.dumps({"event": "alert_delivery_failed", "status": resp.status_code}))
            except httpx.HTTPError as exc:
                log.warning(json.dumps({"event": "alert_delivery_error", "attempt": attempt + 1, "err": str(exc)}))
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        self.failed += 1
        return False

    # ─────────────────────────────────────────────────────────────────────
    # Bus wiring
    # ─────────────────────────────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(EventType.PARTIAL_FAILURE, self.on_event, name="alerts.partial_failure")
        bus.subscribe(EventType.OUTCOME_UNKNOWN, self.on_event, name="alerts.outcome_unknown")
        bus.subscribe(EventType.LEG_FAILED, self.on_event, name="alerts.leg_failed")
        bus.subscribe(EventType.SLIPPAGE_EXCEEDED, self.on_event, name="alerts.slippage")
        bus.subscribe(EventType.POSITION_OPENED, self.on_event, name="alerts.opened")
        bus.subscribe(EventType.POSITION_CLOSED, self.on_event, name="alerts.closed")

    async def on_event(self, event: Event) -> None:
        d = event.data
        if event.type is EventType.PARTIAL_FAILURE:
            await self.alert_partial_failure(**d)
        elif event.type is EventType.OUTCOME_UNKNOWN:
            await self.send_alert(Alert(
                alert_type=AlertType.OUTCOME_UNKNOWN,
                severity=AlertSeverity.CRITICAL,
                title="ORDER OUTCOME UNKNOWN",
                message=(
                    f"{', '.join(d.get('timed_out', []))} timed out; orders may be live. "
                    "Trading halted until both venues are checked."
                ),
                details=d,
            ))
        elif event.type is EventType.LEG_FAILED:
            await self.send_alert(Alert(
                alert_type=AlertType.ORDER_FAILED,
                severity=AlertSeverity.WARNING,
                title="Leg Order Failed",
                message=f"{d.get('venue')} {d.get('side')} failed ({d.get('kind')}): {d.get('err')}",
                details=d,
            ))
        elif event.type is EventType.SLIPPAGE_EXCEEDED:
            await self.send_alert(Alert(
                alert_type=AlertType.SLIPPAGE,
                severity=AlertSeverity.WARNING,
                title="Slippage Above Tolerance",
                message=f"{d.get('venue')} {d.get('side')} slipped {d.get('slippage_pct', 0):.3f}%",
                details=d,
            ))
        elif event.type is EventType.POSITION_OPENED:
            await self.send_alert(Alert(
                alert_type=AlertType.POSITION_OPENED,
                severity=AlertSeverity.INFO,
                title="Position Opened",
                message=f"Entry gap {d.get('entry_gap', 0):.4f}%: A {d.get('leg_a_side')} / B {d.get('leg_b_side')}",
                details=d,
            ))
        elif event.type is EventType.POSITION_CLOSED:
            await self.send_alert(Alert(
                alert_type=AlertType.POSITION_CLOSED,
                severity=AlertSeverity.INFO,
                title="Position Closed",
                message=f"Entry gap {d.get('entry_gap', 0):.4f}% closed at {d.get('exit_gap', 0):.4f}%",
                details=d,
            ))

    # ─────────────────────────────────────────────────────────────────────
    # Convenience methods
    # ─────────────────────────────────────────────────────────────────────

    async def alert_partial_failure(self, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.PARTIAL_FAILURE,
            severity=AlertSeverity.CRITICAL,
            title="UNHEDGED EXPOSURE",
            message=(
                f"{details.get('filled_venue')} {details.get('filled_side')} filled, "
                f"{details.get('failed_venue')} {details.get('failed_side')} failed. "
                + ("A timed-out order may also be live. " if details.get("outcome_unknown") else "")
                + "Trading halted until cleared."
            ),
            details=details,
        ))

    async def alert_startup(self, venues: List[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Engine Started",
            message=f"{self.config.bot_name} watching {' / '.join(venues)}",
            details={"venues": venues, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Engine Shutdown",
            message=f"{self.config.bot_name} shutting down: {reason}",
            details=details,
        ))


_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def configure_alerts(
    webhook_url: Optional[str] = None,
    webhook_type: str = "generic",
    min_severity: AlertSeverity = AlertSeverity.WARNING,
    enabled: bool = True,
    bot_name: str = "HedgeArb",
    symbol: Optional[str] = None,
) -> AlertManager:
    """Configure and return the process-wide alert manager."""
    global _alert_manager
    _alert_manager = AlertManager(AlertConfig(
        webhook_url=webhook_url,
        webhook_type=webhook_type,
        min_severity=min_severity,
        enabled=enabled,
        bot_name=bot_name,
        symbol=symbol,
    ))
    return _alert_manager
