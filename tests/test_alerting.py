"""
Tests for webhook alerting.
"""

import json

import httpx
import pytest

from hedgearb.core.event_bus import Event, EventBus, EventType
from hedgearb.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    WebhookFormatter,
    configure_alerts,
    get_alert_manager,
)

WEBHOOK = "https://hooks.test/alert"


class Recorder:
    def __init__(self, status=200):
        self.status = status
        self.payloads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        return httpx.Response(self.status)


def manager(recorder, **overrides):
    cfg = AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0, symbol="XRPUSDT", **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return AlertManager(cfg, client=client), client


def info_alert(alert_type=AlertType.POSITION_OPENED):
    return Alert(alert_type=alert_type, severity=AlertSeverity.INFO, title="t", message="m")


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_critical_delivered_immediately(self):
        rec = Recorder()
        mgr, client = manager(rec)
        ok = await mgr.alert_partial_failure(
            filled_venue="binance", filled_side="SHORT", failed_venue="bitmart", failed_side="LONG", error="timeout",
        )
        assert ok is True
        assert len(rec.payloads) == 1
        payload = rec.payloads[0]
        assert payload["severity"] == "CRITICAL"
        assert payload["symbol"] == "XRPUSDT"
        assert payload["details"]["failed_venue"] == "bitmart"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_critical_is_never_rate_limited(self):
        rec = Recorder()
        mgr, client = manager(rec)
        await mgr.alert_partial_failure(filled_venue="a")
        await mgr.alert_partial_failure(filled_venue="a")
        assert len(rec.payloads) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_below_threshold_filtered(self):
        rec = Recorder()
        mgr, client = manager(rec, min_severity=AlertSeverity.WARNING)
        assert await mgr.send_alert(info_alert()) is False
        await mgr.close()
        assert rec.payloads == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_disabled(self):
        rec = Recorder()
        mgr, client = manager(rec, enabled=False)
        assert await mgr.alert_partial_failure(filled_venue="a") is False
        assert rec.payloads == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rate_limited_per_type(self):
        rec = Recorder()
        mgr, client = manager(rec, min_severity=AlertSeverity.INFO)
        assert await mgr.send_alert(info_alert()) is True
        await mgr.close()
        assert await mgr.send_alert(info_alert()) is False
        assert await mgr.send_alert(info_alert(AlertType.POSITION_CLOSED)) is True
        await mgr.close()
        assert len(rec.payloads) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_batched_delivery(self):
        rec = Recorder()
        mgr, client = manager(rec, min_severity=AlertSeverity.INFO)
        await mgr.send_alert(info_alert(AlertType.POSITION_OPENED))
        await mgr.send_alert(info_alert(AlertType.POSITION_CLOSED))
        await mgr.close()
        assert len(rec.payloads) == 1
        assert len(rec.payloads[0]["alerts"]) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_delivery_counted(self, monkeypatch):
        rec = Recorder(status=500)
        mgr, client = manager(rec)

        async def no_sleep(_):
            return None

        monkeypatch.setattr("hedgearb.monitoring.alerting.asyncio.sleep", no_sleep)
        assert await mgr.alert_partial_failure(filled_venue="a") is False
        assert mgr.failed == 1
        assert len(rec.payloads) == 3
        await client.aclose()


class TestBusWiring:
    @pytest.mark.asyncio
    async def test_partial_failure_event_alerts(self):
        rec = Recorder()
        mgr, client = manager(rec)
        bus = EventBus()
        mgr.attach(bus)
        bus.emit(EventType.PARTIAL_FAILURE, decision="open", filled_venue="binance", filled_side="SHORT",
                 filled_qty=1.0, failed_venue="bitmart", failed_side="LONG", error="timeout")
        await bus.drain()
        assert rec.payloads[0]["type"] == "PARTIAL_FAILURE"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_outcome_unknown_event_alerts_critical(self):
        rec = Recorder()
        mgr, client = manager(rec)
        bus = EventBus()
        mgr.attach(bus)
        bus.emit(EventType.OUTCOME_UNKNOWN, decision="open", timed_out=["binance", "bitmart"],
                 errors=["binance SHORT timeout", "bitmart LONG timeout"])
        await bus.drain()
        assert rec.payloads[0]["type"] == "OUTCOME_UNKNOWN"
        assert rec.payloads[0]["severity"] == "CRITICAL"
        assert "binance, bitmart timed out" in rec.payloads[0]["message"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_position_opened_event(self):
        rec = Recorder()
        mgr, client = manager(rec, min_severity=AlertSeverity.INFO)
        await mgr.on_event(Event(EventType.POSITION_OPENED, {"entry_gap": 0.9, "leg_a_side": "SHORT",
                                                             "leg_b_side": "LONG"}))
        await mgr.close()
        assert rec.payloads[0]["title"] == "Position Opened"
        assert "0.9000%" in rec.payloads[0]["message"]
        await client.aclose()


class TestFormatters:
    def test_slack(self):
        cfg = AlertConfig(webhook_type="slack")
        alert = Alert(AlertType.SLIPPAGE, AlertSeverity.WARNING, "Slip", "slipped", details={"venue": "bitmart"},
                      symbol="XRPUSDT")
        payload = WebhookFormatter.format_slack(alert, cfg)
        att = payload["attachments"][0]
        assert att["color"] == "#FFA500"
        assert {"title": "Symbol", "value": "XRPUSDT", "short": True} in att["fields"]
        assert {"title": "venue", "value": "bitmart", "short": True} in att["fields"]

    def test_discord(self):
        cfg = AlertConfig(webhook_type="discord")
        alert = Alert(AlertType.PARTIAL_FAILURE, AlertSeverity.CRITICAL, "Unhedged", "m")
        embed = WebhookFormatter.format_discord(alert, cfg)["embeds"][0]
        assert embed["color"] == 0xFF0000
        assert embed["title"] == "Unhedged"


def test_configure_alerts_replaces_global():
    mgr = configure_alerts(webhook_url=WEBHOOK, webhook_type="slack", symbol="XRPUSDT")
    assert get_alert_manager() is mgr
    assert mgr.config.webhook_type == "slack"
