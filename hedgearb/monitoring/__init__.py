"""
Monitoring and observability package.

This package contains alerting, metrics and the terminal monitor.
"""

from hedgearb.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    configure_alerts,
    get_alert_manager,
)
from hedgearb.monitoring.metrics import ArbMetrics, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "configure_alerts",
    "get_alert_manager",
    "ArbMetrics",
    "start_metrics_server",
]
