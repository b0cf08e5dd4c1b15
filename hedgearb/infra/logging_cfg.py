"""
Structured logging setup for the arbitrage engine.

- Rich console handler for humans
- JSON file handler for the trading event log, written by a background thread
  so the event loop never blocks on disk I/O
- Throttling for events that can fire on every tick (feed errors, stale depth)
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler


CRITICAL_SAFETY = logging.CRITICAL  # Unhedged exposure, halt
ERROR = logging.ERROR               # Failed legs, failed executions
WARNING = logging.WARNING           # Feed reconnects, slippage, rollbacks
INFO = logging.INFO                 # Decisions, fills, transitions
DEBUG = logging.DEBUG               # Per-cycle quote availability

DEFAULT_THROTTLED_EVENTS = frozenset({"feed_error", "quote_unavailable", "depth_stale", "feed_reconnect"})


class JsonFormatter(logging.Formatter):
    """One JSON object per line; JSON messages are merged instead of nested."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        try:
            data = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            data = None
        if isinstance(data, dict):
            payload.update(data)
        else:
            payload["msg"] = msg
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues records for a dedicated writer thread.

    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.handle(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        self._queue.join()
        self._target.flush()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats for the same venue for `cooldown_sec`.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('venue', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def _has_file_handler(logger: logging.Logger) -> bool:
    return any(isinstance(h, (logging.FileHandler, AsyncQueueHandler)) for h in logger.handlers)


def _add_file_handler(logger: logging.Logger, file_path: str, level: int | str, async_file: bool) -> None:
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)
    if async_file:
        async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
        async_handler.setLevel(level)
        logger.addHandler(async_handler)
    else:
        logger.addHandler(file_handler)


def build_logger(
    name: str = "hedgearb",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "trading_log.jsonl",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the engine logger. Idempotent: a second call updates levels and
    attaches the JSON file handler if the first call had none.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON event log path (None disables file logging)
        async_file: Write the file from a background thread
        throttle_warnings: Throttle repetitive per-tick events on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        if file_path and not _has_file_handler(logger):
            _add_file_handler(logger, file_path, level, async_file)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        _add_file_handler(logger, file_path, level, async_file)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "feed_connected", venue="binance")
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
