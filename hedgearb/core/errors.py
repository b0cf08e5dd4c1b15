"""
Exception taxonomy for the arbitrage engine.

Feed and quote errors are recoverable per cycle; OrderError is surfaced per
leg; InvariantViolation signals a position state that must never exist.
"""

from __future__ import annotations

from typing import Optional


class HedgeArbError(Exception):
    """Base class for all engine errors."""


class FeedError(HedgeArbError):
    """Malformed or incomplete feed payload. The message is dropped."""

    def __init__(self, venue: str, message: str, raw: Optional[str] = None) -> None:
        super().__init__(f"{venue}: {message}")
        self.venue = venue
        self.raw = raw


class QuoteUnavailable(HedgeArbError):
    """A venue has no usable price this cycle."""

    def __init__(self, venue: str, reason: str) -> None:
        super().__init__(f"{venue}: {reason}")
        self.venue = venue
        self.reason = reason


class StaleDepthError(QuoteUnavailable):
    """Depth book is too old, has an empty side, or is too thin to price."""


class OrderError(HedgeArbError):
    """A single leg order failed (signing, transport, timeout or venue rejection)."""

    def __init__(self, venue: str, side: str, kind: str, message: str = "") -> None:
        super().__init__(f"{venue} {side} {kind}: {message}" if message else f"{venue} {side} {kind}")
        self.venue = venue
        self.side = side
        self.kind = kind
        self.message = message


class InvariantViolation(HedgeArbError):
    """Raised when a half-described position state is constructed."""
