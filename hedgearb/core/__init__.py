"""
Core package.

Shared value types, decisions, errors and the event bus.
"""

from hedgearb.core.decisions import (
    CloseDecision,
    ExecutionOutcome,
    LegOrder,
    LegResult,
    OpenDecision,
    OutcomeStatus,
    UnhedgedExposure,
)
from hedgearb.core.errors import (
    FeedError,
    HedgeArbError,
    InvariantViolation,
    OrderError,
    QuoteUnavailable,
    StaleDepthError,
)
from hedgearb.core.event_bus import Event, EventBus, EventType, Subscription
from hedgearb.core.types import (
    DepthBook,
    DepthLevel,
    DepthUpdate,
    Fill,
    Phase,
    PositionState,
    PriceUpdate,
    QuoteMode,
    Side,
    SyntheticQuote,
)

__all__ = [
    "CloseDecision",
    "ExecutionOutcome",
    "LegOrder",
    "LegResult",
    "OpenDecision",
    "OutcomeStatus",
    "UnhedgedExposure",
    "FeedError",
    "HedgeArbError",
    "InvariantViolation",
    "OrderError",
    "QuoteUnavailable",
    "StaleDepthError",
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "DepthBook",
    "DepthLevel",
    "DepthUpdate",
    "Fill",
    "Phase",
    "PositionState",
    "PriceUpdate",
    "QuoteMode",
    "Side",
    "SyntheticQuote",
]
