"""
Decision values emitted by the controller and outcomes reported by execution.

Decisions carry both the state they replaced (`prior`) and the state they
committed, so a failed execution can be rolled back exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from hedgearb.core.errors import OrderError
from hedgearb.core.types import Fill, PositionState, Side


@dataclass(frozen=True)
class LegOrder:
    venue: str
    side: Side
    quantity: float
    expected_price: float
    reduce_only: bool = False


@dataclass(frozen=True)
class OpenDecision:
    legs: Tuple[LegOrder, LegOrder]
    gap: float
    prior: PositionState
    committed: PositionState
    decided_at: float

    kind = "open"


@dataclass(frozen=True)
class CloseDecision:
    legs: Tuple[LegOrder, LegOrder]
    entry_gap: float
    current_gap: float
    prior: PositionState
    committed: PositionState
    decided_at: float

    kind = "close"


Decision = OpenDecision | CloseDecision


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


@dataclass(frozen=True)
class LegResult:
    leg: LegOrder
    fill: Optional[Fill] = None
    error: Optional[OrderError] = None
    latency_ms: float = 0.0
    # Positive when the fill was worse than the quoted leg price.
    slippage_pct: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.fill is not None


@dataclass(frozen=True)
class ExecutionOutcome:
    decision: Decision
    legs: Tuple[LegResult, LegResult]
    status: OutcomeStatus = field(init=False)

    def __post_init__(self) -> None:
        succeeded = sum(1 for r in self.legs if r.ok)
        if succeeded == len(self.legs):
            status = OutcomeStatus.SUCCESS
        elif succeeded == 0:
            status = OutcomeStatus.FAILED
        else:
            status = OutcomeStatus.PARTIAL_FAILURE
        object.__setattr__(self, "status", status)

    @property
    def failed_legs(self) -> Tuple[LegResult, ...]:
        return tuple(r for r in self.legs if not r.ok)

    @property
    def filled_legs(self) -> Tuple[LegResult, ...]:
        return tuple(r for r in self.legs if r.ok)

    @property
    def outcome_unknown(self) -> bool:
        """A leg timed out, so the venue may have accepted it anyway."""
        return any(r.error is not None and r.error.kind == "timeout" for r in self.legs)


@dataclass(frozen=True)
class UnhedgedExposure:
    """What may be left on the books after a partial failure.

    With `outcome_unknown` set, at least one leg timed out and its order may
    still have been accepted. Both venues must be checked before clearing.
    """
    decision_kind: str
    filled_venue: str
    filled_side: Side
    filled_qty: float
    failed_venue: str
    failed_side: Side
    error: str
    detected_at: float
    outcome_unknown: bool = False

    def to_dict(self) -> dict:
        return {
            "decision": self.decision_kind,
            "filled_venue": self.filled_venue,
            "filled_side": self.filled_side.value,
            "filled_qty": self.filled_qty,
            "failed_venue": self.failed_venue,
            "failed_side": self.failed_side.value,
            "error": self.error,
            "detected_at": self.detected_at,
            "outcome_unknown": self.outcome_unknown,
        }
