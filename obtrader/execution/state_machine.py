"""Position status state machine."""
from __future__ import annotations

from dataclasses import dataclass

from obtrader.models import PositionStatus


@dataclass(frozen=True)
class PositionStateMachine:
    """Enforces allowed position status transitions."""

    transitions: dict[PositionStatus, set[PositionStatus]] = None

    def __post_init__(self) -> None:
        if self.transitions is None:
            object.__setattr__(
                self,
                "transitions",
                {
                    PositionStatus.PENDING: {
                        PositionStatus.OPEN,
                        PositionStatus.FAILED,
                        PositionStatus.CANCELLED,
                    },
                    PositionStatus.OPEN: {PositionStatus.CLOSED},
                    PositionStatus.CLOSED: set(),
                    PositionStatus.FAILED: set(),
                    PositionStatus.CANCELLED: set(),
                },
            )

    def can_transition(self, current: PositionStatus, target: PositionStatus) -> bool:
        return target in self.transitions.get(current, set())

    def transition(self, current: PositionStatus, target: PositionStatus) -> PositionStatus:
        if not self.can_transition(current, target):
            raise ValueError(f"Invalid position status transition: {current} -> {target}")
        return target


POSITION_STATES = PositionStateMachine()
