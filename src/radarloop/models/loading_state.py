"""
Loading State
=============

Per-frame loading state: a small tagged union.

States:
    PENDING   - not started (or reset after cancellation)
    LOADING   - first fetch in flight
    RETRYING  - retry fetch in flight, carries the attempt number
    SUCCESS   - image available
    FAILED    - last fetch failed, carries the error and attempt count
    SKIPPED   - deliberately excluded from a round (reserved)

Transitions:
    PENDING  -> LOADING             fetch started
    LOADING  -> SUCCESS | FAILED    result applied
    LOADING  -> PENDING             cancelled
    FAILED   -> RETRYING            retry scheduled
    RETRYING -> SUCCESS | FAILED    result applied
    RETRYING -> PENDING             cancelled

Equality ignores error identity: two FAILED states are equal when their
attempt counts match.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from radarloop.models.errors import FrameFetchError


class LoadingPhase(str, Enum):
    """Discrete loading phases."""

    PENDING = "pending"
    LOADING = "loading"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, eq=False, slots=True)
class LoadingState:
    """
    Loading phase plus its payload.

    Attributes:
        phase: Current phase
        attempt: Attempt number (RETRYING, FAILED), 0 otherwise
        error: Failure cause (FAILED only)
    """

    phase: LoadingPhase
    attempt: int = 0
    error: Optional[FrameFetchError] = None

    @classmethod
    def pending(cls) -> "LoadingState":
        return cls(LoadingPhase.PENDING)

    @classmethod
    def loading(cls) -> "LoadingState":
        return cls(LoadingPhase.LOADING)

    @classmethod
    def retrying(cls, attempt: int) -> "LoadingState":
        return cls(LoadingPhase.RETRYING, attempt=attempt)

    @classmethod
    def success(cls) -> "LoadingState":
        return cls(LoadingPhase.SUCCESS)

    @classmethod
    def failed(cls, error: FrameFetchError, attempt: int) -> "LoadingState":
        return cls(LoadingPhase.FAILED, attempt=attempt, error=error)

    @classmethod
    def skipped(cls) -> "LoadingState":
        return cls(LoadingPhase.SKIPPED)

    @property
    def is_in_flight(self) -> bool:
        return self.phase in (LoadingPhase.LOADING, LoadingPhase.RETRYING)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LoadingState):
            return NotImplemented
        return self.phase == other.phase and self.attempt == other.attempt

    def __hash__(self) -> int:
        return hash((self.phase, self.attempt))

    def __repr__(self) -> str:
        if self.phase is LoadingPhase.FAILED:
            return f"LoadingState(failed, attempt={self.attempt}, error={self.error!r})"
        if self.phase is LoadingPhase.RETRYING:
            return f"LoadingState(retrying, attempt={self.attempt})"
        return f"LoadingState({self.phase.value})"
