"""Collapse a status stream into one event per funding period boundary.

The exchange repeats the same next-funding timestamp on every status tick
until the period rolls over. A coalescer remembers the last value it saw
for its status key and emits a :class:`FundingEvent` only when that value
changes, however often snapshots arrive.
"""

import logging
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Union
from pydantic import BaseModel
from .models import FundingEvent, StatusSnapshot

logger = logging.getLogger(__name__)

EventCallback = Callable[[FundingEvent], Any]
SnapshotLike = Union[StatusSnapshot, Mapping[str, Any], Sequence[Any]]


class CoalescerState(BaseModel):
    """Per-key tracking state. ``None`` means unarmed."""
    current_period_end_ts: Optional[int] = None

    @property
    def armed(self) -> bool:
        return self.current_period_end_ts is not None


def to_snapshot(snapshot: SnapshotLike) -> StatusSnapshot:
    """Accept a model, its JSON dict form, or a raw status array."""
    if isinstance(snapshot, StatusSnapshot):
        return snapshot
    if isinstance(snapshot, Mapping):
        return StatusSnapshot.model_validate(snapshot)
    return StatusSnapshot.from_raw(snapshot)


class StatusCoalescer:
    """Funding boundary detector for a single status key.

    Snapshots must be delivered in feed order; the object is not safe to
    drive concurrently.
    """

    def __init__(self, status_key: str, on_event: EventCallback):
        if not status_key:
            raise ValueError("status_key must be a non-empty string")
        if not callable(on_event):
            raise TypeError("on_event must be callable")
        self.status_key = status_key
        self.on_event = on_event
        self.state = CoalescerState()

    def handle_snapshot(self, snapshot: SnapshotLike) -> Optional[FundingEvent]:
        """Apply one snapshot; return the emitted event, if any."""
        status = to_snapshot(snapshot)
        previous = self.state.current_period_end_ts

        if previous is None:
            self.state.current_period_end_ts = status.period_end_ts
            logger.debug("[%s] baseline period end %d", self.status_key, status.period_end_ts)
            return None

        if status.period_end_ts == previous:
            return None

        event = FundingEvent(
            status_key=self.status_key,
            status_ts=status.event_ts,
            previous_period_end_ts=previous,
            next_period_end_ts=status.period_end_ts,
            mark_price=status.mark_price,
            funding_rate=status.funding_rate,
        )
        # Baseline moves before the callback runs, so a failing callback
        # cannot cause the same boundary to be emitted twice.
        self.state.current_period_end_ts = status.period_end_ts
        logger.info(
            "[%s] funding boundary %d -> %d at %d (rate=%s, mark=%s)",
            self.status_key, previous, status.period_end_ts, status.event_ts,
            status.funding_rate, status.mark_price,
        )
        try:
            self.on_event(event)
        except Exception:
            logger.exception("[%s] funding event callback failed", self.status_key)
        return event

    def reset(self) -> None:
        """Forget the baseline; the next snapshot is adopted silently."""
        self.state.current_period_end_ts = None


def create(status_key: str, on_event: EventCallback) -> StatusCoalescer:
    return StatusCoalescer(status_key, on_event)


class CoalescerRegistry:
    """Owns one coalescer per status key, created on first use."""

    def __init__(self, on_event: EventCallback):
        self.on_event = on_event
        self._coalescers: Dict[str, StatusCoalescer] = {}

    def get(self, status_key: str) -> StatusCoalescer:
        coalescer = self._coalescers.get(status_key)
        if coalescer is None:
            coalescer = self._coalescers[status_key] = create(status_key, self.on_event)
        return coalescer

    def handle(self, status_key: str, snapshot: SnapshotLike) -> Optional[FundingEvent]:
        return self.get(status_key).handle_snapshot(snapshot)

    def reset(self, status_key: str) -> None:
        coalescer = self._coalescers.get(status_key)
        if coalescer is not None:
            coalescer.reset()

    def reset_all(self) -> None:
        for coalescer in self._coalescers.values():
            coalescer.reset()

    def __contains__(self, status_key: str) -> bool:
        return status_key in self._coalescers

    def __iter__(self) -> Iterator[str]:
        return iter(self._coalescers)
