"""
Fire-and-forget publication of download events to any number of observers.
"""

import logging
from collections.abc import Callable, Iterable

from hls_offline.models.events import TimeRange

log = logging.getLogger(__name__)

Subscriber = Callable[[object], None]


def percent_from_bytes(bytes_written: int, bytes_expected: int) -> float | None:
    """Fraction of a discrete file transferred, or None if the size is unknown."""
    if bytes_expected <= 0:
        return None
    return bytes_written / bytes_expected


def percent_from_time_ranges(
    loaded_ranges: Iterable[TimeRange], expected_duration: float
) -> float | None:
    """
    Sums `duration / expected_duration` over every loaded range.

    Overlapping ranges are counted twice, so the result is not clamped and can
    briefly exceed 1.0 during multi-range loads.
    """
    if expected_duration <= 0:
        return None
    return sum(r.duration / expected_duration for r in loaded_ranges)


class EventNotifier:
    """Delivers each published event to every current subscriber, in order."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Registers `callback`; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: object) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.warning(
                    f"Event subscriber {callback!r} failed on {type(event).__name__}: {e}",
                    exc_info=log.getEffectiveLevel() == logging.DEBUG,
                )
