"""
Listener hooks a FleetController exposes to front ends and reporters.

Listeners run synchronously on the event loop that fires the event, in the
order they subscribed. A listener that raises is logged and skipped.
"""

import logging
from collections.abc import Callable, Iterator
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


def _describe(listener: Listener) -> str:
    return getattr(listener, "__qualname__", None) or repr(listener)


class FleetEvent:
    """One named fleet event and its subscribers."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener``; the returned function unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def invoke(self, *args: Any) -> int:
        """Call every listener with ``args``. Returns how many listeners failed."""
        failures = 0
        # Listeners may unsubscribe while being called
        for listener in tuple(self._listeners):
            try:
                listener(*args)
            except Exception:
                failures += 1
                logger.exception(f"Listener {_describe(listener)} for '{self.name}' failed")
        return failures

    def clear(self) -> None:
        self._listeners.clear()


class FleetEvents:
    """The controller's hooks, grouped so a front end can detach in one call.

    metrics_updated(metrics): after every aggregation, with a detached copy.
    threshold_breached(name, value, limit): once per breached threshold.
    stopped(reason): when a running fleet stops.
    """

    def __init__(self) -> None:
        self.metrics_updated = FleetEvent("metrics_updated")
        self.threshold_breached = FleetEvent("threshold_breached")
        self.stopped = FleetEvent("stopped")

    def __iter__(self) -> Iterator[FleetEvent]:
        return iter((self.metrics_updated, self.threshold_breached, self.stopped))

    def clear(self) -> None:
        for event in self:
            event.clear()
