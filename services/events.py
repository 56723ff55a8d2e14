"""Observer registry used to publish processing progress to the UI layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Set


Listener = Callable[[Any], None]


class EventHub:
    """Per-instance subscribe/emit registry.

    Listeners run on the emitting thread; a failing listener is logged and
    never interrupts the emitter or the other listeners.
    """

    def __init__(self, events: Iterable[str], logger: logging.Logger):
        self._listeners: Dict[str, Set[Listener]] = {name: set() for name in events}
        self._logger = logger

    def subscribe(self, event: str, callback: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].add(callback)

    def unsubscribe(self, event: str, callback: Listener) -> None:
        if event not in self._listeners:
            return
        self._listeners[event].discard(callback)

    def emit(self, event: str, payload: Any) -> None:
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                self._logger.exception("Listener for %s failed", event)


__all__ = ["EventHub", "Listener"]
