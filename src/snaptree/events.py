from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    Listener = Callable[[dict[str, Any]], None]

PIPELINE_START = "pipeline:start"
PIPELINE_COMPLETE = "pipeline:complete"
PIPELINE_ERROR = "pipeline:error"
STAGE_START = "stage:start"
STAGE_COMPLETE = "stage:complete"
STAGE_RECOVER = "stage:recover"
STAGE_ERROR = "stage:error"
FILE_DISCOVERED = "file:discovered"


class EventEmitter:
    """Ordered, synchronous observer registry.

    Listeners for an event fire in registration order. A listener may be
    registered several times and then fires once per registration.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """Register ``listener`` for its first invocation only.

        Returns:
            The wrapper actually registered, usable with :meth:`off`.
        """

        def wrapper(payload: dict[str, Any]) -> None:
            self.off(event, wrapper)
            listener(payload)

        return self.on(event, wrapper)

    def off(self, event: str, listener: Listener) -> None:
        """Remove the first registration of ``listener``; unknown listeners are ignored."""
        registered = self._listeners.get(event, [])
        if listener in registered:
            registered.remove(listener)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event, [])):
            listener(payload)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        self._listeners.clear()
