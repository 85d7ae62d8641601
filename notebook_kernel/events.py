from typing import Any, Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EventEmitter(Generic[T]):
    """
    Broadcast channel for kernel signals ("connected", "run finished", ...).

    Every subscriber sees every fired event. A failing subscriber is logged
    and does not prevent the others from being notified.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []

    def subscribe(self, listener: Callable[[T], Any]) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _dispose():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _dispose

    def fire(self, event: T = None) -> None:
        # Iterate over copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener for '{self.name}' failed: {e}", exc_info=True)

    def __len__(self):
        return len(self._listeners)
