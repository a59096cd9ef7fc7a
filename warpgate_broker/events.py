"""Observable value streams published by the broker.

Consumers (a host list, a status bar, a settings form) subscribe to the
broker's streams and are called synchronously whenever a new value is
published. Each stream keeps its latest value so late subscribers can read
the current state without waiting for the next change.
"""

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger("warpgate_broker.events")

T = TypeVar("T")

Listener = Callable[[T], None]


class ValueStream(Generic[T]):
    """A stream of values that remembers the most recent one.

    Example:
        >>> loading = ValueStream(False)
        >>> unsubscribe = loading.subscribe(print)
        >>> loading.publish(True)
        True
        >>> unsubscribe()
        >>> loading.value
        True
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._listeners: List[Listener] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, value: T) -> None:
        """Store a new value and deliver it to every listener.

        A listener that raises is logged and skipped so it cannot starve the
        others or break the broker operation that published the value.
        """
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(f"stream listener failed: {type(e).__name__}: {e}")
