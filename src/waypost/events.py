"""
Change notifications.

Observers (a UI, a cache, a test) subscribe to named change events. Bulk
operations such as restore post each event once when they finish rather
than once per row.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable

logger = logging.getLogger(__name__)

VISITS_CHANGED = "visits_changed"
TAXONOMY_CHANGED = "taxonomy_changed"

Observer = Callable[[str], None]


class ChangeNotifier:
    """Thread-safe name -> observers registry."""

    def __init__(self) -> None:
        self._observers: dict[str, list[Observer]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, observer: Observer) -> Callable[[], None]:
        """
        Register an observer for an event.

        Returns:
            A callable that removes the subscription.
        """
        with self._lock:
            self._observers[event].append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers[event]:
                    self._observers[event].remove(observer)

        return unsubscribe

    def post(self, event: str) -> None:
        """Invoke every observer of event. Observer errors are logged, not raised."""
        with self._lock:
            observers = list(self._observers.get(event, []))

        logger.debug(f"Posting {event} to {len(observers)} observer(s)")
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(f"Observer for {event} failed")
