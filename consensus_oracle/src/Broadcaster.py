"""Topic-based publishing of oracle snapshots.

The orchestrator only needs ``publish(topic, payload)``; anything with that
method can be plugged in (a websocket hub, a message bus client).
ChannelBroadcaster is the in-process implementation: subscribers register a
callback per topic and a failing subscriber never affects the others or
the publisher.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]


class Broadcaster(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class ChannelBroadcaster:
    """In-process fan-out of payloads to per-topic subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for a topic.

        :param topic: Topic name, e.g. ``prices:BTC``. ``*`` receives all topics.
        :param callback: Called with ``(topic, payload)``.
        :returns: Function that removes the subscription.
        """
        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(topic, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver a payload to the topic's subscribers and to ``*``."""
        with self._lock:
            callbacks = list(self._subscribers.get(topic, []))
            callbacks += self._subscribers.get("*", [])

        for callback in callbacks:
            try:
                callback(topic, payload)
            except Exception as e:
                logger.warning(f"Subscriber for {topic} failed: {e}")
