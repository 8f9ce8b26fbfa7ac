"""Best-effort broadcast of monitor events to live subscribers."""
from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from navaid_monitor.services.events import MonitorEvent, to_message

LOGGER = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_S = 30.0


class Sink(Protocol):
    """A subscriber transport. ``send`` must hand off without waiting on the network."""

    def send(self, message: str) -> None: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class Subscription:
    id: str
    name: str
    sink: Sink
    last_ack: float
    delivered: int = 0
    failed: int = 0


class Fanout:
    """Dynamic subscriber set with per-sink isolation and heartbeat liveness.

    A subscriber that has not acknowledged a ping for two heartbeat intervals
    is considered dead and dropped on the next ``heartbeat()``.
    """

    def __init__(
        self,
        *,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._heartbeat_interval_s = heartbeat_interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def heartbeat_interval_s(self) -> float:
        return self._heartbeat_interval_s

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def subscribe(self, sink: Sink, *, name: Optional[str] = None) -> Subscription:
        with self._lock:
            subscription_id = f"sub-{next(self._ids)}"
            subscription = Subscription(
                id=subscription_id,
                name=name or subscription_id,
                sink=sink,
                last_ack=self._clock(),
            )
            self._subscriptions[subscription_id] = subscription
            total = len(self._subscriptions)
        LOGGER.info("Subscriber %s connected (%s total)", subscription.name, total)
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            total = len(self._subscriptions)
        if subscription is None:
            return False
        LOGGER.info("Subscriber %s disconnected (%s total)", subscription.name, total)
        return True

    def acknowledge(self, subscription_id: str) -> None:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                subscription.last_ack = self._clock()

    def broadcast(self, message: dict[str, Any]) -> int:
        """Send ``message`` to every subscriber; returns how many accepted it."""
        encoded = json.dumps(message)
        with self._lock:
            targets = list(self._subscriptions.values())

        delivered = 0
        for subscription in targets:
            try:
                subscription.sink.send(encoded)
            except Exception as exc:  # noqa: BLE001
                subscription.failed += 1
                LOGGER.warning("Delivery to subscriber %s failed: %s", subscription.name, exc)
                continue
            subscription.delivered += 1
            delivered += 1

        if delivered:
            LOGGER.debug("Broadcast %s to %s subscriber(s)", message.get("type"), delivered)
        return delivered

    def handle_event(self, event: MonitorEvent) -> None:
        self.broadcast(to_message(event))

    def heartbeat(self) -> list[str]:
        """Drop subscribers silent for two intervals, then ping the rest."""
        now = self._clock()
        deadline = 2 * self._heartbeat_interval_s
        with self._lock:
            dead = [s for s in self._subscriptions.values() if now - s.last_ack > deadline]
            for subscription in dead:
                del self._subscriptions[subscription.id]
            alive = list(self._subscriptions.values())

        for subscription in dead:
            LOGGER.warning("Subscriber %s missed heartbeats, dropping", subscription.name)
            _close_quietly(subscription)

        for subscription in alive:
            try:
                subscription.sink.ping()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Heartbeat ping to %s failed: %s", subscription.name, exc)
        return [subscription.id for subscription in dead]

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            _close_quietly(subscription)


def _close_quietly(subscription: Subscription) -> None:
    try:
        subscription.sink.close()
    except Exception as exc:  # noqa: BLE001
        LOGGER.debug("Closing subscriber %s raised: %s", subscription.name, exc)
