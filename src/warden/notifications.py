"""Explicit subscription interface for credential, OAuth, and server events.

Subscribers are called synchronously in the order they subscribed. Consumers
that prefer pulling events can open a channel, an ``asyncio.Queue`` that
receives every event published after it was opened.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CREDENTIAL_UPDATED = "credential-updated"
    CREDENTIAL_REMOVED = "credential-removed"
    CONFIG_SAVED = "config-saved"

    SERVER_DEFINITION_ADDED = "server-definition-added"
    SERVER_DEFINITION_UPDATED = "server-definition-updated"
    SERVER_DEFINITION_REMOVED = "server-definition-removed"

    OAUTH_SUCCESS = "oauth-success"
    OAUTH_FAILED = "oauth-failed"
    TOKEN_REFRESHED = "token-refreshed"
    TOKEN_REVOKED = "token-revoked"

    SERVER_REGISTERED = "server-registered"
    SERVER_UNREGISTERED = "server-unregistered"
    SERVER_STARTING = "server-starting"
    SERVER_STARTED = "server-started"
    SERVER_STOPPING = "server-stopping"
    SERVER_STOPPED = "server-stopped"
    SERVER_ERROR = "server-error"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], None]


@dataclass
class _Subscription:
    callback: Subscriber
    kinds: frozenset[EventKind] | None


class EventBus:
    """Delivers events to subscribers and open channels."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._channels: list[asyncio.Queue[Event]] = []

    def subscribe(
        self, callback: Subscriber, kinds: Iterable[EventKind] | None = None
    ) -> Callable[[], None]:
        """Register a callback for events.

        Args:
            callback: Called with each matching Event.
            kinds: Only deliver these kinds. None delivers everything.

        Returns:
            A function that removes the subscription. Safe to call twice.
        """
        subscription = _Subscription(
            callback=callback, kinds=frozenset(kinds) if kinds is not None else None
        )
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def channel(self) -> asyncio.Queue[Event]:
        """Open an unbounded queue that receives every future event."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._channels.append(queue)
        return queue

    def close_channel(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._channels:
            self._channels.remove(queue)

    def publish(self, kind: EventKind, **payload: Any) -> Event:
        """Publish an event to subscribers, then to channels.

        A failing subscriber is logged and does not stop delivery to the rest.
        """
        event = Event(kind=kind, payload=payload)

        for subscription in list(self._subscriptions):
            if subscription.kinds is not None and kind not in subscription.kinds:
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(f"Subscriber for {kind.value} failed: {e}")

        for queue in self._channels:
            queue.put_nowait(event)

        return event
