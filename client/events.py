"""
client/events.py: Publish/subscribe for session lifecycle events.

SessionClient publishes; the REST layer, the connection supervisor and any
token persistence subscribe. Callbacks may be plain functions or coroutine
functions.

  CREDENTIALS_UPDATED  payload: TokenPair   (login, restore, refresh)
  SESSION_TERMINATED   payload: the SessionError that ended the session,
                       or None for an explicit logout
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

CREDENTIALS_UPDATED = "credentials_updated"
SESSION_TERMINATED = "session_terminated"

Subscriber = Callable[[Any], Any]


class SessionEvents:

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> Callable[[], None]:
        """Registers `callback` for `event`. Returns a function that unsubscribes it."""
        self._subscribers[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

        return unsubscribe

    async def publish(self, event: str, payload: Any = None) -> None:
        """
        Delivers `payload` to every subscriber of `event`, in subscription order.

        A failing subscriber is logged and skipped; the remaining subscribers
        still run.
        """
        for callback in list(self._subscribers[event]):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber %r failed while handling %s", callback, event)
