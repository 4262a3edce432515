"""
tally.engine.events — Forum Event Envelopes & EventBus
=======================================================

The forum emits a handful of domain events that carry currency
consequences.  Each is normalized into a frozen dataclass before it
reaches the reward listeners.

The :class:`EventBus` is constructed once at startup and passed to
whoever registers listeners.  Registration ends with :meth:`freeze`;
after that the handler table is read-only and only :meth:`emit` is valid.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

__all__ = [
    "TOPIC_CREATED",
    "POST_CREATED",
    "POST_LIKED",
    "TopicCreated",
    "PostCreated",
    "PostLiked",
    "EventBus",
]

logger = logging.getLogger(__name__)

TOPIC_CREATED = "topic.created"
POST_CREATED = "post.created"
POST_LIKED = "post.liked"

Handler = Callable[[Any], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event envelopes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TopicCreated:
    topic_id: int
    user_id: int
    title: str = ""


@dataclass(frozen=True, slots=True)
class PostCreated:
    """A post in a topic.  ``post_number == 1`` is the topic's opening post."""

    post_id: int
    topic_id: int
    user_id: int
    post_number: int


@dataclass(frozen=True, slots=True)
class PostLiked:
    """*user_id* liked *post_id*, which was written by *post_author_id*."""

    post_id: int
    post_author_id: int
    user_id: int


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------
class EventBus:
    """In-process async pub/sub with an explicit registration phase.

    Usage::

        bus = EventBus()
        bus.on(POST_LIKED, on_post_liked)
        bus.freeze()

        await bus.emit(POST_LIKED, PostLiked(post_id=7, post_author_id=1, user_id=2))

    A failing handler is logged and skipped; it never fails the emitter
    or the handlers registered after it.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def on(self, event_name: str, handler: Handler) -> None:
        if self._frozen:
            raise RuntimeError(
                f"EventBus is frozen; cannot register a handler for {event_name!r}"
            )
        self._handlers[event_name].append(handler)
        logger.debug("Registered %s for %s", getattr(handler, "__name__", handler), event_name)

    def freeze(self) -> None:
        self._frozen = True
        logger.info(
            "EventBus frozen with %d handler(s) across %d event(s)",
            sum(len(h) for h in self._handlers.values()),
            len(self._handlers),
        )

    def handlers(self, event_name: str) -> tuple[Handler, ...]:
        return tuple(self._handlers.get(event_name, ()))

    async def emit(self, event_name: str, payload: Any) -> int:
        """Run every handler for *event_name* in registration order.

        Returns the number of handlers that completed without raising.
        """
        succeeded = 0
        for handler in self.handlers(event_name):
            try:
                await handler(payload)
            except Exception:
                logger.exception("Handler %r failed for %s", handler, event_name)
            else:
                succeeded += 1
        return succeeded
