"""
tally.services.reward_service — Forum Activity Rewards
=======================================================

Turns forum events into ledger grants:

  topic.created → ``rewards.post_topic_amount``   to the author
  post.created  → ``rewards.post_reply_amount``   to the author (replies only)
  post.liked    → ``rewards.receive_like_amount`` to the post author

Amounts come from the ``settings`` table.  Zero disables a reward; a
negative reply amount is a posting fee and is deducted instead.

Likes are deduplicated: the reward is keyed on
``receive_like_<post_id>_<liker_id>`` so like/unlike/like toggling pays
out once.  The key is checked up front and also written as the
transaction's ``idempotency_key``, whose unique index settles races
between concurrent duplicate events.

User-initiated rewards live here too: the daily check-in (base amount
plus a per-day streak bonus, once per calendar day in UTC) and tips to
a post's author, bounded by the ``rewards.reward_min_amount`` and
``rewards.reward_max_amount`` settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING

from tally.database.engine import run_db
from tally.database.models import TransactionType
from tally.engine.events import (
    POST_CREATED,
    POST_LIKED,
    TOPIC_CREATED,
    EventBus,
    PostCreated,
    PostLiked,
    TopicCreated,
)
from tally.errors import (
    AlreadyCheckedInError,
    AmountOutOfRangeError,
    DuplicateTransactionError,
)
from tally.services.settings_service import get_int

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.database.models import Transaction
    from tally.services.ledger_service import LedgerService, TransferResult

logger = logging.getLogger(__name__)

REWARD_EVENT_REFERENCE = "reward_event"

DEFAULT_AMOUNTS: dict[str, int] = {
    "rewards.post_topic_amount": 5,
    "rewards.post_reply_amount": 2,
    "rewards.receive_like_amount": 1,
    "rewards.check_in_base_amount": 10,
    "rewards.check_in_streak_bonus": 5,
    "rewards.reward_min_amount": 1,
    "rewards.reward_max_amount": 1000,
}


def reward_reference_key(event_type: str, *ids: int | str) -> str:
    """Deterministic dedup key, e.g. ``receive_like_42_7``."""
    return "_".join([str(event_type), *(str(i) for i in ids)])


def _reward_amount(engine: Engine, key: str) -> int:
    return get_int(engine, key, DEFAULT_AMOUNTS[key])


# ---------------------------------------------------------------------------
# Synchronous reward functions (run on the DB thread pool)
# ---------------------------------------------------------------------------
def reward_topic_created(
    ledger: LedgerService,
    engine: Engine,
    event: TopicCreated,
    *,
    currency_code: str = "credits",
) -> Transaction | None:
    amount = _reward_amount(engine, "rewards.post_topic_amount")
    if amount <= 0:
        logger.debug("Topic reward disabled (amount=%d)", amount)
        return None

    return ledger.grant(
        event.user_id,
        amount,
        currency_code,
        TransactionType.POST_TOPIC,
        reference_type="topic",
        reference_id=event.topic_id,
        description=f"Created topic: {event.title}" if event.title else "Created topic",
    )


def reward_post_created(
    ledger: LedgerService,
    engine: Engine,
    event: PostCreated,
    *,
    currency_code: str = "credits",
) -> Transaction | None:
    """Reward (or charge for) a reply.  The opening post is covered by the topic reward."""
    if event.post_number == 1:
        return None

    amount = _reward_amount(engine, "rewards.post_reply_amount")
    if amount == 0:
        logger.debug("Reply reward disabled")
        return None

    common = dict(
        reference_type="post",
        reference_id=event.post_id,
        metadata={"topic_id": event.topic_id},
    )
    if amount > 0:
        return ledger.grant(
            event.user_id,
            amount,
            currency_code,
            TransactionType.POST_REPLY,
            description="Posted a reply",
            **common,
        )
    return ledger.deduct(
        event.user_id,
        -amount,
        currency_code,
        TransactionType.POST_REPLY,
        description="Reply posting fee",
        allow_negative=True,
        **common,
    )


def reward_post_liked(
    ledger: LedgerService,
    engine: Engine,
    event: PostLiked,
    *,
    currency_code: str = "credits",
) -> Transaction | None:
    """Reward the author of a liked post, at most once per (post, liker)."""
    if event.post_author_id == event.user_id:
        return None

    key = reward_reference_key(TransactionType.RECEIVE_LIKE, event.post_id, event.user_id)
    existing = ledger.find_transaction(
        TransactionType.RECEIVE_LIKE,
        REWARD_EVENT_REFERENCE,
        key,
        user_id=event.post_author_id,
    )
    if existing is not None:
        logger.debug("Like already rewarded (%s), skipping", key)
        return None

    amount = _reward_amount(engine, "rewards.receive_like_amount")
    if amount <= 0:
        logger.debug("Like reward disabled (amount=%d)", amount)
        return None

    try:
        return ledger.grant(
            event.post_author_id,
            amount,
            currency_code,
            TransactionType.RECEIVE_LIKE,
            reference_type=REWARD_EVENT_REFERENCE,
            reference_id=key,
            description="Received a like",
            metadata={"post_id": event.post_id, "liker_id": event.user_id},
            related_user_id=event.user_id,
            idempotency_key=key,
        )
    except DuplicateTransactionError:
        logger.debug("Like reward %s recorded concurrently, skipping", key)
        return None


# ---------------------------------------------------------------------------
# Daily check-in
# ---------------------------------------------------------------------------
CHECK_IN_REFERENCE = "check_in"


@dataclass(frozen=True, slots=True)
class CheckInStatus:
    """Where a user stands with today's check-in."""

    checked_in_today: bool
    streak: int
    last_date: date | None
    next_amount: int


def _today() -> date:
    return datetime.now(UTC).date()


def check_in_amount(engine: Engine, streak: int) -> int:
    """Base amount plus the streak bonus for every day after the first."""
    base = _reward_amount(engine, "rewards.check_in_base_amount")
    bonus = _reward_amount(engine, "rewards.check_in_streak_bonus")
    return base + bonus * max(streak - 1, 0)


def check_in_status(
    ledger: LedgerService,
    engine: Engine,
    user_id: int,
    *,
    today: date | None = None,
    currency_code: str = "credits",
) -> CheckInStatus:
    """Derive the current streak from the user's latest check-in transaction.

    The streak survives only if the last check-in was today or yesterday.
    """
    today = today or _today()
    latest = ledger.get_transactions(
        user_id=user_id,
        currency_code=currency_code,
        tx_type=TransactionType.CHECK_IN,
        reference_type=CHECK_IN_REFERENCE,
        limit=1,
    )

    last_date = None
    streak = 0
    if latest:
        last_date = date.fromisoformat(latest[0].reference_id)
        if last_date >= today - timedelta(days=1):
            streak = int((latest[0].metadata_ or {}).get("streak", 1))

    checked_in_today = last_date == today
    next_streak = streak if checked_in_today else streak + 1
    return CheckInStatus(
        checked_in_today=checked_in_today,
        streak=streak,
        last_date=last_date,
        next_amount=check_in_amount(engine, next_streak),
    )


def reward_check_in(
    ledger: LedgerService,
    engine: Engine,
    user_id: int,
    *,
    today: date | None = None,
    currency_code: str = "credits",
) -> Transaction | None:
    """Pay today's check-in, once per user per day.

    Raises :class:`AlreadyCheckedInError` when today is already recorded,
    whether found up front or by the idempotency index.  Returns ``None``
    when the configured amounts add up to nothing.
    """
    today = today or _today()
    day = today.isoformat()
    status = check_in_status(ledger, engine, user_id, today=today, currency_code=currency_code)
    if status.checked_in_today:
        raise AlreadyCheckedInError(user_id, day)

    streak = status.streak + 1
    amount = status.next_amount
    if amount <= 0:
        logger.debug("Check-in reward disabled (amount=%d)", amount)
        return None

    try:
        return ledger.grant(
            user_id,
            amount,
            currency_code,
            TransactionType.CHECK_IN,
            reference_type=CHECK_IN_REFERENCE,
            reference_id=day,
            description=f"Daily check-in (day {streak})",
            metadata={"date": day, "streak": streak},
            idempotency_key=reward_reference_key(TransactionType.CHECK_IN, user_id, day),
        )
    except DuplicateTransactionError as exc:
        raise AlreadyCheckedInError(user_id, day) from exc


# ---------------------------------------------------------------------------
# Post tips
# ---------------------------------------------------------------------------
def tip_post(
    ledger: LedgerService,
    engine: Engine,
    *,
    from_user_id: int,
    post_id: int,
    post_author_id: int,
    amount: int,
    currency_code: str = "credits",
    message: str | None = None,
) -> TransferResult:
    """Move *amount* from the tipper to the author of *post_id*.

    Bounded by the ``rewards.reward_min_amount`` / ``reward_max_amount``
    settings.  Both legs reference the post.
    """
    minimum = _reward_amount(engine, "rewards.reward_min_amount")
    maximum = _reward_amount(engine, "rewards.reward_max_amount")
    if not minimum <= amount <= maximum:
        raise AmountOutOfRangeError("tip", amount, minimum, maximum)

    return ledger.transfer(
        from_user_id,
        post_author_id,
        amount,
        currency_code,
        TransactionType.POST_REWARD,
        reference_type="post",
        reference_id=post_id,
        description=message or f"Tip for post {post_id}",
        metadata={"post_id": post_id},
    )


def post_tips(
    ledger: LedgerService, post_id: int, *, limit: int = 50, offset: int = 0
) -> list[Transaction]:
    """Tips received for *post_id*, newest first (author-side legs only)."""
    return ledger.get_transactions(
        tx_type=TransactionType.POST_REWARD,
        reference_type="post",
        reference_id=post_id,
        incoming_only=True,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Listener registration
# ---------------------------------------------------------------------------
def register_reward_listeners(
    bus: EventBus,
    ledger: LedgerService,
    engine: Engine,
    *,
    currency_code: str = "credits",
) -> None:
    """Attach the reward handlers to *bus*.  Call before ``bus.freeze()``."""

    async def on_topic_created(event: TopicCreated) -> None:
        await run_db(reward_topic_created, ledger, engine, event, currency_code=currency_code)

    async def on_post_created(event: PostCreated) -> None:
        await run_db(reward_post_created, ledger, engine, event, currency_code=currency_code)

    async def on_post_liked(event: PostLiked) -> None:
        await run_db(reward_post_liked, ledger, engine, event, currency_code=currency_code)

    bus.on(TOPIC_CREATED, on_topic_created)
    bus.on(POST_CREATED, on_post_created)
    bus.on(POST_LIKED, on_post_liked)
    logger.info("Reward listeners registered (currency=%s)", currency_code)
