"""
tally.database.seed — Default Currencies & Reward Settings
===========================================================

Reference data seeded on first startup so the ledger is immediately
usable: the ``credits`` currency every reward is paid in, an inactive
``gold`` example, and the reward amounts read by the listeners.

Idempotent by default — only inserts rows that don't already exist.
Pass ``reset=True`` to overwrite existing rows with the defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from tally.database.models import Currency, Setting

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SeedReport:
    total: int
    added: int
    updated: int
    skipped: int


# ---------------------------------------------------------------------------
# Default catalogues
# ---------------------------------------------------------------------------
DEFAULT_CURRENCIES: list[dict] = [
    {
        "code": "credits",
        "name": "Credits",
        "symbol": "pts",
        "precision": 0,
        "is_active": True,
        "metadata_": {"icon": "coins", "color": "yellow"},
    },
    {
        "code": "gold",
        "name": "Gold",
        "symbol": "g",
        "precision": 2,
        "is_active": False,  # example currency, disabled until an admin enables it
        "metadata_": {"icon": "circle-dollar-sign", "color": "amber"},
    },
]

DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "rewards.check_in_base_amount": (10, "earning", "Base credits for a daily check-in"),
    "rewards.check_in_streak_bonus": (
        5, "earning", "Extra credits per consecutive check-in day after the first",
    ),
    "rewards.post_topic_amount": (5, "earning", "Credits for creating a topic"),
    "rewards.post_reply_amount": (
        2, "earning", "Credit change per reply (positive = reward, negative = charge)",
    ),
    "rewards.receive_like_amount": (1, "earning", "Credits for receiving a like"),
    "rewards.transfer_min_amount": (1, "spending", "Minimum amount per user transfer"),
    "rewards.transfer_max_amount": (1000, "spending", "Maximum amount per user transfer"),
    "rewards.reward_min_amount": (1, "spending", "Minimum amount per post tip"),
    "rewards.reward_max_amount": (1000, "spending", "Maximum amount per post tip"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_currencies(engine: Engine, *, reset: bool = False) -> SeedReport:
    """Insert the default currencies, optionally resetting existing rows."""
    added = updated = skipped = 0
    session = Session(engine)
    try:
        for row in DEFAULT_CURRENCIES:
            existing = session.get(Currency, row["code"])
            if existing is None:
                session.add(Currency(**row))
                added += 1
            elif reset:
                for key, value in row.items():
                    setattr(existing, key, value)
                updated += 1
            else:
                skipped += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if added or updated:
        logger.info("Seeded currencies: %d added, %d reset.", added, updated)
    return SeedReport(len(DEFAULT_CURRENCIES), added, updated, skipped)


def seed_default_settings(engine: Engine, *, reset: bool = False) -> SeedReport:
    """Insert default reward settings that don't yet exist.

    Settings edited by admins are never overwritten unless *reset* is set.
    """
    added = updated = skipped = 0
    session = Session(engine)
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                added += 1
            elif reset:
                existing.value_json = json.dumps(value)
                existing.category = category
                existing.description = desc
                updated += 1
            else:
                skipped += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if added or updated:
        logger.info("Seeded settings: %d added, %d reset.", added, updated)
    return SeedReport(len(DEFAULT_SETTINGS), added, updated, skipped)
