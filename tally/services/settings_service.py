"""
tally.services.settings_service — Settings Reads & Writes
==========================================================

Typed read/write access to the ``settings`` table, where reward amounts
and transfer limits live.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's parsed value from an existing session.

    Parameters
    ----------
    session : Session
        An open SQLAlchemy session.
    key : str
        The setting key to look up.
    default
        Returned when the key does not exist.

    Returns
    -------
    The JSON-decoded value, the raw string if it isn't valid JSON,
    or *default*.
    """
    row = session.get(Setting, key)
    if row is None:
        return default
    try:
        return json.loads(row.value_json)
    except (json.JSONDecodeError, TypeError):
        return row.value_json


def get_int(engine, key: str, default: int) -> int:
    """Read an integer setting, falling back to *default* on missing or bad values."""
    with Session(engine) as session:
        value = get_setting_value(session, key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Setting %s=%r is not an integer; using %d", key, value, default)
        return default


def get_all_settings(engine, *, category: str | None = None) -> list[Setting]:
    """Fetch setting rows, ordered by category then key."""
    with Session(engine) as session:
        stmt = select(Setting).order_by(Setting.category, Setting.key)
        if category is not None:
            stmt = stmt.where(Setting.category == category)
        rows = session.scalars(stmt).all()
        # Expunge so callers can read outside the session
        for r in rows:
            session.expunge(r)
        return list(rows)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def upsert_setting(
    engine,
    *,
    key: str,
    value: Any,
    category: str | None = None,
    description: str | None = None,
) -> Setting:
    """Insert or update a single setting.

    A *category* of ``None`` keeps an existing row's category and files
    new rows under ``general``.
    """
    value_json = json.dumps(value)
    with Session(engine, expire_on_commit=False) as session:
        existing = session.get(Setting, key)
        if existing:
            existing.value_json = value_json
            if category:
                existing.category = category
            if description is not None:
                existing.description = description
        else:
            existing = Setting(
                key=key,
                value_json=value_json,
                category=category or "general",
                description=description,
            )
            session.add(existing)
        session.commit()
        session.expunge(existing)

    logger.info("Setting %s updated → %s", key, value_json)
    return existing
