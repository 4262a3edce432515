"""
tally.api.routes.admin — Admin ledger adjustments & reward settings
====================================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from tally.api.deps import get_current_admin, get_engine, get_ledger
from tally.api.routes.ledger import account_dict, transaction_dict
from tally.database.models import TransactionType
from tally.services import settings_service
from tally.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class Adjustment(BaseModel):
    user_id: int
    amount: int
    currency_code: str = "credits"
    description: str | None = None
    allow_negative: bool = False


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


def _metadata(admin: dict) -> dict:
    return {"admin_id": admin["sub"], "admin_name": admin.get("username")}


# ---------------------------------------------------------------------------
# Ledger adjustments
# ---------------------------------------------------------------------------
@router.post("/ledger/grant")
def admin_grant(
    body: Adjustment,
    admin: dict = Depends(get_current_admin),
    ledger: LedgerService = Depends(get_ledger),
):
    tx = ledger.grant(
        body.user_id,
        body.amount,
        body.currency_code,
        TransactionType.ADMIN_GRANT,
        reference_type="admin",
        reference_id=admin["sub"],
        description=body.description,
        metadata=_metadata(admin),
    )
    logger.info("Admin %s granted %d %s to %s", admin["sub"], body.amount,
                body.currency_code, body.user_id)
    return transaction_dict(tx)


@router.post("/ledger/deduct")
def admin_deduct(
    body: Adjustment,
    admin: dict = Depends(get_current_admin),
    ledger: LedgerService = Depends(get_ledger),
):
    tx = ledger.deduct(
        body.user_id,
        body.amount,
        body.currency_code,
        TransactionType.ADMIN_DEDUCT,
        reference_type="admin",
        reference_id=admin["sub"],
        description=body.description,
        metadata=_metadata(admin),
        allow_negative=body.allow_negative,
    )
    logger.info("Admin %s deducted %d %s from %s", admin["sub"], body.amount,
                body.currency_code, body.user_id)
    return transaction_dict(tx)


@router.get("/ledger/users/{user_id}")
def user_ledger(
    user_id: int,
    currency: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(get_current_admin),
    ledger: LedgerService = Depends(get_ledger),
):
    return {
        "accounts": [account_dict(a) for a in ledger.get_balances(user_id)],
        "transactions": [
            transaction_dict(t)
            for t in ledger.get_transactions(
                user_id=user_id, currency_code=currency, limit=limit, offset=offset
            )
        ],
    }


# ---------------------------------------------------------------------------
# Reward settings
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_settings(
    category: str | None = Query(None),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return [
        {
            "key": s.key,
            "value_json": s.value_json,
            "category": s.category,
            "description": s.description,
        }
        for s in settings_service.get_all_settings(engine, category=category)
    ]


@router.put("/settings")
def update_setting(
    body: SettingUpdate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    if not body.key.strip():
        raise HTTPException(400, "Setting key is required")
    row = settings_service.upsert_setting(
        engine,
        key=body.key,
        value=body.value,
        category=body.category,
        description=body.description,
    )
    return {"key": row.key, "value_json": row.value_json, "category": row.category}
