"""
tally.api.routes.ledger — Member-facing ledger endpoints (JWT-protected)
=========================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tally.api.deps import get_current_user_id, get_engine, get_ledger
from tally.database.models import Account, Currency, Transaction, TransactionType
from tally.errors import AmountOutOfRangeError
from tally.services import reward_service, settings_service
from tally.services.ledger_service import LedgerService, format_amount

router = APIRouter(prefix="/ledger", tags=["ledger"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class TransferRequest(BaseModel):
    to_user_id: int
    amount: int = Field(gt=0)
    currency_code: str = "credits"
    description: str | None = Field(default=None, max_length=500)


class TipRequest(BaseModel):
    post_id: int
    post_author_id: int
    amount: int = Field(gt=0)
    currency_code: str = "credits"
    message: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def currency_dict(c: Currency) -> dict:
    return {
        "code": c.code,
        "name": c.name,
        "symbol": c.symbol,
        "precision": c.precision,
        "is_active": c.is_active,
        "metadata": c.metadata_ or {},
    }


def account_dict(a: Account) -> dict:
    return {
        "user_id": str(a.user_id),
        "currency_code": a.currency_code,
        "balance": a.balance,
        "total_earned": a.total_earned,
        "total_spent": a.total_spent,
        "is_frozen": a.is_frozen,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


def transaction_dict(t: Transaction) -> dict:
    return {
        "id": t.id,
        "user_id": str(t.user_id),
        "currency_code": t.currency_code,
        "amount": t.amount,
        "balance_after": t.balance_after,
        "type": t.type,
        "reference_type": t.reference_type,
        "reference_id": t.reference_id,
        "related_user_id": (
            str(t.related_user_id) if t.related_user_id is not None else None
        ),
        "description": t.description,
        "metadata": t.metadata_ or {},
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("/currencies")
def list_currencies(
    active_only: bool = Query(True),
    ledger: LedgerService = Depends(get_ledger),
):
    return [currency_dict(c) for c in ledger.list_currencies(active_only=active_only)]


@router.get("/balances")
def my_balances(
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
):
    precisions = {c.code: c.precision for c in ledger.list_currencies()}
    out = []
    for account in ledger.get_balances(user_id):
        row = account_dict(account)
        row["display"] = format_amount(account.balance, precisions.get(account.currency_code, 0))
        out.append(row)
    return out


@router.get("/transactions")
def my_transactions(
    currency: str | None = Query(None),
    type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
):
    rows = ledger.get_transactions(
        user_id=user_id,
        currency_code=currency,
        tx_type=type,
        limit=limit,
        offset=offset,
    )
    return [transaction_dict(t) for t in rows]


@router.post("/transfer")
def transfer(
    body: TransferRequest,
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
    engine=Depends(get_engine),
):
    min_amount = settings_service.get_int(engine, "rewards.transfer_min_amount", 1)
    max_amount = settings_service.get_int(engine, "rewards.transfer_max_amount", 1000)
    if not min_amount <= body.amount <= max_amount:
        raise AmountOutOfRangeError("transfer", body.amount, min_amount, max_amount)

    result = ledger.transfer(
        user_id,
        body.to_user_id,
        body.amount,
        body.currency_code,
        TransactionType.TRANSFER,
        reference_type="user",
        reference_id=body.to_user_id,
        description=body.description,
    )
    return {
        "from_transaction": transaction_dict(result.from_transaction),
        "to_transaction": transaction_dict(result.to_transaction),
    }


@router.get("/check-in")
def check_in_status(
    currency: str = Query("credits"),
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
    engine=Depends(get_engine),
):
    status = reward_service.check_in_status(ledger, engine, user_id, currency_code=currency)
    return {
        "checked_in_today": status.checked_in_today,
        "streak": status.streak,
        "last_date": status.last_date.isoformat() if status.last_date else None,
        "next_amount": status.next_amount,
    }


@router.post("/check-in")
def check_in(
    currency: str = Query("credits"),
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
    engine=Depends(get_engine),
):
    tx = reward_service.reward_check_in(ledger, engine, user_id, currency_code=currency)
    return {
        "streak": tx.metadata_["streak"] if tx else 0,
        "transaction": transaction_dict(tx) if tx else None,
    }


@router.post("/tips")
def tip(
    body: TipRequest,
    user_id: int = Depends(get_current_user_id),
    ledger: LedgerService = Depends(get_ledger),
    engine=Depends(get_engine),
):
    result = reward_service.tip_post(
        ledger,
        engine,
        from_user_id=user_id,
        post_id=body.post_id,
        post_author_id=body.post_author_id,
        amount=body.amount,
        currency_code=body.currency_code,
        message=body.message,
    )
    return {
        "from_transaction": transaction_dict(result.from_transaction),
        "to_transaction": transaction_dict(result.to_transaction),
    }


@router.get("/tips/{post_id}")
def tips_for_post(
    post_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ledger: LedgerService = Depends(get_ledger),
):
    rows = reward_service.post_tips(ledger, post_id, limit=limit, offset=offset)
    return {
        "post_id": str(post_id),
        "count": len(rows),
        "total": sum(t.amount for t in rows),
        "tips": [transaction_dict(t) for t in rows],
    }
