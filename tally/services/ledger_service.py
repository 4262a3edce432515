"""
tally.services.ledger_service — Balance Mutations & Ledger Reads
=================================================================

The sole writer of ``accounts`` and ``transactions``.

Every mutation (grant, deduct, transfer) runs in exactly one session /
database transaction:

  1. Resolve the account row(s) with ``SELECT … FOR UPDATE``
     (creating them lazily on first reference)
  2. Validate (frozen flag, sufficient funds)
  3. Update balance and running totals
  4. Append the transaction row(s)
  5. Commit — or roll back everything

Concurrent mutations of the same account serialize on the row lock taken
in step 1; there is no application-level locking and no retry.

Idempotency: callers may pass an ``idempotency_key``.  The partial unique
index ``ix_transactions_idempotency_key`` rejects a second row with the
same key, which surfaces here as :class:`DuplicateTransactionError` with
the whole unit rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.models import Account, Currency, Transaction
from tally.errors import (
    AccountFrozenError,
    DuplicateTransactionError,
    InsufficientFundsError,
    InvalidAmountError,
    SelfTransferError,
    UnknownCurrencyError,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransferResult:
    """Both legs of a transfer, sender first."""

    from_transaction: Transaction
    to_transaction: Transaction


def format_amount(amount: int, precision: int) -> str:
    """Render an integer minor-unit *amount* with *precision* decimals.

    >>> format_amount(1050, 2)
    '10.50'
    >>> format_amount(-7, 0)
    '-7'
    """
    if precision <= 0:
        return str(amount)
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** precision)
    return f"{sign}{whole}.{frac:0{precision}d}"


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------
def get_or_create_account(
    session: Session,
    user_id: int,
    currency_code: str,
    *,
    for_update: bool = False,
) -> Account:
    """Fetch the (user, currency) account, inserting a zero row if absent.

    A concurrent insert of the same pair loses the unique-constraint race
    inside a SAVEPOINT; we then re-read the winner's row instead of
    failing.  Raises :class:`UnknownCurrencyError` for unknown codes.
    """
    stmt = select(Account).where(
        Account.user_id == user_id,
        Account.currency_code == currency_code,
    )
    if for_update:
        stmt = stmt.with_for_update()

    account = session.scalar(stmt)
    if account is not None:
        return account

    if session.get(Currency, currency_code) is None:
        raise UnknownCurrencyError(currency_code)

    try:
        with session.begin_nested():   # SAVEPOINT
            account = Account(
                user_id=user_id,
                currency_code=currency_code,
                balance=0,
                total_earned=0,
                total_spent=0,
                is_frozen=False,
            )
            session.add(account)
            session.flush()
    except IntegrityError:
        # Lost the creation race; the SAVEPOINT is gone, the outer txn lives.
        logger.debug(
            "Account race for user=%s currency=%s — re-reading", user_id, currency_code
        )
        account = session.scalar(stmt)
        if account is None:
            raise
        return account

    logger.debug("Created %s account for user %s", currency_code, user_id)
    return account


def _ensure_mutable(account: Account) -> None:
    if account.is_frozen:
        raise AccountFrozenError(account.user_id, account.currency_code)


def _append_transaction(
    session: Session,
    account: Account,
    *,
    amount: int,
    tx_type: str,
    reference_type: str | None,
    reference_id: str | int | None,
    related_user_id: int | None = None,
    description: str | None,
    metadata: dict | None,
    idempotency_key: str | None = None,
) -> Transaction:
    tx = Transaction(
        user_id=account.user_id,
        currency_code=account.currency_code,
        amount=amount,
        balance_after=account.balance,
        type=str(tx_type),
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        related_user_id=related_user_id,
        description=description,
        metadata_=metadata,
        idempotency_key=idempotency_key,
    )
    session.add(tx)
    return tx


# ---------------------------------------------------------------------------
# Service object
# ---------------------------------------------------------------------------
class LedgerService:
    """In-process ledger API shared by route handlers and event listeners.

    Usage::

        ledger = LedgerService(engine)
        tx = ledger.grant(1, 5, "credits", "post_topic",
                          reference_type="topic", reference_id=42)
        result = ledger.transfer(1, 2, 4, "credits", "transfer")
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _commit(self, session: Session, idempotency_key: str | None) -> None:
        """Commit, translating an idempotency-key collision into a ledger error."""
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if idempotency_key is not None and self._key_exists(session, idempotency_key):
                raise DuplicateTransactionError(idempotency_key) from exc
            raise

    @staticmethod
    def _key_exists(session: Session, idempotency_key: str) -> bool:
        return session.scalar(
            select(Transaction.id).where(Transaction.idempotency_key == idempotency_key)
        ) is not None

    @staticmethod
    def _detach(session: Session, *rows) -> None:
        for row in rows:
            session.refresh(row)
            session.expunge(row)

    # -- Mutations ---------------------------------------------------------

    def grant(
        self,
        user_id: int,
        amount: int,
        currency_code: str,
        tx_type: str,
        *,
        reference_type: str | None = None,
        reference_id: str | int | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        related_user_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> Transaction:
        """Credit *amount* to the user (system → user)."""
        if amount <= 0:
            raise InvalidAmountError("grant", amount)

        with self._session() as session:
            account = get_or_create_account(session, user_id, currency_code, for_update=True)
            _ensure_mutable(account)

            account.balance += amount
            account.total_earned += amount
            tx = _append_transaction(
                session,
                account,
                amount=amount,
                tx_type=tx_type,
                reference_type=reference_type,
                reference_id=reference_id,
                related_user_id=related_user_id,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
            self._commit(session, idempotency_key)
            self._detach(session, tx)

        logger.info(
            "Granted %d %s to user %s (%s) → balance %d",
            amount, currency_code, user_id, tx_type, tx.balance_after,
        )
        return tx

    def deduct(
        self,
        user_id: int,
        amount: int,
        currency_code: str,
        tx_type: str,
        *,
        reference_type: str | None = None,
        reference_id: str | int | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        related_user_id: int | None = None,
        idempotency_key: str | None = None,
        allow_negative: bool = False,
    ) -> Transaction:
        """Debit *amount* from the user (user → system).

        Raises :class:`InsufficientFundsError` when the balance is below
        *amount*, unless *allow_negative* is set.
        """
        if amount <= 0:
            raise InvalidAmountError("deduct", amount)

        with self._session() as session:
            account = get_or_create_account(session, user_id, currency_code, for_update=True)
            _ensure_mutable(account)

            if not allow_negative and account.balance < amount:
                raise InsufficientFundsError(user_id, currency_code, account.balance, amount)

            account.balance -= amount
            account.total_spent += amount
            tx = _append_transaction(
                session,
                account,
                amount=-amount,
                tx_type=tx_type,
                reference_type=reference_type,
                reference_id=reference_id,
                related_user_id=related_user_id,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
            self._commit(session, idempotency_key)
            self._detach(session, tx)

        logger.info(
            "Deducted %d %s from user %s (%s) → balance %d",
            amount, currency_code, user_id, tx_type, tx.balance_after,
        )
        return tx

    def transfer(
        self,
        from_user_id: int,
        to_user_id: int,
        amount: int,
        currency_code: str,
        tx_type: str,
        *,
        reference_type: str | None = None,
        reference_id: str | int | None = None,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> TransferResult:
        """Move *amount* from one user to another in a single transaction."""
        if amount <= 0:
            raise InvalidAmountError("transfer", amount)
        if from_user_id == to_user_id:
            raise SelfTransferError(from_user_id)

        with self._session() as session:
            # Lock in a stable order so opposite transfers cannot deadlock.
            accounts = {
                uid: get_or_create_account(session, uid, currency_code, for_update=True)
                for uid in sorted((from_user_id, to_user_id))
            }
            sender, receiver = accounts[from_user_id], accounts[to_user_id]
            _ensure_mutable(sender)
            _ensure_mutable(receiver)

            if sender.balance < amount:
                raise InsufficientFundsError(
                    from_user_id, currency_code, sender.balance, amount
                )

            sender.balance -= amount
            sender.total_spent += amount
            receiver.balance += amount
            receiver.total_earned += amount

            from_tx = _append_transaction(
                session,
                sender,
                amount=-amount,
                tx_type=tx_type,
                reference_type=reference_type,
                reference_id=reference_id,
                related_user_id=to_user_id,
                description=description or f"Transfer to user {to_user_id}",
                metadata=metadata,
            )
            to_tx = _append_transaction(
                session,
                receiver,
                amount=amount,
                tx_type=tx_type,
                reference_type=reference_type,
                reference_id=reference_id,
                related_user_id=from_user_id,
                description=description or f"Transfer from user {from_user_id}",
                metadata=metadata,
            )
            self._commit(session, None)
            self._detach(session, from_tx, to_tx)

        logger.info(
            "Transferred %d %s from user %s to user %s (%s)",
            amount, currency_code, from_user_id, to_user_id, tx_type,
        )
        return TransferResult(from_transaction=from_tx, to_transaction=to_tx)

    # -- Reads -------------------------------------------------------------

    def get_account(self, user_id: int, currency_code: str) -> Account:
        """Return the user's account for *currency_code*, creating it if needed."""
        with self._session() as session:
            account = get_or_create_account(session, user_id, currency_code)
            session.commit()
            self._detach(session, account)
            return account

    def get_balances(self, user_id: int) -> list[Account]:
        """All existing accounts of *user_id*, ordered by currency code."""
        with self._session() as session:
            rows = session.scalars(
                select(Account)
                .where(Account.user_id == user_id)
                .order_by(Account.currency_code)
            ).all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def list_currencies(self, *, active_only: bool = False) -> list[Currency]:
        with self._session() as session:
            stmt = select(Currency).order_by(Currency.code)
            if active_only:
                stmt = stmt.where(Currency.is_active.is_(True))
            rows = session.scalars(stmt).all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def get_transactions(
        self,
        *,
        user_id: int | None = None,
        currency_code: str | None = None,
        tx_type: str | None = None,
        reference_type: str | None = None,
        reference_id: str | int | None = None,
        incoming_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        """Filtered transaction history, newest first.

        *incoming_only* keeps credits (positive amounts), e.g. the receiving
        legs of transfers.
        """
        stmt = select(Transaction)
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        if currency_code is not None:
            stmt = stmt.where(Transaction.currency_code == currency_code)
        if tx_type is not None:
            stmt = stmt.where(Transaction.type == str(tx_type))
        if reference_type is not None:
            stmt = stmt.where(Transaction.reference_type == reference_type)
        if reference_id is not None:
            stmt = stmt.where(Transaction.reference_id == str(reference_id))
        if incoming_only:
            stmt = stmt.where(Transaction.amount > 0)
        stmt = (
            stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )

        with self._session() as session:
            rows = session.scalars(stmt).all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def find_transaction(
        self,
        tx_type: str,
        reference_type: str,
        reference_id: str | int,
        *,
        user_id: int | None = None,
    ) -> Transaction | None:
        """First transaction matching the (type, reference) tuple, or ``None``."""
        matches = self.get_transactions(
            user_id=user_id,
            tx_type=tx_type,
            reference_type=reference_type,
            reference_id=reference_id,
            limit=1,
        )
        return matches[0] if matches else None
