"""
tests/test_ledger_service.py — Ledger Service Integration Tests
================================================================
Covers grant / deduct / transfer semantics, atomicity on rejection,
lazy account creation (including the creation race), idempotency keys,
frozen accounts, and the read API.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tally.database.models import Account, Transaction, TransactionType
from tally.errors import (
    AccountFrozenError,
    DuplicateTransactionError,
    InsufficientFundsError,
    InvalidAmountError,
    SelfTransferError,
    UnknownCurrencyError,
)
from tally.services.ledger_service import (
    LedgerService,
    format_amount,
    get_or_create_account,
)


def _account(engine, user_id: int, currency: str = "credits") -> Account | None:
    with Session(engine) as session:
        return session.scalar(
            select(Account).where(
                Account.user_id == user_id, Account.currency_code == currency
            )
        )


def _tx_count(engine, user_id: int | None = None) -> int:
    with Session(engine) as session:
        stmt = select(func.count()).select_from(Transaction)
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        return session.scalar(stmt)


def _tx_sum(engine, user_id: int, currency: str = "credits") -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id, Transaction.currency_code == currency
            )
        )


def _set_balance(ledger: LedgerService, user_id: int, amount: int) -> None:
    if amount > 0:
        ledger.grant(user_id, amount, "credits", "seed")


class TestGrant:
    def test_grant_creates_account_on_first_reference(self, engine, ledger):
        assert _account(engine, 1) is None

        tx = ledger.grant(
            1, 5, "credits", TransactionType.POST_TOPIC,
            reference_type="topic", reference_id=42,
        )

        account = _account(engine, 1)
        assert account.balance == 5
        assert account.total_earned == 5
        assert account.total_spent == 0
        assert tx.amount == 5
        assert tx.balance_after == 5
        assert tx.type == "post_topic"
        assert tx.reference_type == "topic"
        assert tx.reference_id == "42"

    def test_grant_accumulates(self, engine, ledger):
        ledger.grant(1, 5, "credits", "post_topic")
        tx = ledger.grant(1, 3, "credits", "post_reply")

        assert tx.balance_after == 8
        account = _account(engine, 1)
        assert account.balance == 8
        assert account.total_earned == 8

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected(self, engine, ledger, amount):
        with pytest.raises(InvalidAmountError, match="must be positive"):
            ledger.grant(1, amount, "credits", "post_topic")
        assert _account(engine, 1) is None
        assert _tx_count(engine) == 0

    def test_unknown_currency_rejected(self, engine, ledger):
        with pytest.raises(UnknownCurrencyError):
            ledger.grant(1, 5, "doubloons", "post_topic")
        assert _tx_count(engine) == 0

    def test_metadata_and_description_are_stored(self, ledger):
        tx = ledger.grant(
            1, 2, "credits", "check_in",
            description="Daily check-in",
            metadata={"streak": 3},
        )
        assert tx.description == "Daily check-in"
        assert tx.metadata_ == {"streak": 3}
        assert tx.created_at is not None


class TestDeduct:
    def test_deduct_reduces_balance(self, engine, ledger):
        _set_balance(ledger, 1, 10)

        tx = ledger.deduct(1, 4, "credits", TransactionType.PURCHASE,
                           reference_type="shop_item", reference_id=9)

        assert tx.amount == -4
        assert tx.balance_after == 6
        account = _account(engine, 1)
        assert account.balance == 6
        assert account.total_spent == 4
        assert account.total_earned == 10

    def test_insufficient_funds_leaves_balance_unchanged(self, engine, ledger):
        _set_balance(ledger, 1, 3)

        with pytest.raises(InsufficientFundsError) as excinfo:
            ledger.deduct(1, 5, "credits", TransactionType.PURCHASE)

        assert excinfo.value.balance == 3
        assert excinfo.value.required == 5
        assert "Balance: 3, Required: 5" in str(excinfo.value)
        assert _account(engine, 1).balance == 3
        assert _tx_count(engine, 1) == 1

    def test_insufficient_funds_on_missing_account_creates_nothing(self, engine, ledger):
        with pytest.raises(InsufficientFundsError):
            ledger.deduct(7, 1, "credits", TransactionType.PURCHASE)
        assert _account(engine, 7) is None

    def test_allow_negative(self, engine, ledger):
        _set_balance(ledger, 1, 2)

        tx = ledger.deduct(1, 5, "credits", "post_reply", allow_negative=True)

        assert tx.balance_after == -3
        assert _account(engine, 1).balance == -3

    def test_exact_balance_can_be_spent(self, engine, ledger):
        _set_balance(ledger, 1, 5)
        ledger.deduct(1, 5, "credits", TransactionType.PURCHASE)
        assert _account(engine, 1).balance == 0

    def test_non_positive_amount_rejected(self, ledger):
        with pytest.raises(InvalidAmountError):
            ledger.deduct(1, 0, "credits", TransactionType.PURCHASE)


class TestTransfer:
    def test_transfer_moves_funds(self, engine, ledger):
        _set_balance(ledger, 1, 10)

        result = ledger.transfer(1, 2, 4, "credits", TransactionType.TRANSFER)

        assert _account(engine, 1).balance == 6
        assert _account(engine, 2).balance == 4
        assert _account(engine, 1).total_spent == 4
        assert _account(engine, 2).total_earned == 4

        sent, received = result.from_transaction, result.to_transaction
        assert (sent.user_id, sent.amount, sent.related_user_id) == (1, -4, 2)
        assert (received.user_id, received.amount, received.related_user_id) == (2, 4, 1)
        assert sent.balance_after == 6
        assert received.balance_after == 4
        assert _tx_count(engine, 2) == 1

    def test_default_descriptions(self, ledger):
        _set_balance(ledger, 1, 10)
        result = ledger.transfer(1, 2, 1, "credits", TransactionType.TRANSFER)
        assert result.from_transaction.description == "Transfer to user 2"
        assert result.to_transaction.description == "Transfer from user 1"

    def test_explicit_description_used_for_both_legs(self, ledger):
        _set_balance(ledger, 1, 10)
        result = ledger.transfer(1, 2, 1, "credits", "tip", description="thanks!")
        assert result.from_transaction.description == "thanks!"
        assert result.to_transaction.description == "thanks!"

    def test_self_transfer_rejected(self, engine, ledger):
        _set_balance(ledger, 1, 10)
        with pytest.raises(SelfTransferError):
            ledger.transfer(1, 1, 4, "credits", TransactionType.TRANSFER)
        assert _account(engine, 1).balance == 10

    def test_insufficient_funds_has_no_partial_effect(self, engine, ledger):
        _set_balance(ledger, 1, 3)

        with pytest.raises(InsufficientFundsError):
            ledger.transfer(1, 2, 4, "credits", TransactionType.TRANSFER)

        assert _account(engine, 1).balance == 3
        assert _account(engine, 2) is None
        assert _tx_count(engine) == 1

    def test_transfer_from_higher_to_lower_user_id(self, engine, ledger):
        _set_balance(ledger, 9, 10)
        ledger.transfer(9, 3, 10, "credits", TransactionType.TRANSFER)
        assert _account(engine, 9).balance == 0
        assert _account(engine, 3).balance == 10

    def test_non_positive_amount_rejected(self, ledger):
        with pytest.raises(InvalidAmountError):
            ledger.transfer(1, 2, -5, "credits", TransactionType.TRANSFER)


class TestBalanceInvariant:
    def test_balance_equals_sum_of_transactions(self, engine, ledger):
        ledger.grant(1, 10, "credits", "post_topic")
        ledger.deduct(1, 3, "credits", "purchase")
        ledger.transfer(1, 2, 4, "credits", "transfer")
        ledger.grant(2, 1, "credits", "receive_like")
        ledger.deduct(2, 9, "credits", "post_reply", allow_negative=True)

        for user_id in (1, 2):
            assert _account(engine, user_id).balance == _tx_sum(engine, user_id)


class TestIdempotencyKey:
    def test_duplicate_key_rejected_and_rolled_back(self, engine, ledger):
        ledger.grant(1, 1, "credits", "receive_like", idempotency_key="receive_like_7_2")

        with pytest.raises(DuplicateTransactionError) as excinfo:
            ledger.grant(1, 1, "credits", "receive_like", idempotency_key="receive_like_7_2")

        assert excinfo.value.idempotency_key == "receive_like_7_2"
        assert _account(engine, 1).balance == 1
        assert _tx_count(engine, 1) == 1

    def test_null_keys_are_unconstrained(self, engine, ledger):
        ledger.grant(1, 1, "credits", "post_reply")
        ledger.grant(1, 1, "credits", "post_reply")
        assert _tx_count(engine, 1) == 2


class TestFrozenAccounts:
    def _freeze(self, engine, user_id: int) -> None:
        with Session(engine) as session:
            account = session.scalar(select(Account).where(Account.user_id == user_id))
            account.is_frozen = True
            session.commit()

    def test_frozen_account_rejects_grant_and_deduct(self, engine, ledger):
        _set_balance(ledger, 1, 10)
        self._freeze(engine, 1)

        with pytest.raises(AccountFrozenError):
            ledger.grant(1, 1, "credits", "post_topic")
        with pytest.raises(AccountFrozenError):
            ledger.deduct(1, 1, "credits", "purchase")
        assert _account(engine, 1).balance == 10

    def test_frozen_receiver_blocks_transfer(self, engine, ledger):
        _set_balance(ledger, 1, 10)
        _set_balance(ledger, 2, 1)
        self._freeze(engine, 2)

        with pytest.raises(AccountFrozenError):
            ledger.transfer(1, 2, 5, "credits", "transfer")
        assert _account(engine, 1).balance == 10

    def test_frozen_sender_blocks_transfer(self, engine, ledger):
        _set_balance(ledger, 1, 10)
        _set_balance(ledger, 2, 1)
        self._freeze(engine, 1)

        with pytest.raises(AccountFrozenError) as excinfo:
            ledger.transfer(1, 2, 5, "credits", "transfer")

        assert excinfo.value.user_id == 1
        assert _account(engine, 1).balance == 10
        assert _account(engine, 2).balance == 1
        assert _tx_count(engine) == 2


class TestAccountResolver:
    def test_returns_existing_account(self, engine, ledger):
        ledger.grant(1, 5, "credits", "post_topic")
        with Session(engine) as session:
            account = get_or_create_account(session, 1, "credits")
            assert account.balance == 5

    def test_recovers_from_creation_race(self, engine, ledger):
        """A concurrent insert wins the unique constraint; we re-read its row."""
        ledger.grant(1, 5, "credits", "post_topic")

        with Session(engine) as session:
            real_scalar = session.scalar
            calls = {"n": 0}

            def first_lookup_misses(stmt, *args, **kwargs):
                calls["n"] += 1
                if calls["n"] == 1:
                    return None
                return real_scalar(stmt, *args, **kwargs)

            session.scalar = first_lookup_misses
            account = get_or_create_account(session, 1, "credits")

            assert account.balance == 5
            assert calls["n"] == 2

        with Session(engine) as session:
            assert session.scalar(select(func.count()).select_from(Account)) == 1

    def test_unknown_currency(self, engine):
        with Session(engine) as session:
            with pytest.raises(UnknownCurrencyError):
                get_or_create_account(session, 1, "nope")

    def test_get_account_creates_zero_account(self, ledger):
        account = ledger.get_account(3, "credits")
        assert account.balance == 0
        assert account.id is not None


class TestReads:
    def test_get_transactions_filters_and_orders_newest_first(self, ledger):
        ledger.grant(1, 1, "credits", "post_topic", reference_type="topic", reference_id=1)
        ledger.grant(1, 2, "credits", "post_reply", reference_type="post", reference_id=5)
        ledger.grant(2, 3, "credits", "post_topic", reference_type="topic", reference_id=2)

        mine = ledger.get_transactions(user_id=1)
        assert [t.amount for t in mine] == [2, 1]

        topics = ledger.get_transactions(tx_type="post_topic")
        assert {t.user_id for t in topics} == {1, 2}

        by_ref = ledger.get_transactions(reference_type="post", reference_id=5)
        assert len(by_ref) == 1 and by_ref[0].user_id == 1

        assert len(ledger.get_transactions(user_id=1, limit=1)) == 1
        assert ledger.get_transactions(user_id=1, limit=1, offset=1)[0].amount == 1

    def test_find_transaction(self, ledger):
        ledger.grant(1, 1, "credits", "receive_like",
                     reference_type="reward_event", reference_id="receive_like_3_2")

        found = ledger.find_transaction("receive_like", "reward_event", "receive_like_3_2")
        assert found is not None and found.user_id == 1
        assert ledger.find_transaction("receive_like", "reward_event", "receive_like_3_9") is None
        assert ledger.find_transaction(
            "receive_like", "reward_event", "receive_like_3_2", user_id=2
        ) is None

    def test_get_balances_and_currencies(self, ledger):
        ledger.grant(1, 4, "credits", "post_topic")
        balances = ledger.get_balances(1)
        assert [(a.currency_code, a.balance) for a in balances] == [("credits", 4)]

        assert [c.code for c in ledger.list_currencies()] == ["credits", "gold"]
        assert [c.code for c in ledger.list_currencies(active_only=True)] == ["credits"]


class TestConcurrency:
    def test_concurrent_grants_lose_no_updates(self, file_engine):
        ledger = LedgerService(file_engine)
        ledger.grant(1, 10, "credits", "seed")

        n = 25
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [
                pool.submit(ledger.grant, 1, 1, "credits", "receive_like")
                for _ in range(n)
            ]
            for f in futures:
                f.result()

        assert _account(file_engine, 1).balance == 10 + n
        assert _tx_count(file_engine, 1) == n + 1

    def test_concurrent_first_grants_create_one_account(self, file_engine):
        ledger = LedgerService(file_engine)

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(lambda _: ledger.grant(5, 2, "credits", "post_topic"), range(12)))

        with Session(file_engine) as session:
            count = session.scalar(
                select(func.count()).select_from(Account).where(Account.user_id == 5)
            )
        assert count == 1
        assert _account(file_engine, 5).balance == 24


class TestFormatAmount:
    @pytest.mark.parametrize(
        ("amount", "precision", "expected"),
        [
            (5, 0, "5"),
            (1050, 2, "10.50"),
            (7, 2, "0.07"),
            (-1234, 2, "-12.34"),
        ],
    )
    def test_format(self, amount, precision, expected):
        assert format_amount(amount, precision) == expected
