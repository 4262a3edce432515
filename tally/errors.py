"""
tally.errors — Ledger Exception Hierarchy
==========================================

Every rejection the ledger makes on purpose is a :class:`LedgerError`.
Anything else (connection loss, constraint violations we don't recognise)
is a plain SQLAlchemy error and propagates unchanged after rollback.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all deliberate ledger rejections."""


class InvalidAmountError(LedgerError):
    """Raised when an amount is zero or negative."""

    def __init__(self, operation: str, amount: int) -> None:
        self.operation = operation
        self.amount = amount
        super().__init__(f"{operation.capitalize()} amount must be positive (got {amount})")


class SelfTransferError(LedgerError):
    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"Cannot transfer to self (user {user_id})")


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take an account below zero."""

    def __init__(self, user_id: int, currency_code: str, balance: int, required: int) -> None:
        self.user_id = user_id
        self.currency_code = currency_code
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient funds. Balance: {balance}, Required: {required}")


class UnknownCurrencyError(LedgerError):
    def __init__(self, currency_code: str) -> None:
        self.currency_code = currency_code
        super().__init__(f"Unknown currency: {currency_code!r}")


class AccountFrozenError(LedgerError):
    def __init__(self, user_id: int, currency_code: str) -> None:
        self.user_id = user_id
        self.currency_code = currency_code
        super().__init__(f"Account of user {user_id} is frozen for {currency_code!r}")


class DuplicateTransactionError(LedgerError):
    """Raised when a transaction's idempotency key was already recorded."""

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Transaction already recorded for key {idempotency_key!r}")


class AmountOutOfRangeError(LedgerError):
    """Raised when an amount falls outside the configured min/max limits."""

    def __init__(self, operation: str, amount: int, minimum: int, maximum: int) -> None:
        self.operation = operation
        self.amount = amount
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"{operation.capitalize()} amount must be between {minimum} and {maximum}"
        )


class AlreadyCheckedInError(LedgerError):
    def __init__(self, user_id: int, day: str) -> None:
        self.user_id = user_id
        self.day = day
        super().__init__(f"User {user_id} already checked in on {day}")
