"""Tests for the Wallet balance and WalletTransaction state."""

import pytest
from commerce.errors import InvalidStateTransition
from commerce.wallet.wallet import TransactionStatus, Wallet, WalletTransaction
from protean.exceptions import ValidationError


class TestWallet:
    def test_new_wallet_is_empty(self):
        wallet = Wallet.open("user-1")
        assert wallet.balance == 0.0
        assert wallet.currency == "INR"

    def test_deposit_then_withdraw(self):
        wallet = Wallet.open("user-1")
        wallet.deposit(300.0)
        assert wallet.withdraw(120.5) is True
        assert wallet.balance == 179.5

    def test_withdraw_refuses_overdraft(self):
        wallet = Wallet.open("user-1")
        wallet.deposit(100.0)
        assert wallet.withdraw(100.01) is False
        assert wallet.balance == 100.0

    def test_withdraw_whole_balance(self):
        wallet = Wallet.open("user-1")
        wallet.deposit(99.99)
        assert wallet.withdraw(99.99) is True
        assert wallet.balance == 0.0

    def test_non_positive_amounts_are_rejected(self):
        wallet = Wallet.open("user-1")
        with pytest.raises(ValidationError):
            wallet.deposit(0)
        with pytest.raises(ValidationError):
            wallet.withdraw(-5)


class TestWalletTransaction:
    def _pending(self):
        return WalletTransaction.record(
            user_id="user-1",
            entry_type="debit",
            amount=50.0,
            source="exchange_hold",
            status=TransactionStatus.PENDING.value,
        )

    def test_settle_pending(self):
        transaction = self._pending()
        transaction.settle()
        assert transaction.status == TransactionStatus.AVAILABLE.value
        assert transaction.settled_at is not None

    def test_reject_pending(self):
        transaction = self._pending()
        transaction.reject()
        assert transaction.status == TransactionStatus.REJECTED.value

    def test_settled_row_cannot_be_rejected(self):
        transaction = self._pending()
        transaction.settle()
        with pytest.raises(InvalidStateTransition):
            transaction.reject()
