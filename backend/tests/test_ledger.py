from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from carehub.services.errors import (
    InsufficientFundsError,
    MarketplaceConflictError,
    MarketplaceValidationError,
    UpstreamFailureError,
)
from carehub.services.kv_store import KVStore
from carehub.services.ledger import Ledger
from carehub.services.marketplace import Marketplace
from carehub.services.payment_gateway import PaymentGateway


def test_missing_wallet_reads_as_zero(market):
    wallet = market.ledger.get_wallet("client_1")
    assert wallet.account_id == "client_1"
    assert wallet.balance == Decimal("0")
    assert wallet.transactions == []


def test_debit_over_balance_is_rejected_and_balance_kept(market):
    market.ledger.credit("client_1", Decimal("500"))

    with pytest.raises(InsufficientFundsError):
        market.ledger.debit("client_1", Decimal("700"))

    wallet = market.ledger.get_wallet("client_1")
    assert wallet.balance == Decimal("500.00")
    assert len(wallet.transactions) == 1


@pytest.mark.parametrize("amount", ["0", "-5", "abc", "1.005", "NaN"])
def test_invalid_amounts_are_rejected(market, amount):
    with pytest.raises(MarketplaceValidationError):
        market.ledger.credit("client_1", amount)
    assert market.ledger.get_wallet("client_1").balance == Decimal("0")


def test_balance_equals_sum_of_signed_amounts(market):
    operations = [("credit", "250.00"), ("debit", "75.50"), ("credit", "10.25"), ("debit", "184.75"), ("credit", "1.00")]
    expected = Decimal("0")
    for kind, amount in operations:
        getattr(market.ledger, kind)("client_1", Decimal(amount))
        expected += Decimal(amount) if kind == "credit" else -Decimal(amount)

    wallet = market.ledger.get_wallet("client_1")
    assert wallet.balance == expected == Decimal("1.00")

    # Newest first; each entry snapshots the balance right after it was applied.
    running = Decimal("0")
    for transaction in reversed(wallet.transactions):
        running += transaction.amount if transaction.type == "credit" else -transaction.amount
        assert transaction.resulting_balance == running
        assert transaction.resulting_balance >= 0


def test_transfer_moves_money_between_wallets(market):
    market.ledger.credit("client_1", Decimal("300"))

    source, destination = market.ledger.transfer("client_1", "provider_1", Decimal("120"), {"booking_id": "req_1"})

    assert source.balance == Decimal("180.00")
    assert destination.balance == Decimal("120.00")
    assert source.transactions[0].type == "debit"
    assert source.transactions[0].refs == {"booking_id": "req_1", "to_account_id": "provider_1"}
    assert destination.transactions[0].refs == {"booking_id": "req_1", "from_account_id": "client_1"}


def test_failed_transfer_leaves_both_wallets_unchanged(market):
    market.ledger.credit("client_1", Decimal("50"))
    market.ledger.credit("provider_1", Decimal("20"))

    with pytest.raises(InsufficientFundsError):
        market.ledger.transfer("client_1", "provider_1", Decimal("80"))

    assert market.ledger.get_wallet("client_1").balance == Decimal("50.00")
    assert market.ledger.get_wallet("provider_1").balance == Decimal("20.00")
    assert len(market.ledger.get_wallet("provider_1").transactions) == 1


def test_transfer_to_same_wallet_is_invalid(market):
    market.ledger.credit("client_1", Decimal("50"))
    with pytest.raises(MarketplaceValidationError):
        market.ledger.transfer("client_1", "client_1", Decimal("10"))


def test_transaction_log_is_capped_but_balance_is_not(tmp_path, clock):
    market = Marketplace(str(tmp_path / "capped.sqlite3"), clock=clock, log_limit=3)
    for _ in range(5):
        market.ledger.credit("client_1", Decimal("10"))

    wallet = market.ledger.get_wallet("client_1")
    assert wallet.balance == Decimal("50.00")
    assert len(wallet.transactions) == 3
    assert wallet.transactions[0].resulting_balance == Decimal("50.00")


def test_concurrent_credits_never_lose_updates(tmp_path, clock):
    ledger = Ledger(KVStore(str(tmp_path / "ledger.sqlite3")), clock=clock, attempts=50)

    def credit(_):
        try:
            ledger.credit("client_1", Decimal("1.00"))
            return True
        except MarketplaceConflictError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(credit, range(40)))

    wallet = ledger.get_wallet("client_1")
    assert wallet.balance == Decimal(sum(results))
    assert len(wallet.transactions) == sum(results)


def test_concurrent_debits_never_overdraw(tmp_path, clock):
    ledger = Ledger(KVStore(str(tmp_path / "ledger.sqlite3")), clock=clock, attempts=50)
    ledger.credit("client_1", Decimal("5.00"))

    def debit(_):
        try:
            ledger.debit("client_1", Decimal("1.00"))
            return "ok"
        except InsufficientFundsError:
            return "insufficient"
        except MarketplaceConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(debit, range(20)))

    assert results.count("ok") <= 5
    assert ledger.get_wallet("client_1").balance == Decimal("5.00") - results.count("ok")
    assert ledger.get_wallet("client_1").balance >= 0


def test_credit_from_verified_payment(market, sign_payment):
    signature = sign_payment("order_1", "pay_1")

    wallet = market.ledger.credit_from_payment(
        "client_1", Decimal("500"), order_id="order_1", payment_id="pay_1", signature=signature
    )

    assert wallet.balance == Decimal("500.00")
    assert wallet.transactions[0].refs == {"order_id": "order_1", "payment_id": "pay_1"}


def test_payment_cannot_be_applied_twice(market, sign_payment):
    signature = sign_payment("order_1", "pay_1")
    market.ledger.credit_from_payment("client_1", "200", order_id="order_1", payment_id="pay_1", signature=signature)

    with pytest.raises(MarketplaceConflictError):
        market.ledger.credit_from_payment("client_1", "200", order_id="order_1", payment_id="pay_1", signature=signature)
    assert market.ledger.get_wallet("client_1").balance == Decimal("200.00")


def test_unverified_payment_is_invalid(market):
    with pytest.raises(MarketplaceValidationError):
        market.ledger.credit_from_payment("client_1", "200", order_id="order_1", payment_id="pay_1", signature="forged")
    assert market.ledger.get_wallet("client_1").balance == Decimal("0")


def test_unconfigured_gateway_is_upstream_failure(tmp_path, clock):
    ledger = Ledger(KVStore(str(tmp_path / "ledger.sqlite3")), payment_gateway=PaymentGateway(""), clock=clock)
    with pytest.raises(UpstreamFailureError):
        ledger.credit_from_payment("client_1", "200", order_id="order_1", payment_id="pay_1", signature="sig")
