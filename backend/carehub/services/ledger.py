import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from carehub.models import Wallet, WalletTransaction
from carehub.services.common import Clock, new_id, utc_now
from carehub.services.errors import (
    InsufficientFundsError,
    MarketplaceConflictError,
    MarketplaceValidationError,
)
from carehub.services.kv_store import KVStore
from carehub.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def wallet_key(account_id: str) -> str:
    return f"wallet:{account_id}"


def normalize_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise MarketplaceValidationError("Invalid amount format") from None
    if not value.is_finite():
        raise MarketplaceValidationError("Invalid amount format")
    if value <= 0:
        raise MarketplaceValidationError("Amount must be positive")
    if value != value.quantize(CENT, rounding=ROUND_HALF_UP):
        raise MarketplaceValidationError("Amount cannot have more than two decimal places")
    return value.quantize(CENT)


class Ledger:
    """Wallet balances with an append-only, capped transaction log.

    Balance and log live in one record so they are always written together; the
    balance is never recomputed from the (truncated) log.
    """

    def __init__(
        self,
        store: KVStore,
        *,
        payment_gateway: Optional[PaymentGateway] = None,
        clock: Clock = utc_now,
        log_limit: int = 100,
        attempts: int = 5,
    ) -> None:
        self._store = store
        self._payment_gateway = payment_gateway or PaymentGateway()
        self._clock = clock
        self._log_limit = log_limit
        self._attempts = attempts

    @property
    def payment_gateway_enabled(self) -> bool:
        return self._payment_gateway.enabled

    def get_wallet(self, account_id: str) -> Wallet:
        return self._load(account_id, self._store.get(wallet_key(account_id)))

    def list_wallets(self) -> List[Wallet]:
        return [Wallet.model_validate(row) for row in self._store.list_by_prefix("wallet:") if row]

    def credit(self, account_id: str, amount: Any, metadata: Optional[Mapping[str, Any]] = None) -> Wallet:
        value = normalize_amount(amount)

        def mutate(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            wallet = self._apply(self._load(account_id, current), "credit", value, metadata)
            return wallet.model_dump(mode="json")

        wallet = Wallet.model_validate(self._store.update(wallet_key(account_id), mutate, attempts=self._attempts))
        logger.info("Credited %s to %s (balance %s)", value, account_id, wallet.balance)
        return wallet

    def debit(self, account_id: str, amount: Any, metadata: Optional[Mapping[str, Any]] = None) -> Wallet:
        value = normalize_amount(amount)

        def mutate(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            wallet = self._apply(self._load(account_id, current), "debit", value, metadata)
            return wallet.model_dump(mode="json")

        try:
            wallet = Wallet.model_validate(self._store.update(wallet_key(account_id), mutate, attempts=self._attempts))
        except InsufficientFundsError:
            logger.warning("Debit of %s from %s rejected: insufficient balance", value, account_id)
            raise
        logger.info("Debited %s from %s (balance %s)", value, account_id, wallet.balance)
        return wallet

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Any,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Wallet, Wallet]:
        """Debit ``from`` then credit ``to`` as one conditional write.

        If the debit fails nothing is written to either wallet.
        """
        value = normalize_amount(amount)
        if from_account_id == to_account_id:
            raise MarketplaceValidationError("Cannot transfer to the same wallet")
        meta = dict(metadata or {})
        source_key = wallet_key(from_account_id)
        destination_key = wallet_key(to_account_id)

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            source = self._apply(
                self._load(from_account_id, snapshot[source_key]),
                "debit",
                value,
                {**meta, "to_account_id": to_account_id},
            )
            destination = self._apply(
                self._load(to_account_id, snapshot[destination_key]),
                "credit",
                value,
                {**meta, "from_account_id": from_account_id},
            )
            return {
                source_key: source.model_dump(mode="json"),
                destination_key: destination.model_dump(mode="json"),
            }

        try:
            written = self._store.update_many([source_key, destination_key], mutate, attempts=self._attempts)
        except InsufficientFundsError:
            logger.warning("Transfer of %s from %s to %s rejected: insufficient balance", value, from_account_id, to_account_id)
            raise
        logger.info("Transferred %s from %s to %s", value, from_account_id, to_account_id)
        return Wallet.model_validate(written[source_key]), Wallet.model_validate(written[destination_key])

    def credit_from_payment(
        self,
        account_id: str,
        amount: Any,
        *,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> Wallet:
        value = normalize_amount(amount)
        if not payment_id.strip() or not order_id.strip():
            raise MarketplaceValidationError("order_id and payment_id are required")
        if not self._payment_gateway.verify_signature(order_id, payment_id, signature):
            raise MarketplaceValidationError("Invalid payment signature")

        # The payment marker and the credit commit together so a payment is never applied twice.
        payment_key = f"payment:{payment_id}"
        key = wallet_key(account_id)

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            if snapshot[payment_key] is not None:
                raise MarketplaceConflictError("Payment already applied")
            wallet = self._apply(
                self._load(account_id, snapshot[key]),
                "credit",
                value,
                {"description": "Added money via payment gateway", "order_id": order_id, "payment_id": payment_id},
            )
            marker = {
                "payment_id": payment_id,
                "order_id": order_id,
                "account_id": account_id,
                "amount": str(value),
                "applied_at": self._clock().isoformat(),
            }
            return {key: wallet.model_dump(mode="json"), payment_key: marker}

        written = self._store.update_many([key, payment_key], mutate, attempts=self._attempts)
        wallet = Wallet.model_validate(written[key])
        logger.info("Credited %s to %s from payment %s", value, account_id, payment_id)
        return wallet

    def _load(self, account_id: str, raw: Optional[Dict[str, Any]]) -> Wallet:
        if not raw:
            return Wallet(account_id=account_id)
        return Wallet.model_validate(raw)

    def _apply(
        self,
        wallet: Wallet,
        kind: str,
        amount: Decimal,
        metadata: Optional[Mapping[str, Any]],
    ) -> Wallet:
        meta = dict(metadata or {})
        description = str(meta.pop("description", "") or "")
        if kind == "debit":
            if amount > wallet.balance:
                raise InsufficientFundsError("Insufficient balance")
            balance = wallet.balance - amount
        else:
            balance = wallet.balance + amount
        now = self._clock()
        transaction = WalletTransaction(
            id=new_id("txn", 12),
            type=kind,  # type: ignore[arg-type]
            amount=amount,
            resulting_balance=balance,
            description=description,
            timestamp=now,
            refs={str(k): str(v) for k, v in meta.items() if v is not None},
        )
        transactions = [transaction, *wallet.transactions][: self._log_limit]
        return wallet.model_copy(update={"balance": balance, "transactions": transactions, "updated_at": now})
