from typing import Optional

from carehub import config
from carehub.services.accounts import ProviderAccounts
from carehub.services.bookings import BookingLifecycle
from carehub.services.common import Clock, utc_now
from carehub.services.kv_store import KVStore
from carehub.services.ledger import Ledger
from carehub.services.matching import MatchingService
from carehub.services.payment_gateway import PaymentGateway
from carehub.services.ratings import RatingAggregator
from carehub.services.verification import VerificationWorkflow

INDEXES = {
    "request": ("status", "provider_id", "client_id", "has_review"),
    "provider": ("verification_status",),
    "verification": ("awaiting_review",),
}


class Marketplace:
    """Wires the coordination services over one store."""

    def __init__(
        self,
        db_path: str,
        *,
        clock: Clock = utc_now,
        payment_gateway: Optional[PaymentGateway] = None,
        strict_stage_order: bool = config.STRICT_STAGE_ORDER,
        attempts: int = config.CAS_ATTEMPTS,
        log_limit: int = config.TRANSACTION_LOG_LIMIT,
        edit_window_days: int = config.REVIEW_EDIT_WINDOW_DAYS,
    ) -> None:
        self.store = KVStore(db_path, indexes=INDEXES)
        self.ledger = Ledger(
            self.store,
            payment_gateway=payment_gateway,
            clock=clock,
            log_limit=log_limit,
            attempts=attempts,
        )
        self.accounts = ProviderAccounts(self.store, clock=clock, attempts=attempts)
        self.verification = VerificationWorkflow(
            self.store,
            self.accounts,
            clock=clock,
            strict_order=strict_stage_order,
            attempts=attempts,
        )
        self.bookings = BookingLifecycle(self.store, self.accounts, self.ledger, clock=clock, attempts=attempts)
        self.matching = MatchingService(self.store, self.accounts, self.bookings, clock=clock, attempts=attempts)
        self.ratings = RatingAggregator(self.accounts, self.bookings, clock=clock, edit_window_days=edit_window_days)


marketplace = Marketplace(db_path=config.DB_PATH)


def get_marketplace() -> Marketplace:
    return marketplace
