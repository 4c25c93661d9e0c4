import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from carehub.models import Provider, ServiceRequest, ServiceRequestCreate, StatusChange, Wallet
from carehub.services.accounts import ProviderAccounts, is_eligible
from carehub.services.common import Clock, new_id, utc_now
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from carehub.services.kv_store import KVStore
from carehub.services.ledger import Ledger

logger = logging.getLogger(__name__)

ASSIGNED_STATUSES = {"accepted", "in-progress", "completed"}
TERMINAL_STATUSES = {"completed", "cancelled"}
CANCELLABLE_STATUSES = {"pending", "accepted"}


def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def record_transition(
    booking: ServiceRequest,
    to_status: str,
    actor_id: str,
    at: Any,
    note: str = "",
    **changes: Any,
) -> ServiceRequest:
    entry = StatusChange(from_status=booking.status, to_status=to_status, actor_id=actor_id, note=note, at=at)
    return booking.model_copy(
        update={**changes, "status": to_status, "updated_at": at, "history": [*booking.history, entry]}
    )


class BookingLifecycle:
    def __init__(
        self,
        store: KVStore,
        accounts: ProviderAccounts,
        ledger: Ledger,
        *,
        clock: Clock = utc_now,
        attempts: int = 5,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._ledger = ledger
        self._clock = clock
        self._attempts = attempts

    def create_request(self, client_id: str, payload: ServiceRequestCreate) -> ServiceRequest:
        if not payload.service_type.strip():
            raise MarketplaceValidationError("service_type is required")
        if payload.estimated_cost < 0:
            raise MarketplaceValidationError("estimated_cost cannot be negative")
        if payload.duration_hours is not None and payload.duration_hours <= 0:
            raise MarketplaceValidationError("duration_hours must be greater than 0")

        now = self._clock()
        booking = ServiceRequest(
            id=new_id("req"),
            client_id=client_id,
            service_type=payload.service_type.strip(),
            service_title=payload.service_title.strip() or payload.service_type.strip(),
            scheduled_date=payload.scheduled_date,
            scheduled_time=payload.scheduled_time,
            location=payload.location.strip(),
            additional_details=payload.additional_details,
            duration_hours=payload.duration_hours,
            estimated_cost=payload.estimated_cost,
            created_at=now,
            updated_at=now,
        )
        if not self._store.compare_and_set(request_key(booking.id), 0, booking.model_dump(mode="json")):
            raise MarketplaceConflictError("Request id collision, please retry")
        logger.info("Client %s created request %s (%s)", client_id, booking.id, booking.service_type)
        return booking

    def get(self, request_id: str) -> ServiceRequest:
        raw = self._store.get(request_key(request_id))
        if not raw:
            raise MarketplaceNotFoundError("Request not found")
        return ServiceRequest.model_validate(raw)

    def get_for_actor(self, request_id: str, actor_id: str, *, is_admin: bool = False) -> ServiceRequest:
        booking = self.get(request_id)
        if not is_admin and actor_id not in {booking.client_id, booking.provider_id}:
            raise MarketplacePermissionError("Not a party to this request")
        return booking

    def list_for_client(self, client_id: str) -> List[ServiceRequest]:
        return self._sorted(self._store.query_index("request", "client_id", client_id))

    def list_for_provider(self, provider_id: str) -> List[ServiceRequest]:
        return self._sorted(self._store.query_index("request", "provider_id", provider_id))

    def list_all(self, status: Optional[str] = None) -> List[ServiceRequest]:
        if status:
            return self._sorted(self._store.query_index("request", "status", status))
        return self._sorted(self._store.list_by_prefix("request:"))

    def list_reviewed(self) -> List[ServiceRequest]:
        return self._sorted(self._store.query_index("request", "has_review", True))

    def update(self, request_id: str, mutate: Callable[[ServiceRequest], ServiceRequest]) -> ServiceRequest:
        def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if not current:
                raise MarketplaceNotFoundError("Request not found")
            return mutate(ServiceRequest.model_validate(current)).model_dump(mode="json")

        return ServiceRequest.model_validate(self._store.update(request_key(request_id), apply, attempts=self._attempts))

    def update_status(
        self,
        request_id: str,
        provider_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        allowed_transitions: Dict[str, set[str]] = {
            "accepted": {"in-progress"},
            "in-progress": {"completed"},
        }
        previous: Dict[str, str] = {}

        def mutate(booking: ServiceRequest) -> ServiceRequest:
            if booking.provider_id != provider_id:
                raise MarketplacePermissionError("Only the assigned provider can update this request")
            previous["status"] = booking.status
            now = self._clock()
            changes: Dict[str, Any] = {}
            if notes is not None:
                changes.update(provider_notes=notes, notes_updated_at=now)
            if booking.status == status:
                # Repeats are accepted but never restamp started_at / completed_at.
                return booking.model_copy(update={**changes, "updated_at": now}) if changes else booking
            if booking.status in TERMINAL_STATUSES:
                raise MarketplaceConflictError("Request is already terminal")
            if status not in allowed_transitions.get(booking.status, set()):
                raise MarketplaceValidationError(f"Invalid status transition: {booking.status} -> {status}")
            if status == "in-progress" and booking.started_at is None:
                changes["started_at"] = now
            if status == "completed" and booking.completed_at is None:
                changes["completed_at"] = now
            return record_transition(booking, status, provider_id, now, notes or "", **changes)

        booking = self.update(request_id, mutate)
        if previous.get("status") != status and status == "completed":
            self._accounts.update_best_effort(
                provider_id,
                lambda provider: provider.model_copy(
                    update={"available": provider.available or is_eligible(provider), "total_jobs": provider.total_jobs + 1}
                ),
                "job completed",
            )
        logger.info("Request %s moved %s -> %s by provider %s", request_id, previous.get("status"), booking.status, provider_id)
        return booking

    def update_notes(self, request_id: str, provider_id: str, notes: str) -> ServiceRequest:
        def mutate(booking: ServiceRequest) -> ServiceRequest:
            if booking.provider_id != provider_id:
                raise MarketplacePermissionError("Only the assigned provider can update notes")
            now = self._clock()
            return booking.model_copy(update={"provider_notes": notes, "notes_updated_at": now, "updated_at": now})

        return self.update(request_id, mutate)

    def cancel(self, request_id: str, client_id: str) -> ServiceRequest:
        released: Dict[str, Optional[str]] = {}

        def mutate(booking: ServiceRequest) -> ServiceRequest:
            if booking.client_id != client_id:
                raise MarketplacePermissionError("Only the client who created the request can cancel it")
            if booking.status not in CANCELLABLE_STATUSES:
                raise MarketplaceConflictError(f"Cannot cancel a request that is {booking.status}")
            released["provider_id"] = booking.provider_id
            now = self._clock()
            return record_transition(
                booking,
                "cancelled",
                client_id,
                now,
                cancelled_at=now,
                cancelled_provider_id=booking.provider_id,
                provider_id=None,
            )

        booking = self.update(request_id, mutate)
        if released.get("provider_id"):
            self._free_provider(str(released["provider_id"]), "request cancelled")
        logger.info("Client %s cancelled request %s", client_id, request_id)
        return booking

    def settle(self, request_id: str, client_id: str) -> Tuple[ServiceRequest, Wallet]:
        """Pay the assigned provider the booking's estimated cost from the client's wallet.

        The booking is flagged paid first so a second settle loses the race; if
        the transfer then fails the flag is put back.
        """

        def mark_paid(booking: ServiceRequest) -> ServiceRequest:
            if booking.client_id != client_id:
                raise MarketplacePermissionError("Only the client who created the request can pay for it")
            if booking.status not in ASSIGNED_STATUSES or not booking.provider_id:
                raise MarketplaceConflictError("Request has no assigned provider to pay")
            if booking.payment_status == "paid":
                raise MarketplaceConflictError("Request is already paid")
            if booking.estimated_cost <= 0:
                raise MarketplaceValidationError("Request has no amount to pay")
            return booking.model_copy(update={"payment_status": "paid", "paid_at": self._clock()})

        booking = self.update(request_id, mark_paid)
        provider_id = str(booking.provider_id)
        try:
            source, _ = self._ledger.transfer(
                client_id,
                provider_id,
                booking.estimated_cost,
                {"description": f"Payment for booking {request_id}", "booking_id": request_id},
            )
        except MarketplaceError:
            logger.warning("Payment for request %s failed, restoring unpaid", request_id)
            try:
                self.update(request_id, lambda current: current.model_copy(update={"payment_status": "unpaid", "paid_at": None}))
            except MarketplaceError:
                logger.exception("Could not restore payment status for request %s", request_id)
            raise

        self._accounts.update_best_effort(
            provider_id,
            lambda provider: provider.model_copy(update={"total_earnings": provider.total_earnings + booking.estimated_cost}),
            "earnings",
        )
        logger.info("Client %s paid %s to provider %s for request %s", client_id, booking.estimated_cost, provider_id, request_id)
        return booking, source

    def _free_provider(self, provider_id: str, action: str) -> Optional[Provider]:
        def mutate(provider: Provider) -> Provider:
            if not is_eligible(provider):
                return provider
            return provider.model_copy(update={"available": True})

        return self._accounts.update_best_effort(provider_id, mutate, action)

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[ServiceRequest]:
        bookings = [ServiceRequest.model_validate(row) for row in rows if row]
        bookings.sort(key=lambda booking: booking.created_at.isoformat() if booking.created_at else "", reverse=True)
        return bookings
