import logging
from typing import Any, Callable, Dict, List, Optional

from carehub.models import Provider, ServiceRequest
from carehub.services.accounts import ProviderAccounts, is_eligible, provider_key
from carehub.services.bookings import BookingLifecycle, record_transition, request_key
from carehub.services.common import Clock, utc_now
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
)
from carehub.services.kv_store import KVStore

logger = logging.getLogger(__name__)


def matches_provider(service_type: str, provider: Provider) -> bool:
    """Case-insensitive substring match, in either direction, against specialty or any skill."""
    wanted = service_type.strip().lower()
    if not wanted:
        return False
    for candidate in [provider.specialty, *provider.skills]:
        offered = (candidate or "").strip().lower()
        if offered and (offered in wanted or wanted in offered):
            return True
    return False


class MatchingService:
    """Surfaces open requests to eligible providers and resolves competing claims.

    A claim writes the request record on the condition that neither the request
    nor the claiming provider's profile changed since they were read, so of
    several providers accepting the same request exactly one wins, and a
    provider blacklisted mid-claim never gets the job.
    """

    def __init__(
        self,
        store: KVStore,
        accounts: ProviderAccounts,
        bookings: BookingLifecycle,
        *,
        clock: Clock = utc_now,
        attempts: int = 5,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._bookings = bookings
        self._clock = clock
        self._attempts = attempts

    def list_eligible_requests(self, provider_id: str) -> List[ServiceRequest]:
        provider = self._check_eligible(self._accounts.find_provider(provider_id), require_available=False)
        open_requests = [booking for booking in self._bookings.list_all(status="pending") if not booking.provider_id]
        matched = [booking for booking in open_requests if matches_provider(booking.service_type, provider)]
        logger.info("Provider %s matched %d of %d open requests", provider_id, len(matched), len(open_requests))
        return matched

    def accept(self, provider_id: str, request_id: str) -> ServiceRequest:
        def mutate(booking: ServiceRequest, current: Optional[Provider]) -> ServiceRequest:
            provider = self._check_eligible(current, require_available=True)
            if booking.provider_id or booking.status != "pending":
                raise MarketplaceConflictError("Request has already been accepted by another provider")
            now = self._clock()
            return record_transition(
                booking,
                "accepted",
                provider_id,
                now,
                provider_id=provider_id,
                provider_name=provider.name,
                accepted_at=now,
            )

        try:
            booking = self._claim(request_id, provider_id, mutate)
        except MarketplaceConflictError:
            logger.warning("Provider %s lost the race for request %s", provider_id, request_id)
            raise

        self._mark_busy(provider_id)
        logger.info("Provider %s accepted request %s", provider_id, request_id)
        return booking

    def reassign(self, request_id: str, provider_id: str, admin_id: str) -> ServiceRequest:
        """Hand a pending or accepted request to a specific provider chosen by an admin.

        Availability is not required; verification and blacklist status are.
        """
        previous: Dict[str, Optional[str]] = {}

        def mutate(booking: ServiceRequest, current: Optional[Provider]) -> ServiceRequest:
            if current is None:
                raise MarketplaceNotFoundError("Provider not found")
            provider = self._check_eligible(current, require_available=False)
            if booking.status not in {"pending", "accepted"}:
                raise MarketplaceConflictError(f"Cannot reassign a request that is {booking.status}")
            if booking.provider_id == provider_id:
                raise MarketplaceConflictError("Request is already assigned to this provider")
            previous["provider_id"] = booking.provider_id
            now = self._clock()
            changes: Dict[str, Any] = {
                "provider_id": provider_id,
                "provider_name": provider.name,
                "accepted_at": now,
                "reassigned_at": now,
                "reassigned_by": admin_id,
            }
            if booking.provider_id:
                changes["previous_provider_id"] = booking.provider_id
            return record_transition(booking, "accepted", admin_id, now, note=f"reassigned to {provider_id}", **changes)

        booking = self._claim(request_id, provider_id, mutate)
        previous_provider_id = previous.get("provider_id")
        if previous_provider_id:
            self._free_provider(previous_provider_id, "reassign")
        self._mark_busy(provider_id)
        logger.info(
            "Admin %s reassigned request %s from %s to %s",
            admin_id,
            request_id,
            previous_provider_id,
            provider_id,
        )
        return booking

    def release(self, request_id: str, admin_id: str) -> ServiceRequest:
        """Take the assigned provider off a booking and put it back in the open pool."""
        removed: Dict[str, Optional[str]] = {}

        def mutate(booking: ServiceRequest) -> ServiceRequest:
            if not booking.provider_id:
                raise MarketplaceConflictError("No provider assigned to this request")
            if booking.status not in {"accepted", "in-progress"}:
                raise MarketplaceConflictError(f"Cannot remove the provider from a request that is {booking.status}")
            removed["provider_id"] = booking.provider_id
            return record_transition(
                booking,
                "pending",
                admin_id,
                self._clock(),
                note="provider removed by admin",
                provider_id=None,
                provider_name=None,
                accepted_at=None,
                started_at=None,
                removed_provider_id=booking.provider_id,
            )

        booking = self._bookings.update(request_id, mutate)
        provider_id = removed.get("provider_id")
        if provider_id:
            self._free_provider(provider_id, "release")
        logger.info("Admin %s removed provider %s from request %s", admin_id, provider_id, request_id)
        return booking

    def _claim(
        self,
        request_id: str,
        provider_id: str,
        mutate: Callable[[ServiceRequest, Optional[Provider]], ServiceRequest],
    ) -> ServiceRequest:
        keys = [request_key(request_id), provider_key(provider_id)]

        def apply(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            raw_booking = snapshot[keys[0]]
            if not raw_booking:
                raise MarketplaceNotFoundError("Request not found")
            raw_provider = snapshot[keys[1]]
            provider = Provider.model_validate(raw_provider) if raw_provider else None
            booking = mutate(ServiceRequest.model_validate(raw_booking), provider)
            # Only the request is written; the provider key is version-checked.
            return {keys[0]: booking.model_dump(mode="json")}

        written = self._store.update_many(keys, apply, attempts=self._attempts)
        return ServiceRequest.model_validate(written[keys[0]])

    def _mark_busy(self, provider_id: str) -> None:
        self._accounts.update_best_effort(
            provider_id,
            lambda current: current.model_copy(update={"available": False}),
            "mark busy",
        )

    def _free_provider(self, provider_id: str, action: str) -> None:
        self._accounts.update_best_effort(
            provider_id,
            lambda current: current.model_copy(update={"available": current.available or is_eligible(current)}),
            action,
        )

    def _check_eligible(self, provider: Optional[Provider], *, require_available: bool) -> Provider:
        if provider is None:
            raise MarketplacePermissionError("Only registered providers can take jobs")
        if provider.is_blacklisted:
            raise MarketplacePermissionError("Provider is blacklisted")
        if not is_eligible(provider):
            raise MarketplacePermissionError("Provider is not verified")
        if require_available and not provider.available:
            raise MarketplacePermissionError("Provider is not available")
        return provider
