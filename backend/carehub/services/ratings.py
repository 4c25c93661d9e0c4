import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from carehub.models import Provider, Review, ServiceRequest
from carehub.services.accounts import ProviderAccounts
from carehub.services.bookings import BookingLifecycle
from carehub.services.common import Clock, utc_now
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)

logger = logging.getLogger(__name__)


def round_rating(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def aggregate_ratings(bookings: Iterable[ServiceRequest]) -> Tuple[float, int]:
    """Mean of all visible ratings (2 decimals) and how many there are."""
    ratings = [booking.user_rating for booking in bookings if booking.user_rating is not None and not booking.review_hidden]
    if not ratings:
        return 0.0, 0
    return round_rating(Decimal(sum(ratings)) / Decimal(len(ratings))), len(ratings)


def review_from_booking(booking: ServiceRequest) -> Review:
    return Review(
        id=booking.id,
        booking_id=booking.id,
        rating=int(booking.user_rating or 0),
        review=booking.user_review or "",
        client_id=booking.client_id,
        provider_id=booking.provider_id,
        service_type=booking.service_type,
        rated_at=booking.rated_at,
        last_edited_at=booking.last_edited_at,
        hidden=booking.review_hidden,
        hidden_reason=booking.review_hidden_reason,
    )


class RatingAggregator:
    """Client ratings on completed bookings and the provider averages derived from them.

    Reviews are addressed by the id of the booking they belong to.
    """

    def __init__(
        self,
        accounts: ProviderAccounts,
        bookings: BookingLifecycle,
        *,
        clock: Clock = utc_now,
        edit_window_days: int = 7,
    ) -> None:
        self._accounts = accounts
        self._bookings = bookings
        self._clock = clock
        self._edit_window = timedelta(days=edit_window_days)

    def rate(self, booking_id: str, client_id: str, rating: int, review: str = "") -> ServiceRequest:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise MarketplaceValidationError("Rating must be an integer between 1 and 5")

        def mutate(booking: ServiceRequest) -> ServiceRequest:
            if booking.client_id != client_id:
                raise MarketplacePermissionError("Only the client who made the booking can rate it")
            if booking.status != "completed":
                raise MarketplaceConflictError("Only completed bookings can be rated")
            now = self._clock()
            if booking.rated_at is None:
                return booking.model_copy(update={"user_rating": rating, "user_review": review, "rated_at": now, "updated_at": now})
            if now - booking.rated_at > self._edit_window:
                raise MarketplacePermissionError("Review can no longer be edited")
            return booking.model_copy(update={"user_rating": rating, "user_review": review, "last_edited_at": now, "updated_at": now})

        booking = self._bookings.update(booking_id, mutate)
        logger.info("Client %s rated booking %s with %d", client_id, booking_id, rating)
        if booking.provider_id:
            self.recompute(booking.provider_id)
        return booking

    def recompute(self, provider_id: str) -> Optional[Provider]:
        def mutate(provider: Provider) -> Provider:
            rating, total = aggregate_ratings(self._bookings.list_for_provider(provider_id))
            return provider.model_copy(update={"rating": rating, "total_reviews": total})

        provider = self._accounts.update_best_effort(provider_id, mutate, "rating recompute")
        if provider is not None:
            logger.info("Provider %s rating is now %s over %d reviews", provider_id, provider.rating, provider.total_reviews)
        return provider

    def hide(self, review_id: str, admin_id: str, reason: str = "") -> ServiceRequest:
        def mutate(booking: ServiceRequest) -> ServiceRequest:
            self._require_review(booking)
            return booking.model_copy(
                update={
                    "review_hidden": True,
                    "review_hidden_at": self._clock(),
                    "review_hidden_by": admin_id,
                    "review_hidden_reason": reason or None,
                }
            )

        booking = self._bookings.update(review_id, mutate)
        logger.info("Admin %s hid review %s", admin_id, review_id)
        if booking.provider_id:
            self.recompute(booking.provider_id)
        return booking

    def unhide(self, review_id: str, admin_id: str) -> ServiceRequest:
        def mutate(booking: ServiceRequest) -> ServiceRequest:
            self._require_review(booking)
            return booking.model_copy(
                update={
                    "review_hidden": False,
                    "review_hidden_at": None,
                    "review_hidden_by": None,
                    "review_hidden_reason": None,
                }
            )

        booking = self._bookings.update(review_id, mutate)
        logger.info("Admin %s unhid review %s", admin_id, review_id)
        if booking.provider_id:
            self.recompute(booking.provider_id)
        return booking

    def delete_review(self, review_id: str, admin_id: str) -> ServiceRequest:
        removed: Dict[str, object] = {}

        def mutate(booking: ServiceRequest) -> ServiceRequest:
            self._require_review(booking)
            removed.update(rating=booking.user_rating, visible=not booking.review_hidden)
            return booking.model_copy(
                update={
                    "user_rating": None,
                    "user_review": None,
                    "rated_at": None,
                    "last_edited_at": None,
                    "review_hidden": False,
                    "review_hidden_at": None,
                    "review_hidden_by": None,
                    "review_hidden_reason": None,
                    "updated_at": self._clock(),
                }
            )

        booking = self._bookings.update(review_id, mutate)
        logger.info("Admin %s deleted review %s", admin_id, review_id)
        # Hidden reviews were never part of the average.
        if booking.provider_id and removed.get("visible"):
            removed_rating = Decimal(int(removed["rating"]))  # type: ignore[arg-type]

            def adjust(provider: Provider) -> Provider:
                count = provider.total_reviews
                if count <= 1:
                    return provider.model_copy(update={"rating": 0.0, "total_reviews": 0})
                total = Decimal(str(provider.rating)) * count - removed_rating
                return provider.model_copy(update={"rating": round_rating(total / (count - 1)), "total_reviews": count - 1})

            self._accounts.update_best_effort(booking.provider_id, adjust, "review delete")
        return booking

    def list_reviews(self) -> List[Review]:
        return [review_from_booking(booking) for booking in self._bookings.list_reviewed()]

    def list_provider_reviews(self, provider_id: str) -> List[Review]:
        return [
            review_from_booking(booking)
            for booking in self._bookings.list_for_provider(provider_id)
            if booking.user_rating is not None and not booking.review_hidden
        ]

    def _require_review(self, booking: ServiceRequest) -> None:
        if booking.user_rating is None:
            raise MarketplaceNotFoundError("Review not found")
