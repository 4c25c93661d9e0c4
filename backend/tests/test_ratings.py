import pytest

from carehub.models import ServiceRequest, ServiceRequestCreate
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)


def test_first_rating_stamps_rated_at(market, approved_provider, completed_booking, clock):
    approved_provider("P")
    booking = completed_booking("client_1", "P")

    rated = market.ratings.rate(booking.id, "client_1", 5, "Very kind")

    assert rated.user_rating == 5
    assert rated.user_review == "Very kind"
    assert rated.rated_at == clock.now
    assert rated.last_edited_at is None
    provider = market.accounts.get_provider("P")
    assert provider.rating == 5.0
    assert provider.total_reviews == 1
    assert provider.rating_display == "5.0"


def test_edit_within_window_keeps_rated_at(market, approved_provider, completed_booking, clock):
    approved_provider("P")
    booking = completed_booking("client_1", "P")
    first = market.ratings.rate(booking.id, "client_1", 5)

    clock.advance(days=6)
    edited = market.ratings.rate(booking.id, "client_1", 3, "Changed my mind")

    assert edited.rated_at == first.rated_at
    assert edited.last_edited_at == clock.now
    assert edited.user_rating == 3
    assert market.accounts.get_provider("P").rating == 3.0


def test_edit_after_window_is_forbidden(market, approved_provider, completed_booking, clock):
    approved_provider("P")
    booking = completed_booking("client_1", "P")
    first = market.ratings.rate(booking.id, "client_1", 4)

    clock.advance(days=8)
    with pytest.raises(MarketplacePermissionError):
        market.ratings.rate(booking.id, "client_1", 1)

    stored = market.bookings.get(booking.id)
    assert stored.user_rating == 4
    assert stored.rated_at == first.rated_at
    assert market.accounts.get_provider("P").rating == 4.0


def test_rating_requires_completed_booking_and_owner(market, approved_provider, completed_booking):
    approved_provider("P")
    booking = completed_booking("client_1", "P")
    open_request = market.bookings.create_request("client_1", ServiceRequestCreate(service_type="elder-care"))

    with pytest.raises(MarketplacePermissionError):
        market.ratings.rate(booking.id, "client_2", 5)
    with pytest.raises(MarketplaceConflictError):
        market.ratings.rate(open_request.id, "client_1", 5)
    for bad in (0, 6, True, "5"):
        with pytest.raises(MarketplaceValidationError):
            market.ratings.rate(booking.id, "client_1", bad)


def test_rating_is_mean_of_visible_reviews_regardless_of_order(market, approved_provider, completed_booking, clock):
    approved_provider("P")
    first = completed_booking("client_1", "P")
    second = completed_booking("client_2", "P")
    third = completed_booking("client_3", "P")

    market.ratings.rate(second.id, "client_2", 4)
    market.ratings.rate(first.id, "client_1", 5)
    market.ratings.rate(third.id, "client_3", 4)
    clock.advance(days=1)
    market.ratings.rate(first.id, "client_1", 2)

    provider = market.accounts.get_provider("P")
    assert provider.rating == pytest.approx(3.33)
    assert provider.total_reviews == 3
    assert provider.rating_display == "3.3"


def test_hide_and_unhide_recompute(market, approved_provider, completed_booking):
    approved_provider("P")
    first = completed_booking("client_1", "P")
    second = completed_booking("client_2", "P")
    market.ratings.rate(first.id, "client_1", 5)
    market.ratings.rate(second.id, "client_2", 2)
    assert market.accounts.get_provider("P").rating == 3.5

    hidden = market.ratings.hide(second.id, "admin_1", "abusive language")
    assert hidden.review_hidden is True
    assert hidden.review_hidden_reason == "abusive language"
    provider = market.accounts.get_provider("P")
    assert provider.rating == 5.0
    assert provider.total_reviews == 1
    assert [review.id for review in market.ratings.list_provider_reviews("P")] == [first.id]
    assert {review.id for review in market.ratings.list_reviews()} == {first.id, second.id}

    market.ratings.unhide(second.id, "admin_1")
    provider = market.accounts.get_provider("P")
    assert provider.rating == 3.5
    assert provider.total_reviews == 2


def test_delete_review_adjusts_average_incrementally(market, approved_provider, completed_booking):
    approved_provider("P")
    bookings = [completed_booking(f"client_{index}", "P") for index in range(3)]
    for booking, score in zip(bookings, (5, 4, 3)):
        market.ratings.rate(booking.id, booking.client_id, score)
    assert market.accounts.get_provider("P").rating == 4.0

    deleted = market.ratings.delete_review(bookings[2].id, "admin_1")

    assert deleted.user_rating is None
    assert deleted.user_review is None
    assert deleted.rated_at is None
    provider = market.accounts.get_provider("P")
    assert provider.rating == 4.5
    assert provider.total_reviews == 2
    with pytest.raises(MarketplaceNotFoundError):
        market.ratings.delete_review(bookings[2].id, "admin_1")


def test_deleting_hidden_review_leaves_average_alone(market, approved_provider, completed_booking):
    approved_provider("P")
    first = completed_booking("client_1", "P")
    second = completed_booking("client_2", "P")
    market.ratings.rate(first.id, "client_1", 5)
    market.ratings.rate(second.id, "client_2", 1)
    market.ratings.hide(second.id, "admin_1")

    market.ratings.delete_review(second.id, "admin_1")

    provider = market.accounts.get_provider("P")
    assert provider.rating == 5.0
    assert provider.total_reviews == 1


def test_deleting_last_review_resets_average(market, approved_provider, completed_booking):
    approved_provider("P")
    booking = completed_booking("client_1", "P")
    market.ratings.rate(booking.id, "client_1", 4)

    market.ratings.delete_review(booking.id, "admin_1")

    provider = market.accounts.get_provider("P")
    assert provider.rating == 0.0
    assert provider.total_reviews == 0


def test_legacy_rating_aliases_load_into_user_rating():
    legacy = ServiceRequest.model_validate(
        {"id": "req_1", "client_id": "c1", "service_type": "care", "status": "completed", "userRating": 4, "review": "ok"}
    )
    assert legacy.user_rating == 4
    assert legacy.user_review == "ok"

    older = ServiceRequest.model_validate({"id": "req_2", "client_id": "c1", "service_type": "care", "rating": 2})
    assert older.user_rating == 2


def test_hide_unknown_review_is_not_found(market, approved_provider, completed_booking):
    approved_provider("P")
    booking = completed_booking("client_1", "P")
    with pytest.raises(MarketplaceNotFoundError):
        market.ratings.hide(booking.id, "admin_1")
    with pytest.raises(MarketplaceNotFoundError):
        market.ratings.unhide("req_missing", "admin_1")


def test_review_listing_tracks_rated_bookings(market, approved_provider, completed_booking):
    approved_provider("P")
    rated = completed_booking("client_1", "P")
    hidden = completed_booking("client_2", "P")
    completed_booking("client_3", "P")
    market.ratings.rate(rated.id, "client_1", 4, "Punctual")
    market.ratings.rate(hidden.id, "client_2", 1)
    market.ratings.hide(hidden.id, "admin_1", "abusive")

    listed = {review.booking_id: review for review in market.ratings.list_reviews()}
    assert set(listed) == {rated.id, hidden.id}
    assert listed[hidden.id].hidden is True
    assert listed[rated.id].review == "Punctual"

    market.ratings.delete_review(rated.id, "admin_1")
    assert [review.booking_id for review in market.ratings.list_reviews()] == [hidden.id]
