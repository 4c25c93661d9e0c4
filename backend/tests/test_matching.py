from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from carehub.models import Provider, ServiceRequestCreate
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
)
from carehub.services.matching import matches_provider


def _request(market, client_id="client_1", service_type="Elder-Care-Basic"):
    return market.bookings.create_request(
        client_id,
        ServiceRequestCreate(service_type=service_type, estimated_cost=Decimal("400")),
    )


@pytest.mark.parametrize(
    "service_type, specialty, skills, expected",
    [
        ("Elder-Care-Basic", "", ["elder-care"], True),
        ("nursing", "", ["Home Nursing"], True),
        ("Physiotherapy Session", "physiotherapy", [], True),
        ("Baby Sitting", "", ["elder-care", "cooking"], False),
        ("", "nursing", ["nursing"], False),
    ],
)
def test_matches_provider_is_fuzzy_in_both_directions(service_type, specialty, skills, expected):
    provider = Provider(id="p1", name="P", specialty=specialty, skills=skills)
    assert matches_provider(service_type, provider) is expected


def test_elder_care_scenario(market, approved_provider):
    approved_provider("P", skills=["elder-care"])
    approved_provider("Q", skills=["elder-care"])
    booking = _request(market)

    assert [item.id for item in market.matching.list_eligible_requests("P")] == [booking.id]

    accepted = market.matching.accept("P", booking.id)
    assert accepted.status == "accepted"
    assert accepted.provider_id == "P"
    assert accepted.provider_name == "P Care"

    with pytest.raises(MarketplaceConflictError):
        market.matching.accept("Q", booking.id)
    assert market.bookings.get(booking.id).provider_id == "P"
    assert market.matching.list_eligible_requests("Q") == []


def test_accept_race_has_exactly_one_winner(market, approved_provider):
    provider_ids = [f"prov_{index}" for index in range(8)]
    for provider_id in provider_ids:
        approved_provider(provider_id, skills=["elder-care"])
    booking = _request(market)

    def attempt(provider_id):
        try:
            return market.matching.accept(provider_id, booking.id)
        except MarketplaceConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(provider_ids)) as pool:
        results = list(pool.map(attempt, provider_ids))

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(losers) == len(provider_ids) - 1
    assert all(isinstance(loser, MarketplaceConflictError) for loser in losers)

    stored = market.bookings.get(booking.id)
    assert stored.provider_id == winners[0].provider_id
    assert stored.status == "accepted"
    assert len(stored.history) == 1


def test_accept_marks_provider_busy(market, approved_provider):
    approved_provider("P")
    first = _request(market)
    second = _request(market)

    market.matching.accept("P", first.id)

    assert market.accounts.get_provider("P").available is False
    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("P", second.id)


def test_accept_precondition_order(market, approved_provider, signup):
    with pytest.raises(MarketplaceNotFoundError):
        market.matching.accept("P", "req_missing")

    booking = _request(market)
    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("nobody", booking.id)

    market.accounts.register_provider("U", signup(name="Unverified Helper"))
    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("U", booking.id)
    with pytest.raises(MarketplacePermissionError):
        market.matching.list_eligible_requests("U")

    approved_provider("B")
    market.verification.blacklist("B", "complaints", "admin_1")
    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("B", booking.id)
    assert market.bookings.get(booking.id).status == "pending"


def test_unavailable_provider_can_browse_but_not_accept(market, approved_provider):
    approved_provider("P")
    market.accounts.set_availability("P", False)
    booking = _request(market)

    assert [item.id for item in market.matching.list_eligible_requests("P")] == [booking.id]
    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("P", booking.id)


def test_cancelled_request_cannot_be_accepted(market, approved_provider):
    approved_provider("P")
    booking = _request(market)
    market.bookings.cancel(booking.id, "client_1")

    assert market.matching.list_eligible_requests("P") == []
    with pytest.raises(MarketplaceConflictError):
        market.matching.accept("P", booking.id)


def test_release_returns_booking_to_open_pool(market, approved_provider):
    approved_provider("P")
    approved_provider("Q")
    booking = _request(market)
    market.matching.accept("P", booking.id)

    released = market.matching.release(booking.id, "admin_1")

    assert released.status == "pending"
    assert released.provider_id is None
    assert released.removed_provider_id == "P"
    assert market.accounts.get_provider("P").available is True
    assert [item.id for item in market.matching.list_eligible_requests("Q")] == [booking.id]
    assert market.matching.accept("Q", booking.id).provider_id == "Q"

    with pytest.raises(MarketplaceConflictError):
        market.matching.release(_request(market).id, "admin_1")


def test_eligible_requests_are_newest_first(market, approved_provider, clock):
    approved_provider("P")
    older = _request(market)
    clock.advance(minutes=5)
    newer = _request(market, service_type="elder-care overnight")
    _request(market, service_type="Pet Grooming")

    assert [item.id for item in market.matching.list_eligible_requests("P")] == [newer.id, older.id]


def test_provider_blacklisted_during_claim_does_not_win(market, approved_provider, monkeypatch):
    approved_provider("P")
    booking = _request(market)
    transact = market.store.transact
    fired = []

    def blacklist_then_transact(writes, checks=()):
        if not fired:
            fired.append(True)
            market.verification.blacklist("P", "fraud report", "admin_1")
        return transact(writes, checks)

    monkeypatch.setattr(market.store, "transact", blacklist_then_transact)

    with pytest.raises(MarketplacePermissionError):
        market.matching.accept("P", booking.id)

    stored = market.bookings.get(booking.id)
    assert stored.status == "pending"
    assert stored.provider_id is None
    assert stored.history == []


def test_reassign_moves_booking_to_chosen_provider(market, approved_provider, clock):
    approved_provider("P")
    approved_provider("Q")
    booking = _request(market)
    market.matching.accept("P", booking.id)
    market.accounts.set_availability("Q", False)

    clock.advance(minutes=30)
    reassigned = market.matching.reassign(booking.id, "Q", "admin_1")

    assert reassigned.status == "accepted"
    assert reassigned.provider_id == "Q"
    assert reassigned.provider_name == "Q Care"
    assert reassigned.previous_provider_id == "P"
    assert reassigned.reassigned_by == "admin_1"
    assert reassigned.accepted_at == clock.now
    assert reassigned.history[-1].actor_id == "admin_1"
    assert market.accounts.get_provider("P").available is True
    assert market.accounts.get_provider("Q").available is False
    assert [item.id for item in market.bookings.list_for_provider("Q")] == [booking.id]
    assert market.bookings.list_for_provider("P") == []


def test_reassign_open_request_has_no_previous_provider(market, approved_provider):
    approved_provider("P")
    booking = _request(market)

    reassigned = market.matching.reassign(booking.id, "P", "admin_1")

    assert reassigned.status == "accepted"
    assert reassigned.previous_provider_id is None
    with pytest.raises(MarketplaceConflictError):
        market.matching.reassign(booking.id, "P", "admin_1")


def test_reassign_requires_eligible_provider_and_open_booking(market, approved_provider, signup):
    approved_provider("P")
    approved_provider("B")
    market.verification.blacklist("B", "no-show", "admin_1")
    market.accounts.register_provider("U", signup(name="Unverified Helper"))
    booking = _request(market)

    with pytest.raises(MarketplaceNotFoundError):
        market.matching.reassign(booking.id, "ghost", "admin_1")
    with pytest.raises(MarketplaceNotFoundError):
        market.matching.reassign("req_missing", "P", "admin_1")
    with pytest.raises(MarketplacePermissionError):
        market.matching.reassign(booking.id, "B", "admin_1")
    with pytest.raises(MarketplacePermissionError):
        market.matching.reassign(booking.id, "U", "admin_1")

    market.matching.accept("P", booking.id)
    market.bookings.update_status(booking.id, "P", "in-progress")
    approved_provider("Q")
    with pytest.raises(MarketplaceConflictError):
        market.matching.reassign(booking.id, "Q", "admin_1")
    assert market.bookings.get(booking.id).provider_id == "P"
