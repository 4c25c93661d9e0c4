import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("CAREHUB_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="carehub-tests-"), "carehub.sqlite3"))

from carehub.models import ProviderSignupRequest, ServiceRequestCreate
from carehub.services.marketplace import Marketplace
from carehub.services.payment_gateway import PaymentGateway

PAYMENT_SECRET = "test-gateway-secret"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def signup_payload(name="Asha Care", skills=("elder-care",), specialty="Home nursing", complete=True) -> ProviderSignupRequest:
    return ProviderSignupRequest(
        name=name,
        email=f"{name.split()[0].lower()}@example.com" if complete else "",
        phone="+91 90000 00000" if complete else "",
        specialty=specialty,
        skills=list(skills),
        hourly_rate=Decimal("350"),
        experience_years=4,
        email_verified=complete,
        mobile_verified=complete,
        id_card_number="ID-1234" if complete else "",
        id_card_copy="id-card.png" if complete else "",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def market(tmp_path, clock):
    return Marketplace(
        str(tmp_path / "carehub.sqlite3"),
        clock=clock,
        payment_gateway=PaymentGateway(PAYMENT_SECRET),
        strict_stage_order=False,
    )


@pytest.fixture
def approved_provider(market):
    def _approve(provider_id, skills=("elder-care",), specialty="Home nursing"):
        market.accounts.register_provider(provider_id, signup_payload(name=f"{provider_id} Care", skills=skills, specialty=specialty))
        provider = None
        for stage in (1, 2, 3, 4):
            _, provider = market.verification.review(provider_id, stage, "approve", "ok", "admin_1")
        return provider

    return _approve


@pytest.fixture
def completed_booking(market):
    def _complete(client_id, provider_id, service_type="Elder-Care-Basic", cost="100.00"):
        booking = market.bookings.create_request(
            client_id,
            ServiceRequestCreate(service_type=service_type, estimated_cost=Decimal(cost)),
        )
        market.accounts.set_availability(provider_id, True)
        market.matching.accept(provider_id, booking.id)
        market.bookings.update_status(booking.id, provider_id, "in-progress")
        return market.bookings.update_status(booking.id, provider_id, "completed")

    return _complete


@pytest.fixture
def sign_payment():
    return PaymentGateway(PAYMENT_SECRET).sign


@pytest.fixture
def signup():
    return signup_payload
