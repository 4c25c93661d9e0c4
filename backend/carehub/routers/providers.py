from fastapi import APIRouter, Depends

from carehub.auth import require_identity
from carehub.models import (
    AvailabilityRequest,
    ContactCodeConfirmRequest,
    ContactCodeIssued,
    ContactCodeRequest,
    Identity,
    Provider,
    ProviderSignupRequest,
    Review,
    StageSubmitRequest,
    VerificationRecord,
)
from carehub.routers.http_errors import raise_http_error
from carehub.services.errors import MarketplaceError
from carehub.services.marketplace import Marketplace, get_marketplace

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[Provider])
def list_verified_providers(market: Marketplace = Depends(get_marketplace)):
    return [provider for provider in market.accounts.list_providers("approved") if provider.verified]


@router.post("/signup", response_model=Provider)
def signup(
    request: ProviderSignupRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.accounts.register_provider(identity.user_id, request)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/me", response_model=Provider)
def my_profile(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    try:
        return market.accounts.get_provider(identity.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/me/availability", response_model=Provider)
def set_availability(
    request: AvailabilityRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.accounts.set_availability(identity.user_id, request.available)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/me/verification", response_model=VerificationRecord)
def verification_status(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    try:
        return market.verification.get_status(identity.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/me/verification/stages", response_model=VerificationRecord)
def submit_stage(
    request: StageSubmitRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.submit_stage(identity.user_id, request.stage, request.data)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/me/verification/contact-code", response_model=ContactCodeIssued)
def issue_contact_code(
    request: ContactCodeRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.issue_contact_code(identity.user_id, request.channel)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/me/verification/contact-code/confirm", response_model=VerificationRecord)
def confirm_contact_code(
    request: ContactCodeConfirmRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.confirm_contact_code(identity.user_id, request.channel, request.code)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}", response_model=Provider)
def provider_details(provider_id: str, market: Marketplace = Depends(get_marketplace)):
    try:
        return market.accounts.get_provider(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/reviews", response_model=list[Review])
def provider_reviews(provider_id: str, market: Marketplace = Depends(get_marketplace)):
    return market.ratings.list_provider_reviews(provider_id)
