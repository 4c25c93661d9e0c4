from typing import Optional

from fastapi import APIRouter, Depends, Query

from carehub.auth import require_admin
from carehub.models import (
    BlacklistRequest,
    Identity,
    Provider,
    ProviderAdminRequest,
    Review,
    ReviewHideRequest,
    ServiceRequest,
    StageReviewRequest,
    StageReviewResult,
    VerificationRecord,
    Wallet,
)
from carehub.routers.http_errors import raise_http_error
from carehub.services.errors import MarketplaceError
from carehub.services.marketplace import Marketplace, get_marketplace

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/verifications/pending", response_model=list[VerificationRecord])
def pending_verifications(_: Identity = Depends(require_admin), market: Marketplace = Depends(get_marketplace)):
    return market.verification.list_pending()


@router.get("/verifications/{provider_id}", response_model=VerificationRecord)
def verification_details(
    provider_id: str,
    _: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.get_status(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/verifications/review", response_model=StageReviewResult)
def review_stage(
    request: StageReviewRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        record, provider = market.verification.review(
            request.provider_id,
            request.stage,
            request.action,
            request.notes,
            admin.user_id,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    return StageReviewResult(verification=record, provider=provider)


@router.get("/providers", response_model=list[Provider])
def list_providers(
    status: Optional[str] = Query(default=None),
    _: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    return market.accounts.list_providers(status)


@router.post("/providers/unapprove", response_model=Provider)
def unapprove_provider(
    request: ProviderAdminRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.unapprove(request.provider_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/providers/blacklist", response_model=Provider)
def blacklist_provider(
    request: BlacklistRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.blacklist(request.provider_id, request.reason, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/providers/remove-blacklist", response_model=Provider)
def remove_blacklist(
    request: ProviderAdminRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.verification.remove_blacklist(request.provider_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/requests", response_model=list[ServiceRequest])
def list_requests(
    status: Optional[str] = Query(default=None),
    _: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    return market.bookings.list_all(status)


@router.post("/requests/{request_id}/release", response_model=ServiceRequest)
def release_request(
    request_id: str,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.matching.release(request_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/requests/{request_id}/reassign", response_model=ServiceRequest)
def reassign_request(
    request_id: str,
    request: ProviderAdminRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.matching.reassign(request_id, request.provider_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/reviews", response_model=list[Review])
def list_reviews(_: Identity = Depends(require_admin), market: Marketplace = Depends(get_marketplace)):
    return market.ratings.list_reviews()


@router.post("/reviews/{review_id}/hide", response_model=ServiceRequest)
def hide_review(
    review_id: str,
    request: ReviewHideRequest,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.ratings.hide(review_id, admin.user_id, request.reason)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/reviews/{review_id}/unhide", response_model=ServiceRequest)
def unhide_review(
    review_id: str,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.ratings.unhide(review_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.delete("/reviews/{review_id}", response_model=ServiceRequest)
def delete_review(
    review_id: str,
    admin: Identity = Depends(require_admin),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.ratings.delete_review(review_id, admin.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/wallets", response_model=list[Wallet])
def list_wallets(_: Identity = Depends(require_admin), market: Marketplace = Depends(get_marketplace)):
    return market.ledger.list_wallets()
