from fastapi import APIRouter, Depends

from carehub.auth import is_admin, require_identity
from carehub.models import (
    Identity,
    RatingRequest,
    ServiceRequest,
    ServiceRequestCreate,
    SettlementResult,
)
from carehub.routers.http_errors import raise_http_error
from carehub.services.errors import MarketplaceError
from carehub.services.marketplace import Marketplace, get_marketplace

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequest)
def create_request(
    request: ServiceRequestCreate,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.bookings.create_request(identity.user_id, request)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[ServiceRequest])
def my_requests(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    return market.bookings.list_for_client(identity.user_id)


@router.get("/{request_id}", response_model=ServiceRequest)
def request_details(
    request_id: str,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.bookings.get_for_actor(request_id, identity.user_id, is_admin=is_admin(identity))
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.bookings.cancel(request_id, identity.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/rate", response_model=ServiceRequest)
def rate_request(
    request_id: str,
    request: RatingRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.ratings.rate(request_id, identity.user_id, request.rating, request.review)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/pay", response_model=SettlementResult)
def pay_request(
    request_id: str,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        booking, wallet = market.bookings.settle(request_id, identity.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return SettlementResult(request=booking, wallet=wallet)
