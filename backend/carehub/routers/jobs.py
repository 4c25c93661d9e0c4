from fastapi import APIRouter, Depends

from carehub.auth import require_identity
from carehub.models import Identity, JobNotesRequest, JobStatusUpdateRequest, ServiceRequest
from carehub.routers.http_errors import raise_http_error
from carehub.services.errors import MarketplaceError
from carehub.services.marketplace import Marketplace, get_marketplace

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[ServiceRequest])
def open_jobs(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    try:
        return market.matching.list_eligible_requests(identity.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/mine", response_model=list[ServiceRequest])
def my_jobs(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    return market.bookings.list_for_provider(identity.user_id)


@router.post("/{request_id}/accept", response_model=ServiceRequest)
def accept_job(
    request_id: str,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.matching.accept(identity.user_id, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/status", response_model=ServiceRequest)
def update_job_status(
    request_id: str,
    request: JobStatusUpdateRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.bookings.update_status(request_id, identity.user_id, request.status, request.notes)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/notes", response_model=ServiceRequest)
def update_job_notes(
    request_id: str,
    request: JobNotesRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.bookings.update_notes(request_id, identity.user_id, request.notes)
    except MarketplaceError as exc:
        raise_http_error(exc)
