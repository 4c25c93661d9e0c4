from typing import NoReturn

from fastapi import HTTPException

from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceUnauthorizedError,
    UpstreamFailureError,
)


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    if isinstance(exc, MarketplaceUnauthorizedError):
        raise HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, MarketplaceNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MarketplacePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, MarketplaceConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamFailureError):
        raise HTTPException(status_code=502, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
