from fastapi import APIRouter, Depends

from carehub.auth import require_identity
from carehub.models import (
    Identity,
    Wallet,
    WalletTopUpRequest,
    WalletTransferRequest,
    WalletTransferResult,
    WalletWithdrawRequest,
)
from carehub.routers.http_errors import raise_http_error
from carehub.services.errors import MarketplaceError
from carehub.services.marketplace import Marketplace, get_marketplace

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=Wallet)
def my_wallet(identity: Identity = Depends(require_identity), market: Marketplace = Depends(get_marketplace)):
    return market.ledger.get_wallet(identity.user_id)


@router.post("/add", response_model=Wallet)
def add_money(
    request: WalletTopUpRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        return market.ledger.credit_from_payment(
            identity.user_id,
            request.amount,
            order_id=request.order_id,
            payment_id=request.payment_id,
            signature=request.signature,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/withdraw", response_model=Wallet)
def withdraw(
    request: WalletWithdrawRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    metadata = {
        "description": "Withdrawal to bank account",
        "bank_account": request.bank_account[-4:] if request.bank_account else None,
        "account_holder": request.account_holder or None,
    }
    try:
        return market.ledger.debit(identity.user_id, request.amount, metadata)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/transfer", response_model=WalletTransferResult)
def transfer(
    request: WalletTransferRequest,
    identity: Identity = Depends(require_identity),
    market: Marketplace = Depends(get_marketplace),
):
    try:
        source, destination = market.ledger.transfer(
            identity.user_id,
            request.to_account_id,
            request.amount,
            {"description": request.description},
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    return WalletTransferResult(source=source, destination=destination)
