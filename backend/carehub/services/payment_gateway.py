import hashlib
import hmac
import logging
from typing import Optional

from carehub import config
from carehub.services.errors import UpstreamFailureError

logger = logging.getLogger(__name__)


class PaymentGateway:
    """Confirms externally captured payments before wallets are credited.

    Order creation happens on the gateway side; this only checks the
    HMAC-SHA256 signature the gateway returns for ``order_id|payment_id``.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = config.PAYMENT_GATEWAY_SECRET if secret is None else secret

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def sign(self, order_id: str, payment_id: str) -> str:
        if not self._secret:
            logger.error("Payment gateway secret not configured")
            raise UpstreamFailureError("Payment system not configured")
        payload = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self._secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = self.sign(order_id, payment_id)
        verified = hmac.compare_digest(expected, (signature or "").strip())
        if verified:
            logger.info("Payment %s verified for order %s", payment_id, order_id)
        else:
            logger.warning("Payment signature mismatch for payment %s (order %s)", payment_id, order_id)
        return verified
