import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from carehub import config
from carehub.config import env_int
from carehub.models import Identity

TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 24)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")
_ROLES = {"client", "provider", "admin"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(user_id: str, role: str = "client") -> tuple[str, str]:
    """Mint a bearer token. Identity issuance lives elsewhere; this is for tests and local tooling."""
    if role not in _ROLES:
        raise ValueError(f"Unknown role: {role}")
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[Identity]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        if not user_id or role not in _ROLES:
            return None
        return Identity(user_id=user_id, role=role)  # type: ignore[arg-type]
    except ValueError:
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_identity(authorization: Optional[str]) -> Optional[Identity]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def is_admin(identity: Identity) -> bool:
    return identity.role == "admin" or identity.user_id in config.ADMIN_USER_IDS


def require_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    identity = resolve_request_identity(authorization)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return identity


def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if not is_admin(identity):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity
