import os
from pathlib import Path


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def env_csv(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "carehub.sqlite3")

DB_PATH = os.getenv("CAREHUB_DB_PATH", DEFAULT_DB_PATH)
CAS_ATTEMPTS = env_int("CAREHUB_CAS_ATTEMPTS", 5)
TRANSACTION_LOG_LIMIT = env_int("CAREHUB_TRANSACTION_LOG_LIMIT", 100)
REVIEW_EDIT_WINDOW_DAYS = env_int("CAREHUB_REVIEW_EDIT_WINDOW_DAYS", 7)
STRICT_STAGE_ORDER = env_flag("CAREHUB_STRICT_STAGE_ORDER")
ADMIN_USER_IDS = set(env_csv("ADMIN_USER_IDS"))
PAYMENT_GATEWAY_SECRET = os.getenv("PAYMENT_GATEWAY_SECRET", "").strip()
