from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str, length: int = 10) -> str:
    return f"{prefix}_{uuid4().hex[:length]}"
