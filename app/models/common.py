import os
import re
import time
from datetime import UTC, datetime

OBJECT_ID_RE = re.compile(r"^[0-9a-f]{24}$")
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_object_id() -> str:
    """24-char hex id: 4-byte seconds timestamp followed by 8 random bytes."""
    return f"{int(time.time()):08x}{os.urandom(8).hex()}"


def is_object_id(value: object) -> bool:
    return isinstance(value, str) and bool(OBJECT_ID_RE.match(value))


def is_hhmm(value: object) -> bool:
    return isinstance(value, str) and bool(HHMM_RE.match(value))

