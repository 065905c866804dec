"""Utility functions for the repository RAG service."""

import os
import random
import socket
import string
import time
from datetime import datetime, timezone
from typing import Optional

ERROR_MESSAGE_MAX_LENGTH = 500
TRUNCATION_MARKER = "…"


def get_current_timestamp() -> str:
    """Get current UTC timestamp in ISO8601 format."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a UTC ISO8601 string.

    Microseconds are always emitted so that stored timestamps sort
    lexically in chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_elapsed_ms(start: float, end: Optional[float] = None) -> int:
    """Milliseconds between two `time.perf_counter()` readings."""
    end = end if end is not None else time.perf_counter()
    return max(0, int(round((end - start) * 1000)))


def stable_hash(text: str) -> str:
    """Cheap, stable, non-cryptographic 32-bit string hash in base 36.

    Collisions are possible and tolerated: cache keys built from this
    are not content addresses.
    """
    value = 0
    for char in text:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def _to_base36(number: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(alphabet[remainder])
    return "".join(reversed(digits))


def generate_worker_id() -> str:
    """Generate an opaque owner token for a worker invocation.

    Format: worker-{host}-{pid}-{millis}-{random}. Only used for
    diagnostics; lease correctness never depends on it.
    """
    host = os.environ.get("WORKER_REGION") or socket.gethostname() or "local"
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"worker-{host}-{os.getpid()}-{int(time.time() * 1000)}-{suffix}"


def truncate_message(
    message: Optional[str], max_length: int = ERROR_MESSAGE_MAX_LENGTH
) -> Optional[str]:
    """Truncate a message to `max_length` characters plus a marker."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    return message[:max_length] + TRUNCATION_MARKER
