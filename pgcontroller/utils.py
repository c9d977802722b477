"""Small helpers: content hashing, durations, timestamps and generated values."""

import re
import json
import string
import secrets
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from .errors import ValidationError

MAX_IDENTIFIER_LENGTH = 63

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def spec_hash(fields: dict) -> str:
    """Stable sha256 over the drift-relevant fields of a spec"""
    content = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(content.encode()).hexdigest()


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as "30s", "5m" or "1h30m"

    Args:
        value: Duration string made of number/unit pairs

    Returns:
        The parsed timedelta
    """
    text = (value or "").strip()
    if not text:
        raise ValidationError("duration must have a value")
    if text == "0":
        return timedelta(0)

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValidationError(f"invalid duration {value!r}")
    return timedelta(seconds=total)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    """RFC3339 timestamp in UTC"""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def random_string(length: int, alphabet: str = string.ascii_letters + string.digits) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def identifier_too_long(name: str) -> bool:
    return len(name.encode("utf-8")) > MAX_IDENTIFIER_LENGTH


def postgres_url(login: str, password: str, host: str, port: int, database: str) -> str:
    return f"postgres://{quote(login, safe='')}:{quote(password, safe='')}@{host}:{port}/{database}"
