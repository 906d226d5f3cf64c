"""
Age and timeout helpers used by readiness waits and teardown sweeps.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from .errors import InputError

DEFAULT_TIMEOUT_SECONDS = 300.0

_AGE_UNITS = {"d": 86400, "h": 3600, "m": 60}
_TIMEOUT_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_age_to_seconds(age: str) -> int:
    """
    Parse an age threshold such as ``7d``, ``48h`` or ``30m``.

    Args:
        age: Age string

    Returns:
        Age in seconds

    Raises:
        InputError: If the format is not recognised
    """
    match = re.fullmatch(r"(\d+)([dhm])", age.strip())
    if not match:
        raise InputError(f"Invalid age format: {age}. Use format like 7d, 48h, or 30m")
    return int(match.group(1)) * _AGE_UNITS[match.group(2)]


def parse_timeout(timeout: str, strict: bool = False) -> float:
    """
    Parse a timeout such as ``5m``, ``30s``, ``2h`` or ``500ms`` into seconds.

    Args:
        timeout: Timeout string
        strict: Raise on unparseable input instead of using the 5 minute default

    Returns:
        Timeout in seconds
    """
    match = re.fullmatch(r"(\d+)(ms|s|m|h)", timeout.strip())
    if not match:
        if strict:
            raise InputError(
                f"Invalid timeout format: {timeout}. Expected format: <number><unit> (e.g., 3m, 180s)"
            )
        return DEFAULT_TIMEOUT_SECONDS
    return int(match.group(1)) * _TIMEOUT_UNITS[match.group(2)]


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as written by the API server."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_age(creation_timestamp: str, now: Optional[datetime] = None) -> int:
    """
    Seconds elapsed since a resource's creation timestamp.

    Args:
        creation_timestamp: ``metadata.creationTimestamp``
        now: Reference time, defaults to the current UTC time

    Returns:
        Age in whole seconds
    """
    now = now or datetime.now(timezone.utc)
    return int((now - parse_timestamp(creation_timestamp)).total_seconds())


def format_age(age_seconds: int) -> str:
    """
    Format an age as the two largest units: ``2d 3h``, ``5h 30m`` or ``12m``.
    """
    days, remainder = divmod(max(int(age_seconds), 0), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
