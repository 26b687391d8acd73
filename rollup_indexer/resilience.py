"""Backoff schedule and classification of provider errors.

Providers signal throttling and oversized ``eth_getLogs`` ranges in wildly
different ways (HTTP status codes, JSON-RPC error objects, free text). The
helpers here reduce those to the two decisions the log fetcher needs: wait
and retry, or split the range.
"""

import re
from dataclasses import dataclass
from typing import Optional

from rollup_indexer.config import settings

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "compute units", "throughput")
RATE_LIMIT_STATUS = re.compile(r"\b429\b")

LOG_RANGE_MARKERS = (
    "block range",
    "range is too large",
    "range too large",
    "exceed maximum block range",
    "query returned more than",
)

# "... up to a 10000 block range" / "... up to a 10K block range"
RANGE_LIMIT_HINT = re.compile(r"up to a (\d+)\s*(k?) block range", re.IGNORECASE)

# "... this block range should work: [0x1a2b, 0x1c3d]"
RANGE_PAIR_HINT = re.compile(r"range should work:\s*\[0x([0-9a-f]+),\s*0x([0-9a-f]+)\]", re.IGNORECASE)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 6
    base_delay: float = 1.0
    max_delay: float = 15.0
    exponential_base: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=settings.rate_limit_max_attempts,
            base_delay=settings.rate_limit_base_delay,
            max_delay=settings.rate_limit_max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


def error_text(exc: BaseException) -> str:
    """Flatten an exception and its arguments into lowercase text."""
    parts = [str(exc)]
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict):
            parts.append(str(arg.get("message", "")))
            parts.append(str(arg.get("data", "")))
        else:
            parts.append(str(arg))
    return " ".join(parts).lower()


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None) or getattr(response, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Whether the provider asked us to slow down."""
    if _status_code(exc) == 429:
        return True
    text = error_text(exc)
    if RATE_LIMIT_STATUS.search(text):
        return True
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def is_log_range_error(exc: BaseException) -> bool:
    """Whether the provider rejected an eth_getLogs call for spanning too many blocks."""
    text = error_text(exc)
    return any(marker in text for marker in LOG_RANGE_MARKERS)


def extract_log_range_limit(exc: BaseException) -> Optional[int]:
    """Read the maximum accepted block range from a provider error, if it names one.

    Returns:
        Number of blocks per request, or None when the error carries no hint
    """
    text = error_text(exc)

    match = RANGE_LIMIT_HINT.search(text)
    if match:
        limit = int(match.group(1))
        if match.group(2):
            limit *= 1000
        return limit if limit > 0 else None

    match = RANGE_PAIR_HINT.search(text)
    if match:
        start, end = int(match.group(1), 16), int(match.group(2), 16)
        if end >= start:
            return end - start + 1

    return None
