"""
Retry delay policy for rate-limited provider calls
"""

import random
import re
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.config import settings

_RETRY_DELAY_FIELD = re.compile(r'retryDelay"\s*:\s*"(\d+)s"', re.IGNORECASE)
_RETRY_IN = re.compile(r"retry\s+in\s+([0-9.]+)\s*s", re.IGNORECASE)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with bounded jitter.

    delay(n) = min(base * 2**n + U(0, jitter), cap). With jitter <= base the
    delays never decrease below the cap.
    """
    base_seconds: float = 2.0
    max_seconds: float = 45.0
    jitter_seconds: Optional[float] = None
    rand: Callable[[float, float], float] = random.uniform

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.BACKOFF_BASE_SECONDS,
            max_seconds=settings.BACKOFF_MAX_SECONDS,
            jitter_seconds=settings.BACKOFF_JITTER_SECONDS,
        )

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Seconds to wait before retry `attempt` (0-based).

        A provider-supplied retry_after overrides the computed delay, clamped to the cap.
        """
        if retry_after is not None and retry_after >= 0:
            return min(float(retry_after), self.max_seconds)

        jitter = self.base_seconds if self.jitter_seconds is None else self.jitter_seconds
        exponential = self.base_seconds * (2 ** attempt)
        if exponential >= self.max_seconds:
            return self.max_seconds
        return min(exponential + self.rand(0, jitter), self.max_seconds)


def extract_retry_after(error: Exception) -> Optional[float]:
    """
    Find a provider retry hint on an error.

    Checks a Retry-After response header first, then the message patterns
    `retryDelay": "Ns"` and `retry in N.Ns`.
    """
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers:
        header = headers.get("retry-after") or headers.get("Retry-After")
        if header:
            try:
                return max(0.0, float(header))
            except (ValueError, TypeError):
                pass

    message = str(getattr(error, "message", None) or error)
    match = _RETRY_DELAY_FIELD.search(message)
    if match:
        return max(0.0, float(match.group(1)))
    match = _RETRY_IN.search(message)
    if match:
        try:
            return max(0.0, float(match.group(1)))
        except ValueError:
            return None
    return None
