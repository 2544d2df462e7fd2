"""Result of a single delivery attempt.

The executor turns every HTTP exchange into exactly one of these, and
the retry scheduler consumes them without looking at exceptions or raw
responses.
"""

from __future__ import annotations

from dataclasses import dataclass

from courier.models import RESPONSE_BODY_LIMIT

# Response body excerpt included in error messages
ERROR_BODY_EXCERPT = 200


@dataclass(frozen=True)
class Success:
    """Receiver answered with a 2xx status."""

    status_code: int
    body: str = ""


@dataclass(frozen=True)
class HttpError:
    """Receiver answered with a non-2xx status."""

    status_code: int
    body: str = ""

    @property
    def message(self) -> str:
        return f"HTTP {self.status_code}: {self.body[:ERROR_BODY_EXCERPT]}"


@dataclass(frozen=True)
class TransportError:
    """No usable response: connection failure, timeout, invalid URL..."""

    message: str


AttemptOutcome = Success | HttpError | TransportError


def classify_response(status_code: int, body: str) -> Success | HttpError:
    """Map an HTTP status and body to an outcome, truncating the body."""
    body = body[:RESPONSE_BODY_LIMIT]
    if 200 <= status_code < 300:
        return Success(status_code=status_code, body=body)
    return HttpError(status_code=status_code, body=body)
