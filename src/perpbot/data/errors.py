"""
Exchange error types and the fault classifier used by the REST retry loop.

``classify_fault`` is a pure function of the request method, HTTP status, venue
error code and whether the failure happened at the transport level, so the same
input always yields the same class.
"""

from dataclasses import dataclass
from enum import Enum

from perpbot.config.constants import (
    BENIGN_CANCEL_CODES,
    TEMPORARY_ERROR_CODES,
    TEMPORARY_HTTP_STATUSES,
)


class FaultClass(Enum):
    """How a failed exchange call is resolved."""

    BENIGN = "benign"
    TEMPORARY = "temporary"
    FATAL = "fatal"


class ExchangeError(Exception):
    """Base class for exchange connectivity errors."""


class ExchangeAPIError(ExchangeError):
    """A request failed for good: fatal class, or temporary with attempts exhausted."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        http_status: int | None = None,
        method: str = "",
        path: str = "",
        attempts: int = 1,
    ):
        self.message = message
        self.code = code
        self.http_status = http_status
        self.method = method
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"{method} {path} failed (http={http_status}, code={code}, attempts={attempts}): {message}"
        )

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "http_status": self.http_status,
            "method": self.method,
            "path": self.path,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class BenignOutcome:
    """Success-shaped result for a cancel whose target was already gone or final."""

    code: int
    message: str
    method: str = "DELETE"
    path: str = ""

    @property
    def benign(self) -> bool:
        return True


def classify_fault(
    method: str,
    http_status: int | None,
    code: int | None,
    transport_error: bool = False,
) -> FaultClass:
    """Classify a failed call: benign first, then temporary, fatal otherwise."""
    if method.upper() == "DELETE" and code in BENIGN_CANCEL_CODES:
        return FaultClass.BENIGN
    if transport_error:
        return FaultClass.TEMPORARY
    if http_status is not None and (http_status in TEMPORARY_HTTP_STATUSES or http_status >= 500):
        return FaultClass.TEMPORARY
    if code in TEMPORARY_ERROR_CODES:
        return FaultClass.TEMPORARY
    return FaultClass.FATAL
