import re
from enum import Enum
from typing import Optional


class ErrorClass(str, Enum):
    network = "Network"
    authentication = "Authentication"
    not_found = "NotFound"
    validation = "Validation"
    rate_limited = "RateLimited"
    server_fault = "ServerFault"
    unknown = "Unknown"


class PermanentOperationError(Exception):
    """Raised by an operation when retrying cannot help"""


class GateTimeoutError(TimeoutError):
    """The rate limit gate could not be acquired before its deadline"""


# Prefix of the error message on items that never got a gate slot.
GATE_DEADLINE_EXCEEDED = "Gate deadline exceeded"


class StateFetchError(Exception):
    """A state fetch reached the remote but did not yield a usable state"""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


# Checked in order, first match wins.
_MESSAGE_RULES: tuple[tuple[re.Pattern, ErrorClass], ...] = (
    (re.compile(r"network|connection|timed? ?out"), ErrorClass.network),
    (re.compile(r"auth|unauthori[sz]ed|forbidden"), ErrorClass.authentication),
    (re.compile(r"not found"), ErrorClass.not_found),
    (re.compile(r"validation|invalid|malformed"), ErrorClass.validation),
    (re.compile(r"rate.?limit|too many requests"), ErrorClass.rate_limited),
    (re.compile(r"server error|unavailable|bad gateway"), ErrorClass.server_fault),
)

_FRIENDLY_MESSAGES = {
    400: "Invalid request: check the data that was sent",
    401: "Unauthorized: check your API key",
    403: "Forbidden: no permission for this operation",
    404: "Resource not found: the instance or endpoint does not exist",
    429: "Too many requests: wait before trying again",
    500: "Internal server error: try again later",
    502: "Bad gateway: connectivity problem upstream",
    503: "Service unavailable: the server is temporarily down",
}


def classify_status(status_code: int) -> Optional[ErrorClass]:
    if status_code in (401, 403):
        return ErrorClass.authentication
    if status_code in (404, 410):
        return ErrorClass.not_found
    if status_code == 408:
        return ErrorClass.network
    if status_code == 429:
        return ErrorClass.rate_limited
    if 400 <= status_code < 500:
        return ErrorClass.validation
    if 500 <= status_code < 600:
        return ErrorClass.server_fault
    return None


def classify_message(message: Optional[str]) -> ErrorClass:
    text = (message or "").lower()
    for pattern, error_class in _MESSAGE_RULES:
        if pattern.search(text):
            return error_class
    return ErrorClass.unknown


def classify_error(status_code: int, message: Optional[str] = None) -> ErrorClass:
    """Map a failure to the error taxonomy, status code first, message as fallback"""
    return classify_status(status_code) or classify_message(message)


def friendly_message(status_code: int) -> Optional[str]:
    return _FRIENDLY_MESSAGES.get(status_code)


def suggestions(status_code: int, message: Optional[str] = None) -> list[str]:
    """Remediation hints for a failed call"""
    hints = []
    if status_code == 401:
        hints.append("Check that the API key is configured correctly")
        hints.append("Make sure the API key has not expired")
    elif status_code == 404:
        hints.append("Check that the instance name is spelled correctly")
        hints.append("Make sure the instance exists and is active")
    elif status_code == 429:
        hints.append("Retry with exponential backoff")
        hints.append("Lower the request frequency")
    elif status_code in (500, 502, 503):
        hints.append("Try the operation again in a few minutes")
        hints.append("Check the status of the remote service")

    text = (message or "").lower()
    if "instance" in text and "not found" in text:
        hints.append("Create the instance before calling this endpoint")
    if "phone" in text or "number" in text:
        hints.append("Check the phone number format, including the country code")
    return hints
