import re
from typing import List, Optional, Union


class ScrobbleError(Exception):
    """Base class for errors that end a webhook with a failed response."""

    status_code = 500
    message = "fail"

    def __init__(self, detail: str = "", message: Optional[str] = None) -> None:
        super().__init__(detail or self.message)
        if message is not None:
            self.message = message


class ValidationError(ScrobbleError):
    """Raised when a webhook body or one of its fields cannot be parsed."""

    status_code = 400
    message = "bad request"


class NotFoundError(ScrobbleError):
    """Raised when a user or a Trakt catalog item cannot be found."""

    status_code = 404
    message = "not found"


class UnknownUserError(NotFoundError):
    """Raised when the webhook id does not belong to any stored user."""

    status_code = 403
    message = "forbidden"


class AuthError(ScrobbleError):
    """Raised when Trakt rejects a refresh token."""

    status_code = 401
    message = "fail"


class TransportError(ScrobbleError):
    """Raised when Trakt cannot be reached or answers with an error."""

    status_code = 502
    message = "fail"


def normalize_username(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_year(value: Union[str, int, None]) -> Optional[int]:
    """Return ``value`` as ``int`` when it looks like a year."""
    if value is None:
        return None
    try:
        return int(str(value).strip()[:4])
    except ValueError:
        return None


def parse_allowed_hosts(value: Optional[str]) -> List[str]:
    """Turn ``"https://a.example, b.example"`` into ``["a.example", "b.example"]``."""
    cleaned = re.sub(r"https://|http://|\s+", "", (value or "").lower())
    return [host for host in cleaned.split(",") if host]
