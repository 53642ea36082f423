"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from urllib.parse import urlparse

from app.errors import ValidationError

logger = logging.getLogger(__name__)


def parse_uuid(value, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a ValidationError (400) on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    if isinstance(value, uuid_mod.UUID):
        return value
    if value is None or value == "":
        raise ValidationError(f"'{field_name}' is required")
    try:
        return uuid_mod.UUID(str(value))
    except (ValueError, AttributeError):
        raise ValidationError(f"Invalid UUID for '{field_name}': {value!r}")


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=exc)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def require_http_url(value: str | None, field_name: str) -> str:
    """Return the stripped URL or raise ValidationError unless it is an absolute http(s) URL."""
    url = (value or "").strip()
    if not url:
        raise ValidationError(f"'{field_name}' is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"'{field_name}' must be an absolute http(s) URL: {url!r}")
    return url


def normalize_domain(value: str) -> str:
    """'https://www.Example.com/' -> 'example.com'."""
    domain = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    if domain.startswith("www."):
        domain = domain[4:]
    return domain.rstrip("/")
