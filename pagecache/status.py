"""Validation of HTTP status codes given as strings."""

from __future__ import annotations

import re

NOT_NUMERIC_MESSAGE = "an HTTP status code must be given as a numeric string"
OUT_OF_RANGE_MESSAGE = "an HTTP status code must be in range from 100 to 599"

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_LIMIT = 2**63


class StatusCodeError(ValueError):
    """Raised for a status code that is not numeric or out of range."""


def validate_status_code(status: str) -> int:
    """Return ``status`` as an int if it is a valid HTTP status code.

    Raises StatusCodeError otherwise.
    """
    if not _INTEGER.fullmatch(status):
        raise StatusCodeError(NOT_NUMERIC_MESSAGE)
    code = int(status)
    if not -_INT64_LIMIT <= code < _INT64_LIMIT:
        raise StatusCodeError(NOT_NUMERIC_MESSAGE)
    if code < 100 or code > 599:
        raise StatusCodeError(OUT_OF_RANGE_MESSAGE)
    return code