"""Deterministic classification of remote backend failures for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "bad credentials",
    "authentication",
    "gh auth login",
    "401",
    "403",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "could not resolve to",
    "not found",
    "404",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "validation failed",
    "unprocessable",
    "invalid",
    "422",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "429",
)
_SERVER_PATTERNS: tuple[str, ...] = (
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "socket hang up",
    "could not resolve host",
    "temporarily unavailable",
)


@dataclass(slots=True, frozen=True)
class RemoteFailureClassification:
    """Normalized failure classification result."""

    transient: bool
    reason_code: str
    matched_pattern: str | None


def classify_remote_failure(message: str) -> RemoteFailureClassification:
    """Classify an error message; anything unrecognised is permanent.

    Transient rules take precedence over permanent ones.
    """

    haystack = message.lower()

    for reason_code, patterns in (
        ("rate_limit", _RATE_LIMIT_PATTERNS),
        ("server_error", _SERVER_PATTERNS),
        ("network", _NETWORK_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return RemoteFailureClassification(True, reason_code, pattern)

    for reason_code, patterns in (
        ("auth", _AUTH_PATTERNS),
        ("not_found", _NOT_FOUND_PATTERNS),
        ("validation", _VALIDATION_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return RemoteFailureClassification(False, reason_code, pattern)

    return RemoteFailureClassification(False, "unknown", None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
