"""Deterministic provider failure classification for executor retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from fin_research.providers.base import (
    InvalidArgumentsError,
    ProviderError,
    ProviderTimeoutError,
    UnsupportedCapabilityError,
)
from fin_research.research.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_INVALID_ARGUMENT_STATUSES = frozenset({400, 404, 422})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "plan limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "api key not configured",
    "authentication",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(error: Exception) -> ProviderFailureClassification:  # noqa: PLR0911
    """Classify one provider call failure into a deterministic retry class.

    Typed errors and HTTP status codes win over message patterns; the
    provider's own ``transient`` hint is consulted last.
    """

    if isinstance(error, UnsupportedCapabilityError):
        return ProviderFailureClassification(
            FailureClass.UNSUPPORTED_CAPABILITY,
            "unsupported_capability",
            "unsupported_capability",
        )
    if isinstance(error, InvalidArgumentsError):
        return ProviderFailureClassification(
            FailureClass.INVALID_ARGUMENTS,
            "invalid_arguments",
            "invalid_arguments",
        )
    if isinstance(error, (ProviderTimeoutError, TimeoutError)):
        return ProviderFailureClassification(FailureClass.TIMEOUT, "provider_timeout", "timeout")
    if not isinstance(error, ProviderError):
        # A bug in the provider's response handling; the same call fails the same way.
        return ProviderFailureClassification(
            FailureClass.PROVIDER_NON_RETRYABLE,
            "provider_unexpected_error",
            "unexpected_exception",
            type(error).__name__,
        )

    status_code = error.status_code if isinstance(error, ProviderError) else None
    if status_code is not None:
        by_status = _classify_status(status_code)
        if by_status is not None:
            return by_status

    haystack = str(error).lower()
    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.BILLING_OR_QUOTA,
            "provider_billing_or_quota",
            "billing_or_quota",
            pattern,
        )
    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.ACCESS_OR_AUTH,
            "provider_access_or_auth",
            "access_or_auth",
            pattern,
        )
    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.RATE_LIMITED,
            "provider_rate_limited",
            "rate_limit_transient",
            pattern,
        )
    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    transient_hint = isinstance(error, ProviderError) and error.transient is True
    if pattern is not None or transient_hint:
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TRANSIENT,
            "provider_transient",
            "transient_hint" if pattern is None else "generic_transient",
            pattern,
        )
    return ProviderFailureClassification(
        FailureClass.PROVIDER_NON_RETRYABLE,
        "provider_non_retryable",
        "fallback_non_retryable",
    )


def _classify_status(status_code: int) -> ProviderFailureClassification | None:  # noqa: PLR0911
    if status_code == 429:
        return ProviderFailureClassification(
            FailureClass.RATE_LIMITED,
            "http_429",
            "status_rate_limited",
        )
    if status_code in {401, 403}:
        return ProviderFailureClassification(
            FailureClass.ACCESS_OR_AUTH,
            f"http_{status_code}",
            "status_access_or_auth",
        )
    if status_code == 402:
        return ProviderFailureClassification(
            FailureClass.BILLING_OR_QUOTA,
            "http_402",
            "status_billing_or_quota",
        )
    if status_code in _INVALID_ARGUMENT_STATUSES:
        return ProviderFailureClassification(
            FailureClass.INVALID_ARGUMENTS,
            f"http_{status_code}",
            "status_invalid_arguments",
        )
    if status_code >= 500:
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TRANSIENT,
            f"http_{status_code}",
            "status_server_error",
        )
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
