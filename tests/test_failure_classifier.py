from __future__ import annotations

import allure
import pytest

from fin_research.providers.base import (
    Capability,
    InvalidArgumentsError,
    ProviderError,
    ProviderTimeoutError,
    UnsupportedCapabilityError,
)
from fin_research.research.failure_classifier import (
    PROVIDER_FAILURE_CLASSIFIER_VERSION,
    classify_provider_failure,
)
from fin_research.research.models import FailureClass

pytestmark = [
    allure.epic("Research Loop"),
    allure.feature("Executor Retries"),
]


def test_classification_details_name_the_classifier_version_and_rule() -> None:
    details = classify_provider_failure(ProviderError("bad gateway", status_code=502)).to_event_details()

    assert details == {
        "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
        "reason_code": "http_502",
        "matched_rule": "status_server_error",
        "matched_pattern": None,
    }


def test_classifier_maps_typed_errors_first() -> None:
    unsupported = classify_provider_failure(
        UnsupportedCapabilityError(Capability.INSIDER_TRADES, provider="yahoo"),
    )
    invalid = classify_provider_failure(InvalidArgumentsError("ticker is required"))
    timeout = classify_provider_failure(ProviderTimeoutError("news call exceeded 30s"))

    assert unsupported.failure_class == FailureClass.UNSUPPORTED_CAPABILITY
    assert invalid.failure_class == FailureClass.INVALID_ARGUMENTS
    assert timeout.failure_class == FailureClass.TIMEOUT
    assert timeout.reason_code == "provider_timeout"


def test_classifier_prefers_status_code_over_message() -> None:
    classified = classify_provider_failure(
        ProviderError("please retry later", status_code=401),
    )
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.reason_code == "http_401"


def test_classifier_maps_server_errors_and_rate_limits_to_transient() -> None:
    server = classify_provider_failure(ProviderError("bad gateway", status_code=502))
    limited = classify_provider_failure(ProviderError("slow down", status_code=429))

    assert server.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert limited.failure_class == FailureClass.RATE_LIMITED
    assert limited.matched_rule == "status_rate_limited"


def test_classifier_prefers_billing_over_transient_hint() -> None:
    classified = classify_provider_failure(
        ProviderError("Monthly quota exceeded for this key", transient=True),
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_pattern == "quota"


def test_classifier_honours_provider_transient_hint() -> None:
    classified = classify_provider_failure(ProviderError("upstream hiccup", transient=True))
    assert classified.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert classified.matched_rule == "transient_hint"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_provider_failure(ProviderError("unexpected payload shape"))
    assert classified.failure_class == FailureClass.PROVIDER_NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"


@pytest.mark.parametrize(
    "error",
    [IndexError("list index out of range"), AttributeError("dns"), KeyError("results")],
)
def test_unexpected_exceptions_are_non_retryable_whatever_their_message(error: Exception) -> None:
    classified = classify_provider_failure(error)
    assert classified.failure_class == FailureClass.PROVIDER_NON_RETRYABLE
    assert classified.matched_rule == "unexpected_exception"
    assert classified.matched_pattern == type(error).__name__
