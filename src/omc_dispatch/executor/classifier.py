"""Deterministic classification of failed provider attempts."""

from __future__ import annotations

import re
from dataclasses import dataclass

from omc_dispatch.models import FailureClass

_MODEL_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"model_not_found",
        r"model.?not.?found",
        r"model is not supported",
        r"model.+does not exist",
        r"model.+not.+available",
        r"unknown model",
        r"invalid model",
    )
)
_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b429\b",
        r"rate.?limit",
        r"too many requests",
        r"quota.?exceeded",
        r"resource.?exhausted",
    )
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class.retryable


def classify_attempt_output(*, provider: str, stdout: str, stderr: str) -> FailureClassification:
    """Classify a failed attempt; model errors win over rate limits."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _MODEL_ERROR_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.MODEL_ERROR,
            reason_code=f"{provider}_model_error",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMIT,
            reason_code=f"{provider}_rate_limit",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code=f"{provider}_non_retryable",
    )


def timeout_classification(provider: str) -> FailureClassification:
    return FailureClassification(
        failure_class=FailureClass.TIMEOUT,
        reason_code=f"{provider}_timeout",
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}"


def _first_match(haystack: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        if pattern.search(haystack):
            return pattern.pattern
    return None
