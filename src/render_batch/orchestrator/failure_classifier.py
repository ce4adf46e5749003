"""Deterministic render API failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from render_batch.orchestrator.models import FailureKind

RENDER_FAILURE_CLASSIFIER_VERSION = 1

_PERMANENT_STATUS_CODES = frozenset({400, 401, 402, 403, 404, 413, 422})
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})

_BALANCE_PATTERNS: tuple[str, ...] = (
    "insufficient balance",
    "insufficient credits",
    "balance",
    "payment required",
    "billing",
    "quota exceeded",
)
_ACCESS_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "access denied",
)
_CONTENT_POLICY_PATTERNS: tuple[str, ...] = (
    "nsfw",
    "safety",
    "content policy",
    "blocked",
    "prohibited",
    "sensitive",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid",
    "bad request",
    "malformed",
    "unsupported",
    "too large",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "service unavailable",
    "overloaded",
    "internal server error",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network",
    "econnreset",
)


@dataclass(slots=True)
class RenderFailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_transient(self) -> bool:
        return self.kind == FailureKind.TRANSIENT

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": RENDER_FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_render_failure(
    *,
    status_code: int | None,
    message: str,
) -> RenderFailureClassification:
    """Classify a failed render API call.

    An explicit HTTP status wins over message text. Text that matches nothing
    is treated as transient so the bounded retry budget decides the outcome.
    """

    if status_code is not None:
        if status_code in _PERMANENT_STATUS_CODES:
            return RenderFailureClassification(
                kind=FailureKind.PERMANENT,
                reason_code=f"http_{status_code}",
                matched_rule="permanent_status_code",
                matched_pattern=None,
            )
        if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:  # noqa: PLR2004
            return RenderFailureClassification(
                kind=FailureKind.TRANSIENT,
                reason_code=f"http_{status_code}",
                matched_rule="transient_status_code",
                matched_pattern=None,
            )

    haystack = message.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.TRANSIENT,
            reason_code="rate_limited",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _BALANCE_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.PERMANENT,
            reason_code="insufficient_balance",
            matched_rule="balance",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.PERMANENT,
            reason_code="access_denied",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _CONTENT_POLICY_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.PERMANENT,
            reason_code="content_policy",
            matched_rule="content_policy",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.TRANSIENT,
            reason_code="backend_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _INVALID_INPUT_PATTERNS)
    if pattern is not None:
        return RenderFailureClassification(
            kind=FailureKind.PERMANENT,
            reason_code="invalid_input",
            matched_rule="invalid_input",
            matched_pattern=pattern,
        )

    return RenderFailureClassification(
        kind=FailureKind.TRANSIENT,
        reason_code="unknown",
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
