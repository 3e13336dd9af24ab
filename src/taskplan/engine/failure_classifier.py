"""Deterministic tool-failure classification and the default recovery policy."""

from __future__ import annotations

from dataclasses import dataclass

from taskplan.engine.collaborators import (
    ErrorCategory,
    ErrorClassification,
    RecoveryAction,
    RecoveryStrategy,
    Severity,
    ToolInvocation,
    ToolSelection,
)
from taskplan.errors import ToolExecutionError
from taskplan.models import Context

TOOL_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "throttl",
    "try again later",
)
_AUTHENTICATION_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "invalid api key",
    "authentication",
    "expired token",
    "401",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "forbidden",
    "permission denied",
    "access denied",
    "not permitted",
    "403",
)
_RESOURCE_PATTERNS: tuple[str, ...] = (
    "out of memory",
    "no space left",
    "disk full",
    "resource exhausted",
    "quota",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection refused",
    "network",
    "could not resolve host",
    "dns",
    "temporarily unavailable",
    "502",
    "503",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "invalid",
    "validation",
    "malformed",
    "schema",
    "missing required",
)

_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (ErrorCategory.AUTHENTICATION, _AUTHENTICATION_PATTERNS),
    (ErrorCategory.PERMISSION, _PERMISSION_PATTERNS),
    (ErrorCategory.RESOURCE, _RESOURCE_PATTERNS),
    (ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
    (ErrorCategory.NETWORK, _NETWORK_PATTERNS),
    (ErrorCategory.VALIDATION, _VALIDATION_PATTERNS),
)

_EXCEPTION_CATEGORIES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (TimeoutError, ErrorCategory.TIMEOUT),
    (ConnectionError, ErrorCategory.NETWORK),
    (PermissionError, ErrorCategory.PERMISSION),
    (MemoryError, ErrorCategory.RESOURCE),
)

_SEVERITY: dict[ErrorCategory, tuple[Severity, bool]] = {
    ErrorCategory.NETWORK: (Severity.MEDIUM, True),
    ErrorCategory.TIMEOUT: (Severity.MEDIUM, True),
    ErrorCategory.RATE_LIMIT: (Severity.LOW, True),
    ErrorCategory.RESOURCE: (Severity.HIGH, True),
    ErrorCategory.AUTHENTICATION: (Severity.HIGH, False),
    ErrorCategory.PERMISSION: (Severity.HIGH, False),
    ErrorCategory.VALIDATION: (Severity.LOW, False),
    ErrorCategory.UNKNOWN: (Severity.MEDIUM, False),
}


def classify_tool_failure(error: BaseException) -> ErrorClassification:
    """Classify a tool failure into a deterministic recovery category.

    An explicit category on `ToolExecutionError` wins, then the exception type,
    then message patterns in rule order.
    """

    explicit = getattr(error, "category", None) if isinstance(error, ToolExecutionError) else None
    if explicit is not None:
        try:
            category = ErrorCategory(explicit)
        except ValueError:
            category = ErrorCategory.UNKNOWN
        return _classification(category, matched_rule="explicit_category", pattern=None)

    for exception_type, category in _EXCEPTION_CATEGORIES:
        if isinstance(error, exception_type):
            return _classification(category, matched_rule="exception_type", pattern=None)

    haystack = str(error).lower()
    for category, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classification(category, matched_rule="pattern", pattern=pattern)

    return _classification(ErrorCategory.UNKNOWN, matched_rule="fallback", pattern=None)


@dataclass(slots=True)
class RuleBasedDecisionService:
    """Default decision service: pattern classifier plus a fixed strategy table.

    Recoverable failures are retried until `max_attempts`; low-severity
    unrecoverable failures are skipped; everything else fails the plan.
    """

    max_attempts: int = 5
    skip_low_severity: bool = True

    def select_tool(self, invocation: ToolInvocation, context: Context) -> ToolSelection:
        requested = invocation.parameters.get("tool")
        alternatives = tuple(
            str(item) for item in invocation.parameters.get("alternatives", ()) if item
        )
        if isinstance(requested, str) and requested.strip():
            return ToolSelection(tool=requested.strip(), confidence=1.0, alternatives=alternatives)
        return ToolSelection(tool=invocation.action, confidence=0.5, alternatives=alternatives)

    def classify_error(self, error: BaseException, context: Context) -> ErrorClassification:
        return classify_tool_failure(error)

    def select_recovery_strategy(
        self,
        classification: ErrorClassification,
        attempt: int,
        context: Context,
    ) -> RecoveryStrategy:
        if classification.recoverable and attempt < self.max_attempts:
            return RecoveryStrategy(action=RecoveryAction.RETRY)
        if (
            self.skip_low_severity
            and not classification.recoverable
            and classification.severity == Severity.LOW
        ):
            return RecoveryStrategy(action=RecoveryAction.SKIP)
        return RecoveryStrategy(action=RecoveryAction.FAIL)


def _classification(
    category: ErrorCategory,
    *,
    matched_rule: str,
    pattern: str | None,
) -> ErrorClassification:
    severity, recoverable = _SEVERITY[category]
    return ErrorClassification(
        category=category,
        severity=severity,
        recoverable=recoverable,
        reason_code=f"{category.value}_{matched_rule}",
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
