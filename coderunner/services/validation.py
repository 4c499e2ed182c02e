"""Security Validator - static checks run before any sandbox is created.

Validation is a usability filter that rejects obviously dangerous or
malformed submissions early. It never executes code, and it is not the
security boundary: the sandbox (resource ceilings, no network, restricted
syscalls) is.
"""

from typing import Optional

import structlog

from ..config import LanguagePluginConfig, LanguageRegistry, language_registry, settings
from ..models.errors import ErrorDetail, ValidationError
from ..models.validation import SecurityViolation, ValidationReport, ViolationKind

logger = structlog.get_logger(__name__)

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}


def check_length(source: str, max_length: int) -> Optional[SecurityViolation]:
    if len(source) > max_length:
        return SecurityViolation(
            kind=ViolationKind.LENGTH,
            rule=f"max_length={max_length}",
            message=f"Code too long ({len(source)} chars, max {max_length})",
        )
    return None


def check_brackets(source: str) -> Optional[SecurityViolation]:
    """Check that parens, brackets and braces balance.

    Each bracket type is counted independently. A closer seen while its
    count is zero fails immediately; any non-zero count at the end fails.
    """
    counts = {opener: 0 for opener in _OPENERS}
    for position, char in enumerate(source):
        if char in _OPENERS:
            counts[char] += 1
        elif char in _CLOSERS:
            opener = _CLOSERS[char]
            if counts[opener] == 0:
                return SecurityViolation(
                    kind=ViolationKind.STRUCTURAL,
                    rule="balanced_brackets",
                    message=f"Unmatched '{char}' at position {position}",
                )
            counts[opener] -= 1

    unclosed = [opener for opener, count in counts.items() if count]
    if unclosed:
        return SecurityViolation(
            kind=ViolationKind.STRUCTURAL,
            rule="balanced_brackets",
            message=f"Unclosed {', '.join(repr(o) for o in unclosed)}",
        )
    return None


class SecurityValidator:
    """Validates submitted source against a language's rules."""

    def __init__(self, registry: Optional[LanguageRegistry] = None):
        self._registry = registry or language_registry

    def validate(
        self,
        language_id: str,
        source: str,
        max_length: Optional[int] = None,
    ) -> ValidationReport:
        """Validate source code without executing it.

        Every rule is evaluated and every violation reported, not just the
        first.

        Raises:
            ValidationError: The language is not supported
        """
        language = self._registry.get(language_id)
        if max_length is None:
            max_length = settings.max_code_length

        report = ValidationReport()

        violation = check_length(source, max_length)
        if violation:
            report.violations.append(violation)

        report.violations.extend(self._scan_patterns(language, source))

        violation = check_brackets(source)
        if violation:
            report.violations.append(violation)

        for rule in language.structural_rules:
            if not rule.is_satisfied(source):
                report.violations.append(
                    SecurityViolation(
                        kind=ViolationKind.STRUCTURAL,
                        rule=rule.name,
                        message=rule.message,
                    )
                )

        if not report.is_valid:
            logger.info(
                "Code failed validation",
                language=language.id,
                violation_count=len(report.violations),
                kinds=sorted({v.kind.value for v in report.violations}),
            )
        return report

    def ensure_valid(
        self, language_id: str, source: str, max_length: Optional[int] = None
    ) -> ValidationReport:
        """Validate and raise ValidationError listing every violation."""
        report = self.validate(language_id, source, max_length=max_length)
        if not report.is_valid:
            raise ValidationError(
                message="Code failed security validation",
                violations=report.violations,
                details=[
                    ErrorDetail(field="code", message=v.message, code=v.kind.value)
                    for v in report.violations
                ],
            )
        return report

    def _scan_patterns(self, language: LanguagePluginConfig, source: str):
        for forbidden in language.forbidden_patterns:
            if forbidden.matches(source):
                yield SecurityViolation(
                    kind=ViolationKind.FORBIDDEN_PATTERN,
                    rule=forbidden.pattern,
                    message=f"Forbidden pattern detected: {forbidden.pattern}",
                )
