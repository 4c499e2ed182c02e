"""Security validation value types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List


class ViolationKind(str, Enum):
    FORBIDDEN_PATTERN = "forbidden_pattern"
    LENGTH = "length"
    STRUCTURAL = "structural"


@dataclass(frozen=True)
class SecurityViolation:
    """One reason a piece of source code was rejected."""

    kind: ViolationKind
    rule: str  # Offending pattern or rule name
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "rule": self.rule, "message": self.message}


@dataclass
class ValidationReport:
    """Outcome of validating one submission."""

    violations: List[SecurityViolation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]
