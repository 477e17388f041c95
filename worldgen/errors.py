from __future__ import annotations

from typing import Iterable, List


class ConfigValidationError(ValueError):
    """Raised before any run starts; lists every offending reference at once."""

    def __init__(self, issues: Iterable[str]):
        self.issues: List[str] = list(issues)
        lines = "\n".join(f"  - {msg}" for msg in self.issues)
        super().__init__(f"{len(self.issues)} configuration issue(s):\n{lines}")


class StructuralViolationError(ValueError):
    """A protected relationship removal would leave an entity without a required link."""


class RuleSkipped(Exception):
    """A rule application could not proceed (no binding candidates, no subtype options)."""

    def __init__(self, rule_id: str, reason: str):
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"{rule_id}: {reason}")
