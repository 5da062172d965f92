"""
leafpledge.engine.validation — Validation result envelope
==========================================================

Shared return type of the ``validate_*`` companions (expressions, scope
config, funding config).  They report problems instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        """First error message, or None when valid."""
        return self.errors[0] if self.errors else None
