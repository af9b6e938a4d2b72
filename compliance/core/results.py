"""
Typed operation results.

Public engine operations never raise; they return an ``OperationResult``
carrying either the value or a machine-readable error code (the ``E``
constants from ``compliance.utils.errors``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from compliance.utils.errors import E


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    value: Any = None
    error_code: str | None = None
    error: str | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: str, message: str, details: dict | None = None) -> "OperationResult":
        return cls(ok=False, error_code=code, error=message, details=details or {})

    @property
    def is_not_found(self) -> bool:
        return self.error_code == E.NOT_FOUND

    def unwrap(self) -> Any:
        """Return the value; only for callers that already checked ``ok``."""
        if not self.ok:
            raise RuntimeError(f"{self.error_code}: {self.error}")
        return self.value
