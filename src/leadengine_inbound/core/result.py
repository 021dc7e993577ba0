"""Result type for expected failure modes.

Pipeline stages return ``Result`` instead of raising for conditions such as
"tenant not found" or "queue missing". Exceptions are reserved for
programmer errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    recoverable: bool = False

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(
        error: str, code: str = "unknown", recoverable: bool = False
    ) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, recoverable=recoverable)

    def unwrap(self) -> T:
        if not self.ok:
            raise ValueError(f"unwrap() on failed result: {self.error_code}: {self.error}")
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
