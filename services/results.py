"""
Typed outcomes for token operations.

Expected failures (unknown user, bad token, lost rotation race, storage down)
come back as a failed Result carrying an ErrorKind. Exceptions are reserved
for programmer errors such as missing arguments.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    VALIDATION_FAILURE = "validation_failure"
    USER_NOT_FOUND = "user_not_found"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    TOKEN_PERSISTENCE_FAILED = "token_persistence_failed"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        # a lost rotation race signals replay, never a transient fault
        return self is ErrorKind.UNAVAILABLE


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> "Result[T]":
        return cls(error=error, message=message or error.value, details=details or {})

    def unwrap(self) -> T:
        if self.error is not None:
            raise RuntimeError(f"unwrap() on failed result: {self.error.value}")
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }
