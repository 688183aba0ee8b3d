"""
Success/failure values returned by operations that can fail for reasons
other than a programming error.

    result = service.create_instance(...)
    if result.is_ok:
        instance = result.value
    else:
        print(result.kind, result.message)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_CONFIGURATION = "invalid_configuration"
    TRANSPORT_FAILED = "transport_failed"


class ResultError(RuntimeError):
    """Raised by ``Err.unwrap()``."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    is_ok = True
    is_err = False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    is_ok = False
    is_err = True

    def unwrap(self):
        raise ResultError(self.kind, self.message)


Result = Union[Ok[T], Err]
