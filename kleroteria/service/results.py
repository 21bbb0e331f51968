"""Explicit success/failure records returned by ``AuthService`` operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from kleroteria.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: ServiceError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err]

__all__ = ["Ok", "Err", "Result"]
