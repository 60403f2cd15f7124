"""
FetchResult — explicit success/failure for every external lookup.
Clients never raise across this boundary; callers check ``success`` and
choose their own degraded path.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class FetchError:
    source: str             # "ccxt", "alternative.me", "btc_correlation", ...
    message: str

    def __str__(self) -> str:
        return f"{self.source}: {self.message}"


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[FetchError] = None

    @classmethod
    def ok(cls, data: T) -> "FetchResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, source: str, message: str) -> "FetchResult[T]":
        return cls(success=False, error=FetchError(source, message))

    def unwrap_or(self, default: T) -> T:
        return self.data if self.success else default
