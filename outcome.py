from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a call to an external provider.

    Either carries a value or the reason the feature degraded. Callers pick
    their own default with `value_or`; nothing here raises.
    """

    value: Optional[T] = None
    degraded: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.degraded is None

    def value_or(self, default: T) -> T:
        if self.degraded is not None or self.value is None:
            return default
        return self.value

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def degrade(cls, reason: str) -> "Outcome[T]":
        return cls(degraded=reason or "unknown")
