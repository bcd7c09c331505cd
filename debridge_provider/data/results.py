from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Tagged success/failure result of one fetch or one snapshot item"""
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> "Outcome[T]":
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: BaseException, attempts: int = 0) -> "Outcome[T]":
        return cls(ok=False, error=error, attempts=attempts)

    @property
    def reason(self) -> str:
        if self.ok or self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__

    def unwrap(self) -> T:
        if not self.ok:
            raise self.error  # type: ignore[misc]
        return self.value  # type: ignore[return-value]
