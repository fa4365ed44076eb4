from dataclasses import dataclass, field
from typing import TypeVar, Generic, Optional, List

T = TypeVar('T')


@dataclass
class ParseResult(Generic[T]):
    """Outcome of reading untrusted oracle output: Ok(value) or Invalid(reason).

    An Ok result may still carry warnings, one per candidate that was dropped
    while the rest of the response was kept.
    """

    value: Optional[T] = None
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, value: T, warnings: Optional[List[str]] = None) -> 'ParseResult[T]':
        return cls(value=value, warnings=warnings or [])

    @classmethod
    def invalid(cls, reason: str) -> 'ParseResult[T]':
        return cls(reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.reason is None

    def unwrap(self) -> T:
        """Get value or raise if invalid."""
        if not self.is_ok:
            raise ValueError(self.reason)
        return self.value

    def unwrap_or(self, default: T) -> T:
        if not self.is_ok or self.value is None:
            return default
        return self.value

    def __repr__(self) -> str:
        if self.is_ok:
            return f"Ok({self.value!r})"
        return f"Invalid({self.reason!r})"
