from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from latchkey.request import RequestState

OK = "ok"
ERROR = "error"


@dataclass
class Outcome:
    """Result of an authentication step; failures are values, not exceptions."""

    status: str
    state: Optional["RequestState"] = None
    value: Any = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    @classmethod
    def success(cls, state: Optional["RequestState"], value: Any = None, **kwargs: Any) -> "Outcome":
        return cls(OK, state, value, **kwargs)

    @classmethod
    def failure(cls, state: Optional["RequestState"], reason: str, value: Any = None, **kwargs: Any) -> "Outcome":
        return cls(ERROR, state, value, reason=reason, **kwargs)


@dataclass
class TokenOutcome(Outcome):
    """Outcome of consuming a persistent token; ``token`` is its replacement."""

    token: Optional[str] = None


__all__ = ["Outcome", "TokenOutcome", "OK", "ERROR"]
