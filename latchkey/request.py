"""Framework-neutral view of one request/response pair.

The authentication core reads incoming cookies and writes outgoing cookies
through :class:`RequestState`; a transport binding copies cookies in from
the inbound request and applies ``resp_cookies`` to the outgoing response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

if TYPE_CHECKING:
    from latchkey.config import ConfigContext

# Immediate-expiry convention for cookies
EXPIRED_MAX_AGE = -1


@dataclass(frozen=True)
class Cookie:
    value: str
    max_age: Optional[int] = None
    path: str = "/"

    @property
    def expired(self) -> bool:
        return self.max_age is not None and self.max_age < 0


@dataclass
class RequestState:
    req_cookies: Mapping[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    resp_cookies: Dict[str, Cookie] = field(default_factory=dict)
    assigns: Dict[str, Any] = field(default_factory=dict)
    private: Dict[str, Any] = field(default_factory=dict)

    def cookie(self, key: str) -> Optional[str]:
        """Current value of ``key`` in this flow.

        A cookie written earlier in the flow shadows the incoming one; an
        expired outgoing cookie reads as absent.
        """
        written = self.resp_cookies.get(key)
        if written is not None:
            return None if written.expired else written.value
        return self.req_cookies.get(key)

    def put_resp_cookie(
        self, key: str, value: str, *, max_age: Optional[int] = None, path: str = "/"
    ) -> "RequestState":
        self.resp_cookies[key] = Cookie(value=value, max_age=max_age, path=path)
        return self

    def expire_cookie(self, key: str, *, path: str = "/") -> "RequestState":
        return self.put_resp_cookie(key, "", max_age=EXPIRED_MAX_AGE, path=path)

    @property
    def config(self) -> Optional["ConfigContext"]:
        return self.private.get("latchkey_config")

    def put_config(self, config: "ConfigContext") -> "RequestState":
        self.private["latchkey_config"] = config
        return self

    def current_user(self, config: "ConfigContext") -> Any:
        return self.assigns.get(config.current_user_key)

    def assign_current_user(self, user: Any, config: "ConfigContext") -> "RequestState":
        self.assigns[config.current_user_key] = user
        return self

    def put_flash(self, kind: str, message: str) -> "RequestState":
        self.private.setdefault("flash", {})[kind] = message
        return self

    def flash(self, kind: str) -> Optional[str]:
        return self.private.get("flash", {}).get(kind)
