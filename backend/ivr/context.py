# backend/ivr/context.py
"""
Call context threaded between webhook steps.

Every step of a call is a separate, stateless request. Whatever a later step
needs travels in the query string of the continuation URL (Gather action,
Redirect, Dial action, StatusCallback) built by the step before it. All
handlers parse the context with `CallContext.from_params` and build every
continuation with `CallContext.url`, so no field is dropped on the way.

URL assembly only URL-encodes values. Escaping the `&` separators for
embedding a URL in markup is the markup serializer's job (see ivr.twiml).
"""
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode


def _as_int(raw: Any) -> Optional[int]:
    if raw in (None, ""):
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class CallContext:
    call_log_id: Optional[int] = None
    pending_message_id: Optional[int] = None
    customer_id: Optional[int] = None
    customer_name: str = ""
    caller_number: str = ""      # the inbound caller, passed through as caller id
    forward_number: str = ""     # store cell phone the call is forwarded to
    customer_phone: str = ""     # outbound click-to-call destination

    _INT_FIELDS = ("call_log_id", "pending_message_id", "customer_id")

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "CallContext":
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = params.get(f.name)
            if f.name in cls._INT_FIELDS:
                values[f.name] = _as_int(raw)
            else:
                values[f.name] = (raw or "").strip() if isinstance(raw, str) else ""
        return cls(**values)

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or value == "":
                continue
            params[f.name] = str(value)
        return params

    def evolve(self, **changes: Any) -> "CallContext":
        return replace(self, **changes)

    def url(self, base_url: str, path: str, **extra: Any) -> str:
        """Continuation URL for `path` carrying this context plus any step-specific params."""
        params = self.to_params()
        params.update({k: str(v) for k, v in extra.items() if v not in (None, "")})
        query = urlencode(params)
        target = f"{base_url.rstrip('/')}{path}"
        return f"{target}?{query}" if query else target
