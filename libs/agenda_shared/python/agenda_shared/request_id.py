import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Upstream ids are echoed into logs, so only short token-like values are trusted.
_RID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def get_request_id() -> str:
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


def _accept_or_new(raw: str | None) -> str:
    if raw and _RID_RE.match(raw.strip()):
        return raw.strip()
    return uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = _accept_or_new(request.headers.get(self.header_name))
        token = _rid_ctx.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            _rid_ctx.reset(token)
        response.headers.setdefault(self.header_name, rid)
        return response
