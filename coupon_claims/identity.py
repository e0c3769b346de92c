"""Resolve the (ip address, browser id) identity of a request."""

from typing import Optional

from starlette.requests import Request

BROWSER_COOKIE = "browserId"


def client_ip(request: Request, trust_proxy: bool = True) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # Left-most entry is the originating client
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


def browser_id(request: Request, fallback: Optional[str] = None) -> Optional[str]:
    """The cookie wins over a browser id sent in the body or query."""
    return request.cookies.get(BROWSER_COOKIE) or fallback or None
