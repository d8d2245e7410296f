"""Optional shared-key check for the phone routes.

The key is read from the service config at request time; an empty key
turns the check off. Clients send it as ``X-API-Key`` (what
``StatusClient`` does) or as a bearer token.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import HTTPException, Request

logger = logging.getLogger("phonepool.service.auth")


def _presented_key(request: Request) -> str:
    key = request.headers.get("X-API-Key")
    if key:
        return key
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer":
        return token.strip()
    return ""


async def require_api_key(request: Request) -> None:
    """Router dependency rejecting callers without the configured key."""
    expected = request.app.state.config.api_key
    if not expected:
        return
    if secrets.compare_digest(_presented_key(request).encode(), expected.encode()):
        return
    logger.warning("Rejected %s %s: bad or missing API key", request.method, request.url.path)
    raise HTTPException(status_code=401, detail="Invalid or missing API key")
