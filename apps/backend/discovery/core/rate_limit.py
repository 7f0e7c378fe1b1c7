"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Usage in routes:
    from fastapi import Request
    from discovery.core.rate_limit import limiter

    @router.get("/nearby")
    @limiter.limit("60/minute")
    async def nearby(request: Request, ...):
        ...

The WebSocket map stream is not limited here; its outbound pressure on
third parties is governed by the ExternalGeoSyncAgent's cooldown gate.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
