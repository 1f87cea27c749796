"""Shared HTTP client — connection pooling for all outbound requests.

One module-level httpx.AsyncClient used by the Finale connector. Redirects
are not followed: Finale answers an expired session with a redirect to its
HTML login page, and the connector must see that response to classify it.

Per-request timeout overrides via http.get(url, timeout=15).

Usage:
    from stocksync.http_client import http
    resp = await http.get(url, headers=headers)
"""

import httpx

from .config import settings

_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=settings.finale_timeout_seconds,
    limits=_LIMITS,
    follow_redirects=False,
)


async def close_clients():
    """Shut down the shared client. Call from app lifespan shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
