"""Outbound HTTP client factory.

Every service opens its own short-lived ``httpx.AsyncClient`` through
:func:`client`; tests swap ``_transport`` for an ``httpx.MockTransport``.
"""

import httpx

from photolister.services import settings

_transport: httpx.AsyncBaseTransport | None = None


def client(**kwargs) -> httpx.AsyncClient:
    kwargs.setdefault("timeout", settings.HTTP_TIMEOUT)
    return httpx.AsyncClient(transport=_transport, **kwargs)


def bearer_headers(token: str, **extra: str) -> dict:
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        "X-EBAY-C-MARKETPLACE-ID": settings.EBAY_MARKETPLACE_ID,
    }
    headers.update(extra)
    return headers
