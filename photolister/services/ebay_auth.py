"""
eBay user-level OAuth (authorization code grant).

Sell and Browse calls act on behalf of a seller, so every owner has its own
access/refresh token pair in the store. ``ensure_valid_token`` is the single
entry point the rest of the app uses; refreshes for one owner are single-flight.
"""

import asyncio
import base64
import logging
import time
import weakref
from urllib.parse import urlencode

from photolister.errors import AuthenticationError
from photolister.models import Credential
from photolister.services import http, settings, store

logger = logging.getLogger("photolister.auth")

SELL_SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.marketing",
    "https://api.ebay.com/oauth/api_scope/sell.account",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
]

REFRESH_MARGIN_SECONDS = 5 * 60
DEFAULT_EXPIRES_IN = 7200

# Entries disappear once no refresh for the owner holds or awaits the lock.
_owner_locks = weakref.WeakValueDictionary()


def _lock_for(owner_id: str) -> asyncio.Lock:
    lock = _owner_locks.get(owner_id)
    if lock is None:
        lock = _owner_locks[owner_id] = asyncio.Lock()
    return lock


def _token_url() -> str:
    return f"{settings.api_base_url()}/identity/v1/oauth2/token"


def _basic_auth_header() -> str:
    credentials = base64.b64encode(
        f"{settings.EBAY_APP_ID}:{settings.EBAY_CERT_ID}".encode()
    ).decode()
    return f"Basic {credentials}"


def get_consent_url(owner_id: str) -> str | None:
    if not settings.EBAY_APP_ID or not settings.EBAY_REDIRECT_URI:
        return None
    query = urlencode({
        "client_id": settings.EBAY_APP_ID,
        "response_type": "code",
        "redirect_uri": settings.EBAY_REDIRECT_URI,
        "scope": " ".join(SELL_SCOPES),
        "state": owner_id,
    })
    return f"{settings.auth_base_url()}?{query}"


async def _token_request(data: dict) -> dict:
    async with http.client() as client:
        resp = await client.post(
            _token_url(),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": _basic_auth_header(),
            },
            data=data,
        )
    if resp.status_code != 200:
        raise AuthenticationError(
            f"eBay token endpoint returned {resp.status_code}: {resp.text}"
        )
    return resp.json()


async def exchange_code(owner_id: str, auth_code: str) -> Credential:
    """Exchange the authorization code from the OAuth callback for tokens."""
    data = await _token_request({
        "grant_type": "authorization_code",
        "code": auth_code,
        "redirect_uri": settings.EBAY_REDIRECT_URI,
    })
    credential = Credential(
        owner_id=owner_id,
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=time.time() + data.get("expires_in", DEFAULT_EXPIRES_IN),
    )
    await store.save_credential(credential)
    logger.info("Stored eBay credential for owner %s", owner_id)
    return credential


def needs_refresh(credential: Credential, now: float | None = None) -> bool:
    if credential.expires_at is None or not credential.access_token:
        return True
    now = time.time() if now is None else now
    return now >= credential.expires_at - REFRESH_MARGIN_SECONDS


async def _refresh(credential: Credential) -> str:
    now = time.time()
    try:
        data = await _token_request({
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "scope": " ".join(SELL_SCOPES),
        })
    except AuthenticationError:
        raise
    except Exception as e:
        raise AuthenticationError(f"Failed to refresh eBay authentication: {e}") from e

    access_token = data["access_token"]
    expires_at = now + data.get("expires_in", DEFAULT_EXPIRES_IN)
    refresh_token = data.get("refresh_token") or credential.refresh_token

    stored = await store.swap_refreshed_tokens(
        credential.owner_id,
        credential.expires_at,
        access_token,
        refresh_token,
        expires_at,
    )
    if not stored:
        # Another process refreshed in between; its token is at least as new.
        current = await store.get_credential(credential.owner_id)
        if current and current.access_token and not needs_refresh(current):
            logger.info("Refresh for %s lost the race, using stored token", credential.owner_id)
            return current.access_token
        raise AuthenticationError("Stored eBay credential changed during refresh")

    logger.info("Refreshed eBay token for owner %s", credential.owner_id)
    return access_token


async def ensure_valid_token(owner_id: str) -> str:
    """Return a usable access token for ``owner_id``, refreshing it if needed."""
    credential = await store.get_credential(owner_id)
    if credential is None:
        raise AuthenticationError(f"No eBay credential for owner {owner_id}")
    if not credential.refresh_token:
        raise AuthenticationError("No refresh token available. Re-authorize via /api/ebay/auth.")
    if not needs_refresh(credential):
        return credential.access_token

    async with _lock_for(owner_id):
        # Re-read under the lock: a caller ahead of us may have refreshed already.
        credential = await store.get_credential(owner_id)
        if credential is None or not credential.refresh_token:
            raise AuthenticationError(f"No eBay credential for owner {owner_id}")
        if not needs_refresh(credential):
            return credential.access_token
        return await _refresh(credential)


async def has_seller_access(owner_id: str) -> bool:
    credential = await store.get_credential(owner_id)
    return bool(credential and credential.refresh_token)
