from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from typing import Any


class IdentityProviderError(RuntimeError):
    pass


LOGGER = logging.getLogger("closet_inventory.identity")

_CACHE_TTL_SECONDS = 60
_CACHE_MAX_ENTRIES = 512
_USER_CACHE: dict[str, tuple[float, dict[str, Any] | None]] = {}
_CACHE_LOCK = threading.Lock()


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise IdentityProviderError(f"Missing required environment variable: {name}")
    return value


def _parse_bearer(authorization: str | None) -> str | None:
    raw = (authorization or "").strip()
    if not raw:
        return None
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _to_user_entry(payload: dict[str, Any]) -> dict[str, Any] | None:
    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        return None
    metadata = payload.get("user_metadata") if isinstance(payload.get("user_metadata"), dict) else {}
    return {
        "id": user_id,
        "email": str(payload.get("email") or "").strip() or None,
        "fullName": str(metadata.get("full_name") or "").strip() or None,
    }


def _fetch_user(access_token: str) -> dict[str, Any] | None:
    base_url = _require_env("IDENTITY_API_BASE_URL").rstrip("/")
    api_key = _require_env("IDENTITY_API_KEY")
    request = urllib.request.Request(
        url=f"{base_url}/auth/v1/user",
        headers={"Authorization": f"Bearer {access_token}", "apikey": api_key},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        if exc.code in {401, 403}:
            return None
        raise IdentityProviderError(f"Identity API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise IdentityProviderError(f"Identity API connection error: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise IdentityProviderError("Identity API returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise IdentityProviderError("Identity API payload is not an object")
    return _to_user_entry(payload)


def _store_cached_user(access_token: str, user: dict[str, Any] | None, now: float) -> None:
    # Caller holds _CACHE_LOCK.
    _USER_CACHE.pop(access_token, None)
    for token in [token for token, (expires_at, _) in _USER_CACHE.items() if expires_at <= now]:
        del _USER_CACHE[token]
    while len(_USER_CACHE) >= _CACHE_MAX_ENTRIES:
        oldest = min(_USER_CACHE, key=lambda token: _USER_CACHE[token][0])
        del _USER_CACHE[oldest]
    _USER_CACHE[access_token] = (now + _CACHE_TTL_SECONDS, user)


def get_user_for_token(access_token: str, force_refresh: bool = False) -> dict[str, Any] | None:
    now = time.time()
    with _CACHE_LOCK:
        cached = _USER_CACHE.get(access_token)
        if cached and not force_refresh and cached[0] > now:
            return dict(cached[1]) if cached[1] else None

    user = _fetch_user(access_token)
    with _CACHE_LOCK:
        _store_cached_user(access_token, user, now)
    return dict(user) if user else None


def resolve_request_user(authorization: str | None) -> dict[str, Any] | None:
    token = _parse_bearer(authorization)
    if not token:
        return None
    return get_user_for_token(token)


def resolve_actor_user_id(authorization: str | None) -> str | None:
    """Best-effort user id for activity rows; the API itself stays public."""
    try:
        user = resolve_request_user(authorization)
    except IdentityProviderError as exc:
        LOGGER.warning("Could not resolve actor from bearer token: %s", exc)
        return None
    return user["id"] if user else None


def clear_cache() -> None:
    with _CACHE_LOCK:
        _USER_CACHE.clear()
