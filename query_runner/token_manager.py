"""
Bearer token acquisition and caching.

One ``TokenCache`` holds one access token and its expiry. The manager
returns the cached token while it is fresh and otherwise asks the identity
provider for a new one using the password or client-credentials grant
described by the auth context.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional

import requests
from requests import Session

from query_runner.errors import AuthenticationError

# Tokens are treated as expired this many seconds before the provider says.
EXPIRY_MARGIN_S = 60

_FORM_FIELDS = (
    "grant_type",
    "client_id",
    "client_secret",
    "username",
    "password",
    "scope",
)


class TokenCache:
    def __init__(self) -> None:
        self.access_token: Optional[str] = None
        self.expires_at_ms: float = 0
        self.lock = threading.RLock()

    def is_valid(self, now_ms: float) -> bool:
        return bool(self.access_token) and now_ms < self.expires_at_ms

    def store(self, token: str, expires_in: float, now_ms: float) -> None:
        self.access_token = token
        self.expires_at_ms = now_ms + (expires_in - EXPIRY_MARGIN_S) * 1000

    def invalidate(self) -> None:
        self.access_token = None
        self.expires_at_ms = 0


def token_endpoint(auth: Dict[str, Any]) -> str:
    if auth.get("token_url"):
        return auth["token_url"]
    base = (auth.get("identity_base_url") or "").rstrip("/")
    realm = auth.get("realm")
    if not base or not realm:
        raise AuthenticationError(
            "Auth config needs token_url or identity_base_url + realm."
        )
    return f"{base}/realms/{realm}/protocol/openid-connect/token"


def token_form(auth: Dict[str, Any]) -> Dict[str, str]:
    return {k: str(auth[k]) for k in _FORM_FIELDS if auth.get(k)}


class TokenManager:
    def __init__(
        self,
        log,
        session: Optional[Session] = None,
        cache: Optional[TokenCache] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 30,
        verify: bool = True,
    ):
        self.log = log
        self.sess = session or Session()
        self.cache = cache or TokenCache()
        self.clock = clock
        self.timeout = timeout
        self.verify = verify
        self.requests_made = 0

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def get_token(self, auth: Dict[str, Any], force_renew: bool = False) -> str:
        # The lock makes refresh single-flight for callers sharing the cache.
        with self.cache.lock:
            if not force_renew and self.cache.is_valid(self._now_ms()):
                self.log.info("[token] Reusing cached token.")
                return self.cache.access_token
            if force_renew:
                self.cache.invalidate()
            return self._request_token(auth)

    def _request_token(self, auth: Dict[str, Any]) -> str:
        url = token_endpoint(auth)
        self.log.info(
            f"[token] Requesting new token grant={auth.get('grant_type')} url={url}"
        )
        self.requests_made += 1
        try:
            resp = self.sess.post(
                url,
                data=token_form(auth),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as e:
            raise AuthenticationError(
                f"Token endpoint {url} unreachable: {e}"
            ) from e

        if not 200 <= resp.status_code < 300:
            self.log.error(
                f"[token] Token request failed: {resp.status_code} {resp.reason} {resp.text[:500]}"
            )
            raise AuthenticationError(
                f"Token endpoint returned {resp.status_code} {resp.reason}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise AuthenticationError(
                "Token endpoint returned a non-JSON body."
            ) from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("Token response has no access_token.")

        try:
            expires_in = float(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        self.cache.store(token, expires_in, self._now_ms())
        self.log.info(f"[token] New token obtained (expires_in={expires_in:g}s).")
        return token
