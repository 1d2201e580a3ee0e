import asyncio
import base64
import logging
import time
from typing import Callable, Optional

import httpx

from ..config import ProcessorConfig
from ..errors import (
    AccessForbidden,
    CredentialsMissing,
    InvalidCredentials,
    ProcessorUnreachable,
    TokenAcquisitionFailed,
)

logger = logging.getLogger(__name__)

# refresh this many seconds before PayPal's declared expiry
EXPIRY_MARGIN = 60.0


def error_body(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return resp.text


class TokenCache:
    """
    Fetches PayPal OAuth2 client-credentials tokens and keeps the current one
    until shortly before it expires.

    Concurrent callers share a single in-flight refresh.
    """

    def __init__(self, config: ProcessorConfig, client: httpx.AsyncClient,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.client = client
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def invalidate(self) -> None:
        if self._token:
            logger.info("Dropping cached PayPal access token")
        self._token = None
        self._expires_at = 0.0

    async def get_access_token(self) -> str:
        token = self._cached()
        if token:
            return token
        async with self._lock:
            # another caller may have refreshed while we waited
            token = self._cached()
            if token:
                return token
            return await self._fetch()

    async def _fetch(self) -> str:
        cfg = self.config
        if not cfg.client_id or not cfg.client_secret:
            raise CredentialsMissing()

        auth = base64.b64encode(f"{cfg.client_id}:{cfg.client_secret}".encode()).decode()
        headers = {
            "Authorization": f"Basic {auth}",
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        url = f"{cfg.base_url}/v1/oauth2/token"
        try:
            resp = await self.client.post(url, content="grant_type=client_credentials",
                                          headers=headers, timeout=cfg.timeout)
        except httpx.TransportError as exc:
            logger.error("PayPal token request to %s failed: %s", url, exc)
            raise ProcessorUnreachable(detail=str(exc)) from exc

        if resp.status_code == 401:
            logger.error("PayPal rejected client credentials (401)")
            raise InvalidCredentials(upstream_status=401, detail=error_body(resp))
        if resp.status_code == 403:
            logger.error("PayPal denied token request (403)")
            raise AccessForbidden(upstream_status=403, detail=error_body(resp))
        if resp.is_error:
            logger.error("PayPal token request failed with %s", resp.status_code)
            raise TokenAcquisitionFailed(upstream_status=resp.status_code, detail=error_body(resp))

        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenAcquisitionFailed(upstream_status=resp.status_code, detail=resp.text) from exc
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise TokenAcquisitionFailed("PayPal token response has no access_token",
                                         upstream_status=resp.status_code)

        try:
            expires_in = float(data.get("expires_in", 0))
        except (TypeError, ValueError):
            expires_in = 0.0
        self._token = token
        self._expires_at = self._clock() + max(expires_in - EXPIRY_MARGIN, 0.0)
        logger.info("Obtained PayPal access token (expires in %ss)", int(expires_in))
        return token
