# core/auth_manager.py
"""
Authentication Manager for the upstream auth service (login, 2FA, refresh-token)
"""

import asyncio
import json
import aiohttp
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from multidict import CIMultiDict, CIMultiDictProxy

from core.errors import UpstreamUnavailableError, UpstreamTimeoutError
from core.proxy.upstream_urls import ensure_company_gateway_path, normalize_auth_root

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class UpstreamReply:
    """Fully-read upstream response"""
    status: int
    body: bytes = b''
    content_type: Optional[str] = None
    headers: CIMultiDictProxy = field(default_factory=lambda: CIMultiDictProxy(CIMultiDict()))

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        """Parsed body, raises ValueError for empty or non-JSON bodies"""
        return json.loads(self.text)


class AuthManager:
    """Calls to the auth service"""

    def __init__(self, auth_api: str, timeout: float = 10, verify_ssl: bool = True):
        """
        Args:
            auth_api: Auth service URL (e.g. https://gw.example/compauthapi/api/auth)
            timeout: Total timeout per call, seconds
            verify_ssl: Verify the auth service certificate
        """
        self.auth_api = auth_api.rstrip('/')
        self.auth_root = normalize_auth_root(auth_api)
        self.refresh_url = f"{ensure_company_gateway_path(auth_api)}/refresh-token"
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.ssl = None if verify_ssl else False

    def endpoint_url(self, endpoint: str) -> str:
        return f"{self.auth_api}/{endpoint.lstrip('/')}"

    async def refresh_tokens(self, access_token: str, refresh_token: str) -> Optional[TokenPair]:
        """
        Exchange a refresh token for a new token pair

        Returns:
            TokenPair or None if the auth service refused or answered garbage
        """
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.refresh_url,
                    json={"refreshToken": refresh_token},
                    headers={"Authorization": f"Bearer {access_token}"},
                    ssl=self.ssl,
                ) as response:

                    if not 200 <= response.status < 300:
                        logger.warning(f"⚠️ Token refresh rejected: HTTP {response.status}")
                        return None

                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        logger.warning("⚠️ Token refresh returned a non-JSON body")
                        return None

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Token refresh failed: {e}")
            return None

        if (not isinstance(data, dict)
                or not isinstance(data.get('accessToken'), str)
                or not isinstance(data.get('refreshToken'), str)):
            logger.warning("⚠️ Token refresh response lacks accessToken/refreshToken")
            return None

        logger.info("🔄 Access token refreshed")
        return TokenPair(data['accessToken'], data['refreshToken'])

    async def post(self, endpoint: str, body: bytes) -> UpstreamReply:
        """
        POST a raw JSON body to an auth endpoint

        Args:
            endpoint: "login", "verify-2fa", "enable-2fa", ...
            body: Request body as received from the browser

        Raises:
            UpstreamUnavailableError: auth service unreachable
            UpstreamTimeoutError: auth service too slow
        """
        url = self.endpoint_url(endpoint)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url,
                    data=body,
                    headers={"Content-Type": "application/json"},
                    ssl=self.ssl,
                ) as response:
                    content = await response.read()
                    logger.debug(f"Auth {endpoint}: HTTP {response.status}")
                    return UpstreamReply(
                        status=response.status,
                        body=content,
                        content_type=response.headers.get('Content-Type'),
                        headers=response.headers,
                    )

        except asyncio.TimeoutError as e:
            logger.error(f"❌ Auth service timeout ({endpoint}): {e}")
            raise UpstreamTimeoutError("Auth service timed out") from e

        except aiohttp.ClientError as e:
            logger.error(f"❌ Auth service unreachable ({endpoint}): {e}")
            raise UpstreamUnavailableError(f"Cannot connect to auth service: {e}") from e

    async def fetch_asset(self, url: str, accept: str = "*/*") -> UpstreamReply:
        """GET a binary asset (QR code image) from the auth service"""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers={"Accept": accept}, ssl=self.ssl) as response:
                    content = await response.read()
                    return UpstreamReply(
                        status=response.status,
                        body=content,
                        content_type=response.headers.get('Content-Type'),
                        headers=response.headers,
                    )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Failed to fetch auth asset {url}: {e}")
            raise UpstreamUnavailableError(str(e) or "Failed to reach QR image") from e

    def get_status(self) -> Dict[str, Any]:
        return {
            'auth_api': self.auth_api,
            'auth_root': self.auth_root,
            'refresh_url': self.refresh_url,
        }
