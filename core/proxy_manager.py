# proxy_manager.py
import asyncio
import json
import ssl
import logging
from typing import Optional, Tuple, Mapping

from aiohttp import (
    web, ClientSession, TCPConnector, ClientTimeout, ClientConnectorError, ClientError,
    DummyCookieJar, ServerTimeoutError,
)
from multidict import CIMultiDict, CIMultiDictProxy

from core.auth_manager import AuthManager, TokenPair, UpstreamReply
from core.config_manager import ConfigManager, get_config
from core.errors import GatewayConfigError, UpstreamUnavailableError, UpstreamTimeoutError
from core.proxy.cookies import (
    ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, PROXY_COOKIE_PROFILE,
    sanitize_cookie, set_token_cookies,
)
from core.proxy import build_base_api_url, ensure_company_gateway_path
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})

# Never copied from the browser request: credentials are re-attached as a bearer token
REQUEST_SKIP_HEADERS = HOP_BY_HOP_HEADERS | {'cookie', 'authorization', 'content-length', 'host'}

# aiohttp decompresses and re-frames the body
RESPONSE_SKIP_HEADERS = frozenset({'content-length', 'transfer-encoding', 'connection', 'content-encoding'})

PUBLIC_FORWARD_HEADERS = ('Content-Type', 'Accept', 'Accept-Language')

REFRESH_STATUSES = (401, 403)
BODYLESS_METHODS = ('GET', 'HEAD')


def json_reply(status: int, payload: dict) -> UpstreamReply:
    """Locally generated reply that looks like an upstream one"""
    headers = CIMultiDict({'Content-Type': 'application/json'})
    return UpstreamReply(
        status=status,
        body=json.dumps(payload).encode('utf-8'),
        content_type='application/json',
        headers=CIMultiDictProxy(headers),
    )


class GatewayProxy:
    def __init__(self, base_api: str, auth_manager: AuthManager, timeout: float = 90,
                 connect_timeout: float = 10, max_concurrency: int = 50, verify_ssl: bool = True):
        """
        Args:
            base_api: Company gateway URL (an /api suffix is added when missing)
            auth_manager: Used to refresh tokens on 401/403
            timeout: Total upstream timeout, seconds
            connect_timeout: Connect timeout, seconds
            max_concurrency: Simultaneous upstream requests
            verify_ssl: Verify upstream certificates
        """
        self.base_api_root = ensure_company_gateway_path(base_api)
        self.auth_manager = auth_manager
        self.timeout = ClientTimeout(total=timeout, connect=connect_timeout)
        self.verify_ssl = verify_ssl

        # Connection pool reused across requests
        self.connector = None
        self.session = None

        self.connection_semaphore = asyncio.Semaphore(max_concurrency)

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0,
            'refreshes': 0,
        }

    async def initialize(self):
        """Open the upstream connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=None if self.verify_ssl else False,
                limit=100,
                limit_per_host=50,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                force_close=False,
                enable_cleanup_closed=True
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=self.timeout,
                auto_decompress=True,
                # Shared by every browser session: upstream cookies are never kept
                cookie_jar=DummyCookieJar(),
            )

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    def build_url(self, path: str, query: str = "") -> str:
        return build_base_api_url(self.base_api_root, path, query)

    async def send(self, method: str, url: str, headers: Mapping[str, str],
                   body: Optional[bytes] = None) -> UpstreamReply:
        """
        Send one request upstream and read the whole response

        Raises:
            UpstreamUnavailableError: connection failure
            UpstreamTimeoutError: upstream too slow
        """
        await self.initialize()

        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            async with self.connection_semaphore:
                async with self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    data=body,
                    allow_redirects=False
                ) as upstream_response:
                    content = await upstream_response.read()
                    self.stats['total_responses'] += 1
                    logger.debug(f"{method} {url} -> {upstream_response.status}")

                    return UpstreamReply(
                        status=upstream_response.status,
                        body=content,
                        content_type=upstream_response.headers.get('Content-Type'),
                        headers=upstream_response.headers,
                    )

        except ClientConnectorError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream unavailable: {e}")
            raise UpstreamUnavailableError(f"Upstream unavailable: {e}") from e

        except (ServerTimeoutError, asyncio.TimeoutError) as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream timeout: {method} {url}")
            raise UpstreamTimeoutError("Upstream timed out") from e

        except ClientError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream request failed: {e}", exc_info=True)
            raise UpstreamUnavailableError(f"Failed to reach upstream: {e}") from e

        finally:
            self.stats['active_connections'] -= 1

    @staticmethod
    def _build_headers(request: web.Request, bearer: str,
                       extra: Optional[Mapping[str, str]] = None) -> CIMultiDict:
        headers = CIMultiDict(extra or {})

        for key, value in request.headers.items():
            if key.lower() in REQUEST_SKIP_HEADERS:
                continue
            if key not in headers:
                headers[key] = value

        headers['Authorization'] = f"Bearer {bearer}"
        return headers

    async def proxy_upstream(self, request: web.Request, target: str, method: Optional[str] = None,
                             headers: Optional[Mapping[str, str]] = None,
                             body: Optional[bytes] = None) -> Tuple[UpstreamReply, Optional[TokenPair]]:
        """
        Forward a browser request with its bearer token, refreshing once on 401/403

        Returns:
            (reply, refreshed token pair or None)
        """
        access_token = sanitize_cookie(request.cookies.get(ACCESS_TOKEN_COOKIE))
        refresh_token = sanitize_cookie(request.cookies.get(REFRESH_TOKEN_COOKIE))

        if not access_token:
            logger.debug(f"No access token for {request.method} {request.path}")
            return json_reply(401, {"message": "Missing access token"}), None

        method = (method or request.method).upper()

        if body is None and method not in BODYLESS_METHODS:
            body = await request.read()
        if method in BODYLESS_METHODS:
            body = None

        reply = await self.send(method, target, self._build_headers(request, access_token, headers), body)

        if reply.status in REFRESH_STATUSES and refresh_token:
            logger.info(f"🔐 Upstream answered {reply.status} for {request.path}, refreshing token")
            refreshed = await self.auth_manager.refresh_tokens(access_token, refresh_token)
            if refreshed:
                self.stats['refreshes'] += 1
                reply = await self.send(
                    method, target, self._build_headers(request, refreshed.access_token, headers), body
                )
                return reply, refreshed

        return reply, None

    async def forward_public(self, request: web.Request, target: str, method: Optional[str] = None,
                             with_body: bool = True) -> UpstreamReply:
        """Anonymous forward for routes that also serve unauthenticated visitors"""
        method = (method or request.method).upper()

        headers = CIMultiDict()
        for name in PUBLIC_FORWARD_HEADERS:
            value = request.headers.get(name)
            if value:
                headers[name] = value

        body = None
        if with_body and method not in BODYLESS_METHODS:
            body = await request.read()

        return await self.send(method, target, headers, body)

    async def forward_or_public(self, request: web.Request, target: str,
                                method: Optional[str] = None, with_body: bool = True) -> web.Response:
        """Authenticated proxy when an access token cookie exists, anonymous otherwise"""
        if ACCESS_TOKEN_COOKIE not in request.cookies:
            reply = await self.forward_public(request, target, method, with_body)
            return self.response_from(reply)

        reply, refreshed = await self.proxy_upstream(request, target, method)
        return self.response_from(reply, refreshed)

    async def forward(self, request: web.Request, target: str, method: Optional[str] = None) -> web.Response:
        reply, refreshed = await self.proxy_upstream(request, target, method)
        return self.response_from(reply, refreshed)

    @staticmethod
    def response_from(reply: UpstreamReply, tokens: Optional[TokenPair] = None) -> web.Response:
        """Browser response mirroring the upstream one, with rotated token cookies"""
        headers = CIMultiDict()
        for key, value in reply.headers.items():
            if key.lower() in RESPONSE_SKIP_HEADERS:
                continue
            headers.add(key, value)

        response = web.Response(body=reply.body, status=reply.status, headers=headers)

        if tokens:
            set_token_cookies(response, tokens.access_token, tokens.refresh_token, PROXY_COOKIE_PROFILE)

        return response

    def get_full_stats(self):
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors'],
            'refreshes': self.stats['refreshes'],
        }


CONFIG_KEY = web.AppKey('config', ConfigManager)
PROXY_KEY = web.AppKey('proxy', GatewayProxy)
AUTH_KEY = web.AppKey('auth', AuthManager)


class GatewayServer:
    """Owns the aiohttp application, its listener and the upstream pool"""

    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()
        self.is_running = False
        self.app = None
        self.runner = None
        self.site = None
        self.proxy = None

        self.last_error_type = None    # 'config', 'port', 'tls', 'upstream'
        self.last_error_details = None

    @property
    def host(self) -> str:
        return self.config.get_server_config().get('host', '0.0.0.0')

    @property
    def port(self) -> int:
        return int(self.config.get_server_config().get('port', 3000))

    def create_app(self) -> web.Application:
        from core.application import create_app

        self.app = create_app(self.config)
        self.proxy = self.app[PROXY_KEY]
        return self.app

    def _build_ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.get('server.tls.enabled', False):
            return None

        cert_file = self.config.get('server.tls.cert_file')
        key_file = self.config.get('server.tls.key_file')

        if not cert_file or not key_file:
            from core.certificate_manager import CertificateManager

            certificate_manager = CertificateManager()
            if not certificate_manager.ensure_certificates_exist():
                raise RuntimeError("Failed to create TLS certificates")
            cert_file, key_file = certificate_manager.cert_path, certificate_manager.key_path

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))
        return ssl_context

    async def start(self) -> bool:
        """
        Start listening

        Returns:
            bool: True if the server is up
        """
        if self.is_running:
            logger.warning("⚠️ Gateway already running")
            return False

        if self.port:
            port_available, port_message = check_port_availability(self.port, self.host)
            if not port_available:
                process_info = get_process_using_port(self.port, self.host)
                logger.error(f"❌ {port_message}")
                if process_info:
                    logger.info(
                        f"📌 Process on port {self.port}:\n"
                        f"   PID: {process_info.get('pid')}\n"
                        f"   Name: {process_info.get('name')}\n"
                        f"   Address: {process_info.get('address')}\n"
                        f"   User: {process_info.get('username', 'N/A')}"
                    )
                self.last_error_type = 'port'
                self.last_error_details = port_message
                return False

        try:
            ssl_context = self._build_ssl_context()
        except (OSError, ssl.SSLError, RuntimeError) as e:
            logger.error(f"❌ TLS setup failed: {e}")
            self.last_error_type = 'tls'
            self.last_error_details = str(e)
            return False

        if self.app is None:
            try:
                self.create_app()
            except GatewayConfigError as e:
                logger.error(f"❌ Configuration error: {e.message}")
                self.last_error_type = 'config'
                self.last_error_details = e.message
                return False

        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()

        self.site = web.TCPSite(
            self.runner,
            host=self.host,
            port=self.port,
            ssl_context=ssl_context,
        )

        try:
            await self.site.start()
        except OSError as e:
            logger.error(f"❌ Failed to bind {self.host}:{self.port}: {e}")
            await self.runner.cleanup()
            self.last_error_type = 'port'
            self.last_error_details = str(e)
            return False

        self.is_running = True
        scheme = 'https' if ssl_context else 'http'
        logger.info(f"✅ Gateway listening on {scheme}://{self.host}:{self.port}{self.config.base_path}")
        logger.info(f"📊 Upstream: {self.proxy.base_api_root}")
        return True

    def check_upstream_status(self) -> bool:
        """
        One-off reachability check of the base API (any HTTP answer counts)

        Returns:
            bool: True if the upstream answered
        """
        import requests

        if not self.proxy:
            logger.error("❌ Gateway application not created")
            return False

        status_url = f"{self.proxy.base_api_root}/"

        try:
            response = requests.get(
                status_url,
                timeout=10,
                verify=self.config.get('gateway.verify_ssl', True),
            )
            logger.info(f"✅ Upstream reachable: {status_url} (HTTP {response.status_code})")
            return True

        except requests.ConnectionError as e:
            logger.error(
                f"❌ Cannot connect to upstream gateway!\n"
                f"   URL: {status_url}\n"
                f"   Error: {e}"
            )
            self.last_error_type = 'upstream'
            self.last_error_details = "Cannot connect to upstream gateway"
            return False
        except requests.Timeout:
            logger.error("❌ Upstream check timed out (>10s)")
            self.last_error_type = 'upstream'
            self.last_error_details = "Upstream connection timeout"
            return False
        except requests.RequestException as e:
            logger.error(f"❌ Upstream check error: {e}")
            self.last_error_type = 'upstream'
            self.last_error_details = str(e)
            return False

    async def stop(self):
        if not self.is_running:
            logger.warning("⚠️ Gateway not running")
            return

        logger.info("🛑 Stopping gateway...")
        self.is_running = False

        if self.site:
            await self.site.stop()
        if self.runner:
            # Runs the application's on_cleanup, which closes the upstream pool
            await self.runner.cleanup()

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Token refreshes: {stats.get('refreshes', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}"
            )

        logger.info("✅ Gateway stopped")

    def get_status(self):
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.port,
            'base_path': self.config.base_path,
        }

        if self.last_error_type:
            status['last_error'] = {
                'type': self.last_error_type,
                'details': self.last_error_details,
            }

        if self.app is not None:
            status['auth'] = self.app[AUTH_KEY].get_status()

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status


_gateway_server = None


def get_gateway_server() -> GatewayServer:
    """Global GatewayServer instance"""
    global _gateway_server
    if _gateway_server is None:
        _gateway_server = GatewayServer()
    return _gateway_server


def copy_validators(reply: UpstreamReply, response: web.StreamResponse):
    """
    Pass ETag/Last-Modified through.

    Content-Length is left to aiohttp: the body may have been decompressed.
    """
    for name in ('ETag', 'Last-Modified'):
        value = reply.headers.get(name)
        if value:
            response.headers[name] = value
