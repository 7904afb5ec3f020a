# core/middleware.py
"""Request middlewares: error rendering and page guard"""

import logging
import re

from aiohttp import web

from core.errors import GatewayError
from core.proxy.cookies import ACCESS_TOKEN_COOKIE

logger = logging.getLogger(__name__)

HEALTH_PATH = '/api/health'
FRAMEWORK_ASSETS_PREFIX = '/_next'
STATIC_FILE = re.compile(
    r'\.(?:js|mjs|css|map|png|jpg|jpeg|gif|svg|ico|webp|avif|txt|xml|json|pdf|woff2?|ttf|otf)$',
    re.IGNORECASE,
)


def relative_path(request: web.Request, base_path: str) -> str:
    """Request path with the base path stripped ('' becomes '/')"""
    path = request.path
    if base_path and (path == base_path or path.startswith(f"{base_path}/")):
        path = path[len(base_path):]
    return path or '/'


def is_static_path(path: str) -> bool:
    """Build assets and plain files, served without any page guard"""
    return (path.startswith(FRAMEWORK_ASSETS_PREFIX) or path == '/favicon.ico'
            or bool(STATIC_FILE.search(path)))


def login_url(base_path: str) -> str:
    return f"{base_path}/auth/login"


def build_csp(origins) -> str:
    connect_src = " ".join(["'self'", *origins])
    return "; ".join([
        "frame-ancestors 'none'",
        "base-uri 'none'",
        f"connect-src {connect_src}",
    ])


def is_locale_path(path: str, locales) -> bool:
    return any(path == f"/{locale}" or path.startswith(f"/{locale}/") for locale in locales)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except GatewayError as e:
        if e.status >= 500:
            logger.error(f"❌ {request.method} {request.path}: {e.message}")
        else:
            logger.debug(f"{request.method} {request.path}: {e.status} {e.message}")
        return web.json_response({"message": e.message}, status=e.status)


@web.middleware
async def page_guard_middleware(request: web.Request, handler):
    """
    Static bypass, health, landing redirect, auth-zone security headers and
    the locale guard
    """
    from core.proxy_manager import CONFIG_KEY

    config = request.app[CONFIG_KEY]
    base_path = config.base_path
    path = relative_path(request, base_path)

    if is_static_path(path):
        return await handler(request)

    if path == HEALTH_PATH or request.path == HEALTH_PATH:
        return web.Response(text="ok")

    if path == '/':
        raise web.HTTPFound(login_url(base_path))

    if path == '/auth' or path.startswith('/auth/'):
        csp = build_csp(config.allowed_origins())
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers['Content-Security-Policy'] = csp
            exc.headers['X-Frame-Options'] = 'DENY'
            raise
        response.headers['Content-Security-Policy'] = csp
        response.headers['X-Frame-Options'] = 'DENY'
        return response

    if is_locale_path(path, config.get('server.locales', ['en', 'ar'])):
        if not request.cookies.get(ACCESS_TOKEN_COOKIE):
            logger.debug(f"Unauthenticated page request {request.path}, redirecting to login")
            raise web.HTTPFound(login_url(base_path))

    return await handler(request)
