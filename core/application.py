# core/application.py
"""aiohttp application factory"""

import logging

from aiohttp import web

from core.auth_manager import AuthManager
from core.config_manager import ConfigManager
from core.middleware import error_middleware, page_guard_middleware
from core.proxy_manager import GatewayProxy, CONFIG_KEY, PROXY_KEY, AUTH_KEY

logger = logging.getLogger(__name__)


def create_app(config: ConfigManager) -> web.Application:
    """
    Build the gateway application

    Raises:
        GatewayConfigError: base_api or auth_api not configured
    """
    base_api = config.require('gateway.base_api')
    auth_api = config.require('gateway.auth_api')
    if not config.get('gateway.image_url'):
        logger.warning("⚠️ gateway.image_url is not defined, image proxy disabled")

    gateway = config.get_gateway_config()
    verify_ssl = gateway.get('verify_ssl', True)

    auth_manager = AuthManager(
        auth_api,
        timeout=gateway.get('auth_timeout', 30),
        verify_ssl=verify_ssl,
    )
    proxy = GatewayProxy(
        base_api,
        auth_manager,
        timeout=gateway.get('timeout', 90),
        connect_timeout=gateway.get('connect_timeout', 10),
        max_concurrency=gateway.get('max_concurrency', 50),
        verify_ssl=verify_ssl,
    )

    app = web.Application(middlewares=[error_middleware, page_guard_middleware])
    app[CONFIG_KEY] = config
    app[PROXY_KEY] = proxy
    app[AUTH_KEY] = auth_manager

    async def on_startup(app):
        await app[PROXY_KEY].initialize()

    async def on_cleanup(app):
        await app[PROXY_KEY].cleanup()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    # Order matters: specific routes first, then the /api catch-all, then pages
    from core import auth_routes, api_routes, page_routes

    base_path = config.base_path
    auth_routes.setup_routes(app, base_path)
    api_routes.setup_routes(app, base_path)
    page_routes.setup_routes(app, base_path, config.get('server.static_dir'))

    logger.debug(f"Application created: base_path={base_path or '/'}, upstream={proxy.base_api_root}")
    return app
