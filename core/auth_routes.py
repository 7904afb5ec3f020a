# core/auth_routes.py
"""
Login, two-factor and logout endpoints.

Tokens issued by the auth service are moved into HttpOnly cookies scoped to
the base path; the JSON body is still returned so the frontend can route on
requiresTwoFactor / requiresTwoFactorEnable.
"""

import logging
from typing import Optional

from aiohttp import web

from core.auth_manager import UpstreamReply
from core.errors import UnsafeTargetError
from core.proxy.cookies import clear_auth_cookies, login_cookie_profile, set_token_cookies
from core.proxy.upstream_urls import resolve_auth_asset_url
from core.proxy_manager import AUTH_KEY, CONFIG_KEY, copy_validators

logger = logging.getLogger(__name__)


def _passthrough(reply: UpstreamReply, default_text: str, default_type: str) -> web.Response:
    """Upstream status and body as-is"""
    return web.Response(
        body=reply.body or default_text.encode('utf-8'),
        status=reply.status,
        headers={'Content-Type': reply.content_type or default_type},
    )


def _parse_object(reply: UpstreamReply) -> Optional[dict]:
    """JSON object body, {} for an empty body, None when not JSON"""
    if not reply.body.strip():
        return {}
    try:
        data = reply.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _two_factor_pending(data: dict) -> bool:
    return bool(data.get('requiresTwoFactor') or data.get('requiresTwoFactorEnable'))


async def login(request: web.Request) -> web.Response:
    auth = request.app[AUTH_KEY]
    body = await request.read()

    reply = await auth.post('login', body)

    if not reply.ok:
        logger.info(f"Login rejected by auth service: HTTP {reply.status}")
        return _passthrough(reply, "Login failed", "text/plain")

    try:
        data = reply.json() if reply.body.strip() else {}
    except ValueError:
        data = {}

    response = web.json_response(data, status=200)

    # Arrays and scalars are relayed as-is, only an object can carry tokens
    if not isinstance(data, dict):
        return response

    if (data.get('accessToken') and data.get('refreshToken') and data.get('kycToken')
            and not _two_factor_pending(data)):
        profile = login_cookie_profile(request.app[CONFIG_KEY].base_path)
        set_token_cookies(response, data['accessToken'], data['refreshToken'], profile,
                          kyc_token=data['kycToken'])
        logger.info("🔐 Login successful, session cookies issued")

    return response


async def _verify_two_factor(request: web.Request, endpoint: str) -> web.Response:
    auth = request.app[AUTH_KEY]
    body = await request.read()

    reply = await auth.post(endpoint, body)
    content_type = reply.content_type or "application/json"

    if not reply.ok:
        return _passthrough(reply, "Two-factor verification failed", content_type)

    data = _parse_object(reply)
    if data is None:
        return web.Response(body=reply.body, status=reply.status, headers={'Content-Type': content_type})

    response = web.json_response(data, status=reply.status)

    if data.get('accessToken') and data.get('refreshToken') and not _two_factor_pending(data):
        profile = login_cookie_profile(request.app[CONFIG_KEY].base_path)
        set_token_cookies(response, data['accessToken'], data['refreshToken'], profile,
                          kyc_token=data.get('kycToken'))
        logger.info(f"🔐 {endpoint} successful, session cookies issued")

    return response


async def verify_two_factor(request: web.Request) -> web.Response:
    return await _verify_two_factor(request, 'verify-2fa')


async def verify_initial_two_factor(request: web.Request) -> web.Response:
    return await _verify_two_factor(request, 'verify-initial-2fa')


async def enable_two_factor(request: web.Request) -> web.Response:
    auth = request.app[AUTH_KEY]
    body = await request.read()

    reply = await auth.post('enable-2fa', body)
    content_type = reply.content_type or "application/json"

    if not reply.ok:
        return _passthrough(reply, "Enable 2FA failed", content_type)

    data = _parse_object(reply)
    if data is None:
        return web.Response(body=reply.body, status=reply.status, headers={'Content-Type': content_type})

    qr_code_path = data.get('qrCodePath')
    if isinstance(qr_code_path, str) and qr_code_path:
        try:
            data['qrCodeUrl'] = resolve_auth_asset_url(auth.auth_root, qr_code_path)
        except UnsafeTargetError:
            data['qrCodeUrl'] = qr_code_path

    return web.json_response(data, status=reply.status)


async def qr_image(request: web.Request) -> web.Response:
    auth = request.app[AUTH_KEY]

    path = request.query.get('path')
    if not path:
        return web.json_response({"message": "Missing path parameter"}, status=400)

    # UnsafeTargetError renders as 400 through the error middleware
    target = resolve_auth_asset_url(auth.auth_root, path)

    reply = await auth.fetch_asset(target, accept=request.headers.get('Accept', '*/*'))

    if not reply.ok:
        return web.json_response(
            {"message": f"Upstream responded with status {reply.status}"}, status=reply.status
        )

    response = web.Response(
        body=reply.body,
        headers={
            'Content-Type': reply.content_type or 'image/png',
            'Cache-Control': 'no-store',
        },
    )
    copy_validators(reply, response)
    return response


async def forgot_password(request: web.Request) -> web.Response:
    auth = request.app[AUTH_KEY]
    body = await request.read()

    reply = await auth.post('customer-forgot-password', body)

    return web.Response(
        body=reply.body,
        status=reply.status,
        headers={'Content-Type': reply.content_type or 'application/json'},
    )


async def logout(request: web.Request) -> web.Response:
    response = web.json_response({"success": True}, status=200)
    clear_auth_cookies(response, request.app[CONFIG_KEY].base_path)
    logger.info("🛑 Session cookies cleared")
    return response


def setup_routes(app: web.Application, base_path: str):
    prefix = f"{base_path}/api/auth"

    app.router.add_post(f"{prefix}/login", login)
    app.router.add_post(f"{prefix}/verify-2fa", verify_two_factor)
    app.router.add_post(f"{prefix}/verify-initial-2fa", verify_initial_two_factor)
    app.router.add_post(f"{prefix}/enable-2fa", enable_two_factor)
    app.router.add_get(f"{prefix}/qr-image", qr_image)
    app.router.add_post(f"{prefix}/customer-forgot-password", forgot_password)
    app.router.add_post(f"{prefix}/logout", logout)
