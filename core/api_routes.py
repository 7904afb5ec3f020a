# core/api_routes.py
"""
Authenticated API routes forwarded to the company gateway.

Most routes are a bearer-token forward with a single refresh on 401/403
(GatewayProxy.forward). Routes reachable during registration fall back to an
anonymous forward when the visitor has no access token.
"""

import logging
from urllib.parse import quote

from aiohttp import web
from multidict import CIMultiDict

from core.errors import GatewayError, UpstreamTimeoutError
from core.proxy.cookies import ACCESS_TOKEN_COOKIE, sanitize_cookie
from core.proxy.upstream_urls import filter_letter_of_guarantee_query, resolve_image_target
from core.proxy_manager import CONFIG_KEY, PROXY_KEY, copy_validators
from utils.jwt_utils import user_id_from_token

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_CACHE_CONTROL = "public, max-age=60, stale-while-revalidate=300"
BODYLESS_STATUSES = (204, 205, 304)

# Upstream has no PUT/DELETE verbs: they become POST <path>/update and POST <path>/delete
METHOD_REWRITES = {
    'PUT': 'update',
    'DELETE': 'delete',
}


def _segment(value: str) -> str:
    return quote(value, safe='')


def _strip_trailing_slash(path: str) -> str:
    return path[:-1] if path.endswith('/') else path


async def catch_all(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    base_path = request.app[CONFIG_KEY].base_path

    # Raw path keeps the browser's percent-encoding intact
    raw_path = request.rel_url.raw_path
    prefix = f"{base_path}/api/"
    tail = raw_path[len(prefix):] if raw_path.startswith(prefix) else request.match_info['tail']

    method = request.method
    action = METHOD_REWRITES.get(method)
    if action:
        method = 'POST'
        tail = f"{_strip_trailing_slash(tail)}/{action}"

    target = proxy.build_url(tail, request.rel_url.raw_query_string)
    logger.debug(f"🔐 {request.method} {request.path} -> {method} {target}")
    return await proxy.forward(request, target, method)


def add_resource(app: web.Application, route: str, upstream: str):
    """
    Collection (GET with query, POST) and item (GET, PUT) routes for one resource
    """

    async def collection(request: web.Request) -> web.Response:
        proxy = request.app[PROXY_KEY]
        query = request.rel_url.raw_query_string if request.method == 'GET' else ''
        return await proxy.forward(request, proxy.build_url(upstream, query))

    async def item(request: web.Request) -> web.Response:
        proxy = request.app[PROXY_KEY]
        target = proxy.build_url(f"{upstream}/{_segment(request.match_info['id'])}")
        return await proxy.forward(request, target)

    app.router.add_get(route, collection)
    app.router.add_post(route, collection)
    app.router.add_get(f"{route}/{{id}}", item)
    app.router.add_put(f"{route}/{{id}}", item)


async def letter_of_guarantee(request: web.Request) -> web.Response:
    """Letters of guarantee are credit facilities filtered by type"""
    proxy = request.app[PROXY_KEY]

    query = ''
    if request.method == 'GET':
        query = filter_letter_of_guarantee_query(request.query.items())

    return await proxy.forward(request, proxy.build_url('creditfacilities', query))


async def register_company(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    return await proxy.forward_or_public(request, proxy.build_url('companies/register'), 'POST')


async def company_info(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    target = proxy.build_url(f"companies/getInfo/{_segment(request.match_info['code'])}")
    return await proxy.forward_or_public(request, target, 'GET', with_body=False)


async def company_profile(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    target = proxy.build_url(f"companies/getInfo/{_segment(request.match_info['code'])}")
    return await proxy.forward(request, target)


async def upload_attachments(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    target = proxy.build_url(f"companies/{_segment(request.match_info['code'])}/attachments/UploadBatch")
    return await proxy.forward_or_public(request, target, 'POST')


async def delete_attachment(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    code = _segment(request.match_info['code'])
    attachment_id = _segment(request.match_info['attachmentId'])
    target = proxy.build_url(f"companies/{code}/attachments/{attachment_id}")
    return await proxy.forward_or_public(request, target, 'DELETE', with_body=False)


async def update_public_user(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    target = proxy.build_url(f"companies/public/users/{_segment(request.match_info['userId'])}/update")
    return await proxy.forward_or_public(request, target, 'POST')


async def company_user(request: web.Request) -> web.Response:
    """
    Company-scoped user read/update.

    The upstream resolves the tenant from the Company-Code header, so this
    route builds its headers itself and never refreshes the token.
    """
    proxy = request.app[PROXY_KEY]

    access_token = sanitize_cookie(request.cookies.get(ACCESS_TOKEN_COOKIE))
    if not access_token:
        return web.json_response({"message": "Missing access token"}, status=401)

    code = request.match_info['code']
    path = f"companies/{_segment(code)}/users/{_segment(request.match_info['userId'])}"
    if request.method != 'GET':
        path = f"{path}/update"

    headers = CIMultiDict()
    headers['Accept'] = request.headers.get('Accept', 'application/json')
    if request.headers.get('Content-Type'):
        headers['Content-Type'] = request.headers['Content-Type']
    if request.headers.get('Accept-Language'):
        headers['Accept-Language'] = request.headers['Accept-Language']
    headers['Authorization'] = f"Bearer {access_token}"
    headers['Company-Code'] = code
    headers['X-Company-Code'] = code

    body = await request.read() if request.method != 'GET' else None

    try:
        reply = await proxy.send(
            request.method, proxy.build_url(path, request.rel_url.raw_query_string), headers, body
        )
    except UpstreamTimeoutError as e:
        # Any network failure on this route is reported as 502
        return web.json_response({"message": e.message}, status=502)

    if reply.status in BODYLESS_STATUSES:
        return web.Response(status=reply.status)

    response = web.Response(body=reply.body, status=reply.status)
    if reply.content_type:
        response.headers['Content-Type'] = reply.content_type
    return response


async def _user_by_auth(request: web.Request, access_token: str, user_id: str) -> web.Response:
    proxy = request.app[PROXY_KEY]

    reply = await proxy.send(
        'GET',
        proxy.build_url(f"users/by-auth/{_segment(user_id)}"),
        {'Authorization': f"Bearer {access_token}", 'Accept': 'application/json'},
    )

    return web.Response(
        body=reply.body,
        status=reply.status,
        headers={'Content-Type': reply.content_type or 'application/json'},
    )


async def current_user(request: web.Request) -> web.Response:
    """Profile of the user the access token was issued to"""
    access_token = sanitize_cookie(request.cookies.get(ACCESS_TOKEN_COOKIE))
    if not access_token:
        return web.json_response({"error": "No access token"}, status=401)

    user_id = user_id_from_token(access_token)
    if user_id is None:
        return web.json_response({"error": "Bad token"}, status=400)

    return await _user_by_auth(request, access_token, str(user_id))


async def user_by_auth_id(request: web.Request) -> web.Response:
    access_token = sanitize_cookie(request.cookies.get(ACCESS_TOKEN_COOKIE))
    if not access_token:
        return web.json_response({"error": "No access token"}, status=401)

    user_id = request.match_info.get('userId')
    if not user_id:
        return web.json_response({"error": "Missing userId in path"}, status=400)

    return await _user_by_auth(request, access_token, user_id)


async def image_proxy(request: web.Request) -> web.Response:
    """Documents and images from the image origin, restricted to its base path"""
    proxy = request.app[PROXY_KEY]
    image_url = request.app[CONFIG_KEY].get('gateway.image_url')
    if not image_url:
        raise GatewayError("Image proxy is not configured", status=503)

    path = request.query.get('path')
    if not path:
        return web.json_response({"message": "Missing path parameter"}, status=400)

    target = resolve_image_target(image_url, path)

    reply = await proxy.send('GET', target, {'Accept': request.headers.get('Accept', '*/*')})

    if not reply.ok:
        return web.json_response(
            {"message": f"Upstream responded with status {reply.status}"}, status=reply.status
        )

    response = web.Response(
        body=reply.body,
        headers={
            'Content-Type': reply.content_type or 'application/octet-stream',
            'Cache-Control': reply.headers.get('Cache-Control') or DEFAULT_IMAGE_CACHE_CONTROL,
        },
    )
    copy_validators(reply, response)
    return response


def setup_routes(app: web.Application, base_path: str):
    api = f"{base_path}/api"
    router = app.router

    add_resource(app, f"{api}/requests/cbl", 'cblrequests')
    add_resource(app, f"{api}/requests/rtgs", 'rtgsrequests')

    for method in ('GET', 'POST', 'PUT'):
        router.add_route(method, f"{api}/requests/letter-of-guarantee", letter_of_guarantee)

    router.add_post(f"{api}/companies/register", register_company)
    router.add_get(f"{api}/companies/getInfo/{{code}}", company_info)
    router.add_post(f"{api}/companies/public/users/{{userId}}", update_public_user)
    router.add_post(f"{api}/companies/{{code}}/attachments/UploadBatch", upload_attachments)
    router.add_delete(f"{api}/companies/{{code}}/attachments/{{attachmentId}}", delete_attachment)
    router.add_get(f"{api}/companies/{{code}}/users/{{userId}}", company_user)
    router.add_post(f"{api}/companies/{{code}}/users/{{userId}}", company_user)
    router.add_get(f"{api}/profile/company/{{code}}", company_profile)

    router.add_get(f"{api}/users/me", current_user)
    router.add_get(f"{api}/users/by-auth/{{userId}}", user_by_auth_id)

    router.add_get(f"{api}/proxy/image", image_proxy)

    # Must stay last: everything else under /api goes straight upstream
    router.add_route('*', f"{api}/{{tail:.*}}", catch_all)
