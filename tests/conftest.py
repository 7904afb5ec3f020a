import asyncio
import inspect
import json
from dataclasses import dataclass, field

import jwt
import pytest
from aiohttp import web
from multidict import CIMultiDict

from core.application import create_app
from core.config_manager import ConfigManager

AUTH_PATH = '/compauthapi/api/auth'
IMAGE_PATH = '/files/'


@dataclass
class RecordedRequest:
    method: str
    path: str
    query_string: str
    headers: CIMultiDict
    body: bytes = b''

    @property
    def json(self):
        return json.loads(self.body.decode('utf-8'))


def respond(status=200, json_body=None, text=None, body=None, headers=None):
    """Responder building a fresh response per call"""

    def responder(recorded):
        if json_body is not None:
            return web.json_response(json_body, status=status, headers=headers)
        if text is not None:
            return web.Response(text=text, status=status, headers=headers)
        return web.Response(body=body or b'', status=status, headers=headers)

    return responder


def delayed(seconds, responder):
    """Wraps a responder so the reply arrives after `seconds`"""

    async def slow(recorded):
        await asyncio.sleep(seconds)
        return responder(recorded)

    return slow


@dataclass
class FakeUpstream:
    """Stands in for the company gateway, the auth service and the image origin"""

    requests: list = field(default_factory=list)
    handlers: dict = field(default_factory=dict)
    server: object = None

    def __post_init__(self):
        self.app = web.Application()
        self.app.router.add_route('*', '/{tail:.*}', self.dispatch)

    def on(self, method, path, *responders):
        """Responders are used in order, the last one keeps answering"""
        self.handlers[(method, path)] = list(responders)

    def calls(self, path):
        return [r for r in self.requests if r.path == path]

    def url(self, path):
        return str(self.server.make_url(path))

    async def dispatch(self, request):
        recorded = RecordedRequest(
            method=request.method,
            path=request.rel_url.raw_path,
            query_string=request.rel_url.raw_query_string,
            headers=CIMultiDict(request.headers),
            body=await request.read(),
        )
        self.requests.append(recorded)

        responders = self.handlers.get((request.method, recorded.path))
        if responders:
            responder = responders.pop(0) if len(responders) > 1 else responders[0]
            reply = responder(recorded)
            if inspect.isawaitable(reply):
                reply = await reply
            return reply

        return web.json_response({
            'method': recorded.method,
            'path': recorded.path,
            'query': recorded.query_string,
        })


def make_jwt(payload):
    return jwt.encode(payload, 'test-secret', algorithm='HS256')


def cookie_header(**cookies):
    return {'Cookie': '; '.join(f"{name}={value}" for name, value in cookies.items())}


@pytest.fixture
async def upstream(aiohttp_server):
    fake = FakeUpstream()
    fake.server = await aiohttp_server(fake.app)
    return fake


@pytest.fixture
def make_config(tmp_path, upstream):
    def _make(**overrides):
        config = ConfigManager(config_path=tmp_path / 'config.json', environ={})
        config.set('gateway.base_api', upstream.url('/'))
        config.set('gateway.auth_api', upstream.url(AUTH_PATH))
        config.set('gateway.image_url', upstream.url(IMAGE_PATH))
        for key, value in overrides.items():
            config.set(key, value)
        return config

    return _make


@pytest.fixture
async def client(aiohttp_client, make_config):
    return await aiohttp_client(create_app(make_config()))
