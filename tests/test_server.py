import socket
from types import SimpleNamespace

import aiohttp
import psutil
import pytest

from core.application import create_app
from core.certificate_manager import CertificateManager
from core.errors import GatewayConfigError
from core.proxy_manager import GatewayServer
from utils import port_utils
from utils.port_utils import check_port_availability, get_process_using_port, is_port_in_use


def test_create_app_requires_upstreams(tmp_path):
    from core.config_manager import ConfigManager

    config = ConfigManager(config_path=tmp_path / 'config.json', environ={})

    with pytest.raises(GatewayConfigError, match='gateway.base_api is not defined'):
        create_app(config)

    config.set('gateway.base_api', 'https://gw.example.com')
    with pytest.raises(GatewayConfigError, match='gateway.auth_api is not defined'):
        create_app(config)


def test_port_checks():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen()
        port = s.getsockname()[1]

        assert is_port_in_use(port, '127.0.0.1')
        available, message = check_port_availability(port, '127.0.0.1')
        assert not available
        assert str(port) in message


def _listener(ip, port, pid, status=psutil.CONN_LISTEN):
    return SimpleNamespace(laddr=SimpleNamespace(ip=ip, port=port), status=status, pid=pid)


class FakeProcess:
    names = {10: 'nginx', 20: 'node'}

    def __init__(self, pid):
        if pid not in self.names:
            raise psutil.NoSuchProcess(pid)
        self.pid = pid

    def name(self):
        return self.names[self.pid]

    def username(self):
        if self.pid == 20:
            raise psutil.AccessDenied(self.pid)
        return 'www-data'


@pytest.fixture
def listeners(monkeypatch):
    connections = []
    monkeypatch.setattr(port_utils.psutil, 'net_connections', lambda kind: connections)
    monkeypatch.setattr(port_utils.psutil, 'Process', FakeProcess)
    return connections


def test_process_lookup_matches_host(listeners):
    listeners.extend([
        _listener('10.0.0.5', 3000, 10),
        _listener('127.0.0.1', 3000, 20),
        _listener('127.0.0.1', 3001, 10, status=psutil.CONN_ESTABLISHED),
    ])

    owner = get_process_using_port(3000, '127.0.0.1')
    assert owner == {'name': 'node', 'pid': 20, 'username': 'N/A', 'address': '127.0.0.1:3000'}

    assert get_process_using_port(3000, '0.0.0.0')['pid'] == 10
    assert get_process_using_port(3001, '127.0.0.1') is None


def test_process_lookup_wildcard_listener_blocks_any_host(listeners):
    listeners.extend([_listener('99.9.9.9', 3000, 99), _listener('::', 3000, 10)])

    owner = get_process_using_port(3000, '127.0.0.1')
    assert owner['name'] == 'nginx'
    assert owner['username'] == 'www-data'


def test_process_lookup_without_permission(monkeypatch):
    def denied(kind):
        raise psutil.AccessDenied()

    monkeypatch.setattr(port_utils.psutil, 'net_connections', denied)
    assert get_process_using_port(3000) is None


def test_port_conflict_message_names_owner(listeners, monkeypatch):
    monkeypatch.setattr(port_utils, 'is_port_in_use', lambda port, host: True)
    listeners.append(_listener('0.0.0.0', 3000, 10))

    available, message = check_port_availability(3000, '127.0.0.1')

    assert not available
    assert message == 'Port 3000 is used by nginx (PID: 10) on 0.0.0.0:3000, user: www-data'


def test_certificate_generation(tmp_path):
    manager = CertificateManager(certs_dir=tmp_path / 'certs')

    assert not manager.check_certificates_exist()
    assert manager.get_certificate_days_remaining() == -1

    assert manager.ensure_certificates_exist()
    assert manager.check_certificates_exist()
    assert 360 <= manager.get_certificate_days_remaining() <= 365


async def test_server_lifecycle(make_config, unused_tcp_port):
    config = make_config(**{'server.host': '127.0.0.1', 'server.port': unused_tcp_port})
    server = GatewayServer(config)

    assert await server.start()
    try:
        assert server.get_status()['running'] is True

        async with aiohttp.ClientSession() as session:
            async with session.get(f'http://127.0.0.1:{unused_tcp_port}/Companygw/api/health') as resp:
                assert resp.status == 200
                assert await resp.text() == 'ok'

        assert not await server.start()
    finally:
        await server.stop()

    assert server.get_status()['running'] is False


async def test_server_refuses_busy_port(make_config):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen()
        port = s.getsockname()[1]

        server = GatewayServer(make_config(**{'server.host': '127.0.0.1', 'server.port': port}))

        assert not await server.start()
        assert server.get_status()['last_error']['type'] == 'port'


async def test_server_reports_config_errors(tmp_path):
    from core.config_manager import ConfigManager

    server = GatewayServer(ConfigManager(config_path=tmp_path / 'config.json', environ={}))
    server.config.set('server.port', 0)

    assert not await server.start()
    assert server.get_status()['last_error'] == {
        'type': 'config',
        'details': 'gateway.base_api is not defined',
    }


async def test_status_includes_auth_endpoints(make_config, upstream):
    server = GatewayServer(make_config())
    server.create_app()

    auth = server.get_status()['auth']
    assert auth['refresh_url'] == upstream.url('/compauthapi/api/auth/refresh-token')
    assert auth['auth_root'] == upstream.url('/compauthapi/')
