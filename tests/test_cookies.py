from aiohttp import web

from core.proxy.cookies import (
    PROXY_COOKIE_PROFILE,
    WEEK_IN_SECONDS,
    clear_auth_cookies,
    login_cookie_profile,
    sanitize_cookie,
    set_token_cookies,
)


def test_sanitize_cookie():
    assert sanitize_cookie(None) is None
    assert sanitize_cookie('') is None
    assert sanitize_cookie('abc') == 'abc'
    assert sanitize_cookie('%22abc%22') == 'abc'
    assert sanitize_cookie('"abc"') == 'abc'
    assert sanitize_cookie('a%2Bb') == 'a+b'


def test_login_profile_is_http_only_and_scoped_to_base_path():
    profile = login_cookie_profile('/Companygw')
    assert profile.httponly and profile.secure
    assert profile.path == '/Companygw'
    assert profile.max_age == WEEK_IN_SECONDS
    assert login_cookie_profile('').path == '/'


def test_set_token_cookies_with_proxy_profile():
    response = web.Response()
    set_token_cookies(response, 'acc', 'ref', PROXY_COOKIE_PROFILE)

    access = response.cookies['accessToken']
    assert access.value == 'acc'
    assert access['path'] == '/'
    assert access['max-age'] == str(WEEK_IN_SECONDS)
    assert not access['httponly']
    assert not access['secure']
    assert response.cookies['refreshToken'].value == 'ref'
    assert 'kycToken' not in response.cookies


def test_set_token_cookies_with_kyc_token():
    response = web.Response()
    set_token_cookies(response, 'acc', 'ref', login_cookie_profile('/Companygw'), kyc_token='kyc')

    kyc = response.cookies['kycToken']
    assert kyc.value == 'kyc'
    assert kyc['httponly'] is True
    assert kyc['secure'] is True
    assert kyc['path'] == '/Companygw'


def test_clear_auth_cookies_expires_on_both_paths():
    response = web.Response()
    clear_auth_cookies(response, '/Companygw')

    headers = response.headers.getall('Set-Cookie')
    assert len(headers) == 8
    assert 'acceessToken=; Path=/Companygw; Max-Age=0' in headers[0]
    assert headers[1].startswith('acceessToken=; Path=/;')
    assert all('Expires=Thu, 01 Jan 1970 00:00:00 GMT' in h for h in headers)
    names = {h.split('=', 1)[0] for h in headers}
    assert names == {'acceessToken', 'accessToken', 'refreshToken', 'kycToken'}


def test_clear_auth_cookies_without_base_path():
    response = web.Response()
    clear_auth_cookies(response, '')

    headers = response.headers.getall('Set-Cookie')
    assert len(headers) == 4
    assert all('Path=/;' in h for h in headers)
