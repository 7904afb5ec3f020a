import base64
import json

from conftest import cookie_header, make_jwt
from utils.jwt_utils import decode_jwt_payload, user_id_from_token


def _segment(value):
    raw = json.dumps(value).encode('utf-8')
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def test_decode_payload():
    token = make_jwt({'nameid': '42', 'role': 'maker'})
    assert decode_jwt_payload(token) == {'nameid': '42', 'role': 'maker'}


def test_decode_ignores_expiry():
    token = make_jwt({'nameid': '42', 'exp': 1})
    assert decode_jwt_payload(token) == {'nameid': '42', 'exp': 1}


def test_decode_rejects_malformed_tokens():
    assert decode_jwt_payload('not-a-jwt') is None
    assert decode_jwt_payload('a.b') is None
    assert decode_jwt_payload('a.!!!.c') is None

    header = _segment({'alg': 'HS256', 'typ': 'JWT'})
    list_payload = f"{header}.{_segment(['not', 'an', 'object'])}.c2lnbmF0dXJl"
    assert decode_jwt_payload(list_payload) is None


def test_user_id_prefers_nameid():
    assert user_id_from_token(make_jwt({'nameid': '42', 'sub': '7'})) == 42


def test_user_id_falls_back_to_sub():
    assert user_id_from_token(make_jwt({'sub': '7'})) == 7


def test_user_id_takes_leading_integer():
    assert user_id_from_token(make_jwt({'nameid': '15|company-3'})) == 15


def test_user_id_missing_or_not_numeric():
    assert user_id_from_token(make_jwt({'email': 'a@example.com'})) is None
    assert user_id_from_token(make_jwt({'nameid': 'admin'})) is None
    assert user_id_from_token('garbage') is None


def test_user_id_zero_is_rejected():
    assert user_id_from_token(make_jwt({'nameid': '0'})) is None
    assert user_id_from_token(make_jwt({'nameid': '-0', 'sub': '5'})) is None


async def test_current_user_with_zero_id_is_bad_token(client, upstream):
    resp = await client.get(
        '/Companygw/api/users/me',
        headers=cookie_header(accessToken=make_jwt({'nameid': '0'})),
    )

    assert resp.status == 400
    assert await resp.json() == {'error': 'Bad token'}
    assert upstream.requests == []
