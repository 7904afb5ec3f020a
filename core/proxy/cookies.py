# core/proxy/cookies.py
"""Auth cookie names, profiles and helpers"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

from aiohttp import web

ACCESS_TOKEN_COOKIE = 'accessToken'
REFRESH_TOKEN_COOKIE = 'refreshToken'
KYC_TOKEN_COOKIE = 'kycToken'
PERMISSIONS_COOKIE = 'permissions'

# Misspelled name written by older frontend builds, still cleared on logout
LEGACY_ACCESS_TOKEN_COOKIE = 'acceessToken'

WEEK_IN_SECONDS = 60 * 60 * 24 * 7


@dataclass(frozen=True)
class CookieProfile:
    httponly: bool
    secure: bool
    path: str
    max_age: int = WEEK_IN_SECONDS
    samesite: str = 'Lax'


# Tokens rotated by the API proxy stay readable by client scripts
PROXY_COOKIE_PROFILE = CookieProfile(httponly=False, secure=False, path='/')


def login_cookie_profile(base_path: str) -> CookieProfile:
    """Profile for tokens issued by login and 2FA verification"""
    return CookieProfile(httponly=True, secure=True, path=base_path or '/')


def sanitize_cookie(value: Optional[str]) -> Optional[str]:
    """URL-decode a cookie value and strip one pair of surrounding quotes"""
    if not value:
        return None

    try:
        decoded = unquote(value, errors='strict')
    except UnicodeDecodeError:
        decoded = value

    if decoded.startswith('"'):
        decoded = decoded[1:]
    if decoded.endswith('"'):
        decoded = decoded[:-1]
    return decoded


def _set(response: web.StreamResponse, name: str, value: str, profile: CookieProfile):
    response.set_cookie(
        name,
        value,
        path=profile.path,
        max_age=profile.max_age,
        httponly=profile.httponly,
        secure=profile.secure,
        samesite=profile.samesite,
    )


def set_token_cookies(response: web.StreamResponse, access_token: str, refresh_token: str,
                      profile: CookieProfile, kyc_token: Optional[str] = None):
    _set(response, ACCESS_TOKEN_COOKIE, access_token, profile)
    _set(response, REFRESH_TOKEN_COOKIE, refresh_token, profile)
    if kyc_token:
        _set(response, KYC_TOKEN_COOKIE, kyc_token, profile)


def clear_auth_cookies(response: web.StreamResponse, base_path: str):
    """
    Expire every auth cookie on both the base path and the root path.

    aiohttp keeps one morsel per cookie name, so the Set-Cookie headers are
    written directly to emit one header per (name, path).
    """
    paths = [base_path, '/'] if base_path and base_path != '/' else ['/']
    names = (LEGACY_ACCESS_TOKEN_COOKIE, ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, KYC_TOKEN_COOKIE)

    for name in names:
        for path in paths:
            response.headers.add(
                'Set-Cookie',
                f"{name}=; Path={path}; Max-Age=0; "
                f"Expires=Thu, 01 Jan 1970 00:00:00 GMT; HttpOnly; Secure; SameSite=Lax"
            )
