# core/proxy/__init__.py
"""
Helpers shared by the gateway proxy and its routes: upstream URL building
and validation, auth cookie handling.
"""

from core.proxy.cookies import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    KYC_TOKEN_COOKIE,
    sanitize_cookie,
)
from core.proxy.upstream_urls import (
    build_base_api_url,
    ensure_company_gateway_path,
)

__all__ = [
    'ACCESS_TOKEN_COOKIE',
    'REFRESH_TOKEN_COOKIE',
    'KYC_TOKEN_COOKIE',
    'sanitize_cookie',
    'build_base_api_url',
    'ensure_company_gateway_path',
]
