# utils/gateway_client.py
"""
Synchronous client for the gateway's browser-facing API.

Used by scripts and smoke checks; keeps the session cookies the gateway
issues on login, exactly like a browser would.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from core.api_response import ApiError, handle_api_response

logger = logging.getLogger(__name__)


class GatewayClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 30):
        """
        Args:
            base_url: Gateway URL including the base path (e.g. https://host/Companygw)
            session: requests session to reuse (cookie jar included)
            timeout: Per-request timeout, seconds
        """
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{path.lstrip('/')}"

    def _request(self, method: str, path: str, fallback: str, **kwargs) -> Any:
        try:
            response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"❌ {method} {path} failed: {e}")
            raise ApiError(f"{fallback}: {e}") from e

        return handle_api_response(response.status_code, response.text, fallback)

    def login(self, login: str, password: str) -> Dict[str, Any]:
        """
        Returns:
            dict: Auth service reply (requiresTwoFactor / requiresTwoFactorEnable flags)
        """
        return self._request('POST', 'auth/login', "Login failed",
                             json={"login": login, "password": password})

    def verify_two_factor(self, login: str, code: str, initial: bool = False) -> Dict[str, Any]:
        endpoint = 'auth/verify-initial-2fa' if initial else 'auth/verify-2fa'
        return self._request('POST', endpoint, "Two-factor verification failed",
                             json={"login": login, "token": code.strip()})

    def logout(self) -> None:
        self._request('POST', 'auth/logout', "Logout failed")
        self.session.cookies.clear()

    def current_user(self) -> Dict[str, Any]:
        return self._request('GET', 'users/me', "Failed to fetch current user")

    def get_user_by_id(self, user_id: int) -> Dict[str, Any]:
        return self._request('GET', f'users/by-auth/{user_id}', f"Failed to fetch user with ID {user_id}")

    def check_account(self, account_number: str) -> List[Dict[str, Any]]:
        return self._request('GET', 'transfers/accounts', "Failed to fetch account info.",
                             params={'account': account_number})

    def get_branches(self) -> List[Dict[str, Any]]:
        data = self._request('GET', 'branches', "Failed to fetch branches")
        return data['details']['branches']

    def get_pricing(self) -> Dict[str, Any]:
        return self._request('GET', 'admin/pricing', "Failed to fetch pricing info.")

    def get_visas(self) -> Any:
        return self._request('GET', 'visas/company', "Failed to fetch visas.")

    def health(self) -> bool:
        """True if the gateway answers its health check"""
        try:
            response = self.session.get(self._url('health'), timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.status_code == 200 and response.text == 'ok'
