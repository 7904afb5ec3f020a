# core/errors.py
"""Gateway exception hierarchy"""

from typing import Optional


class GatewayError(Exception):
    """Base error rendered by the error middleware as JSON {"message": ...}"""

    status = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class GatewayConfigError(GatewayError, RuntimeError):
    """Required configuration value is missing or invalid"""

    status = 500


class UnsafeTargetError(GatewayError, ValueError):
    """A caller-supplied path resolves outside the allowed upstream"""

    status = 400


class UpstreamUnavailableError(GatewayError):
    status = 502


class UpstreamTimeoutError(GatewayError):
    status = 504
