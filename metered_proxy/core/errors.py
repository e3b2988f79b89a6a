"""
Error taxonomy for the proxy pipeline.

Each error maps to exactly one HTTP status surfaced to the client.
Nothing is retried.
"""


class ProxyError(Exception):
    """Base class for failures that terminate a proxied call."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(ProxyError):
    """Wrong method, query parameters, malformed body or unsupported model."""
    status_code = 400


class Unauthorized(ProxyError):
    """The API key does not belong to any user."""
    status_code = 401


class InternalError(ProxyError):
    """Storage failure or broken internal setup."""
    status_code = 500


class GatewayFailure(ProxyError):
    """Upstream transport failure or upstream protocol violation."""
    status_code = 502
