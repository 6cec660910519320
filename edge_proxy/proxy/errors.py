from typing import Optional


class ProxyError(Exception):
    """Base class for failures that terminate a proxied request with a JSON error body."""

    status_code: int = 500
    error: str = "ProxyError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class MalformedTargetError(ProxyError):
    status_code = 400
    error = "Bad Request"


class ProtocolNotAllowedError(ProxyError):
    status_code = 400
    error = "Invalid Protocol"


class AuthenticationError(ProxyError):
    status_code = 401
    error = "Unauthorized"


class AccessDeniedError(ProxyError):
    status_code = 403
    error = "Forbidden"


class PayloadTooLargeError(ProxyError):
    status_code = 413
    error = "Payload Too Large"


class RequestTimeoutError(ProxyError):
    status_code = 500
    error = "Request Timeout"


class UpstreamNetworkError(ProxyError):
    status_code = 500
    error = "Upstream Network Error"
