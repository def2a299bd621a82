"""Error taxonomy shared by the gate, the pipeline and the provider adapters."""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base error; carries the HTTP status and wire type used in responses."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI-style error body."""
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class AuthError(GatewayError):
    """Missing or invalid bearer token. No upstream call is attempted."""

    status_code = 401
    error_type = "authentication_error"


class ValidationError(GatewayError):
    """Malformed client request."""

    status_code = 400
    error_type = "invalid_request_error"


class ConfigError(GatewayError):
    """The selected mode needs a provider that has no usable credential or endpoint."""

    status_code = 503
    error_type = "configuration_error"


class UpstreamError(GatewayError):
    """Base for failures talking to a provider."""

    status_code = 502
    error_type = "upstream_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, role: Optional[str] = None):
        super().__init__(message, code=code)
        self.role = role


class UpstreamTimeout(UpstreamError):
    """Connect or first-byte deadline exceeded, or connection refused."""

    status_code = 504
    error_type = "upstream_timeout"
    retryable = True


class UpstreamRateLimited(UpstreamError):
    """Provider answered 429."""

    status_code = 429
    error_type = "upstream_rate_limited"
    retryable = True


class UpstreamHTTPError(UpstreamError):
    """Provider answered with a non-2xx status before any body was consumed."""

    error_type = "upstream_http_error"

    def __init__(self, message: str, status: int, role: Optional[str] = None):
        super().__init__(message, code=str(status), role=role)
        self.status = status


class UpstreamProtocolError(UpstreamError):
    """Provider payload could not be parsed."""

    error_type = "upstream_protocol_error"


class ClientDisconnected(GatewayError):
    """The client went away. Cancellation, not a failure to report."""

    status_code = 499
    error_type = "client_disconnected"


# Wire type -> class, used to re-raise canonical Error events as exceptions
ERROR_TYPES = {
    cls.error_type: cls
    for cls in (
        GatewayError,
        AuthError,
        ValidationError,
        ConfigError,
        UpstreamError,
        UpstreamTimeout,
        UpstreamRateLimited,
        UpstreamProtocolError,
        ClientDisconnected,
    )
}


def error_from_kind(kind: str, message: str, code: Optional[str] = None) -> GatewayError:
    """Rebuild a classified error from a canonical Error event, keeping its code."""
    if kind == UpstreamHTTPError.error_type:
        status = int(code) if code and code.isdigit() else UpstreamHTTPError.status_code
        return UpstreamHTTPError(message, status=status)
    return ERROR_TYPES.get(kind, GatewayError)(message, code=code)
