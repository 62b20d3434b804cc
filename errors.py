"""Error taxonomy shared by the gateway, the relay and the tunnel supervisor.

Every failure on the request path is a ``GatewayError`` and is rendered to
the caller as an OpenAI-style envelope::

    {"error": {"message": "...", "type": "...", "code": 500}}
"""

from typing import Any

# Internal code recorded for failures that never produced an upstream response
UPSTREAM_ERROR_CODE = 500


class GatewayError(Exception):
    """Base class for failures surfaced to callers as a JSON error envelope."""

    error_type = "api_error"
    status_code = 500

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.status_code

    def to_envelope(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class MalformedRequest(GatewayError):
    """Inbound body is not valid JSON or lacks a required field."""

    error_type = "invalid_request_error"
    status_code = 400


class ConfigurationError(GatewayError):
    """The gateway is not configured to make the call (no credential)."""

    error_type = "configuration_error"
    status_code = 500


class UpstreamCallFailure(GatewayError):
    """No response could be obtained from the upstream API."""

    error_type = "api_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, UPSTREAM_ERROR_CODE)


class TunnelError(Exception):
    """Tunnel could not be started. Reported as a result, never raised to callers."""


class ExecutableNotFound(TunnelError):
    pass


class SpawnFailed(TunnelError):
    pass
