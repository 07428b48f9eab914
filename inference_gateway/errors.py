"""
Error taxonomy for the inference gateway.

Every failure raised by a backend is a GatewayError subclass so callers
can render ``message`` and ``recovery_suggestion`` directly.
"""

from typing import Optional

import httpx


class GatewayError(Exception):
    """Base class for all gateway errors."""

    message: str = "Inference gateway error"
    recovery_suggestion: str = "Check network connection and try again"
    transient: bool = False

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ConfigurationError(GatewayError):
    message = "AI provider configuration error"
    recovery_suggestion = "Review and update AI provider settings"


class ModelNotFound(GatewayError):
    recovery_suggestion = "Select a model from the catalog"

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model '{model_id}' not found. Please select a valid model.")


class ModelNotDownloaded(GatewayError):
    message = "Model not downloaded. Please download the model in settings first."
    recovery_suggestion = "Download the model before enabling on-device inference"


class ModelLoadFailed(GatewayError):
    recovery_suggestion = "Try redownloading the model"

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Failed to load model: {cause}")


class ModelLoadInProgress(GatewayError):
    message = "Model loading already in progress"
    recovery_suggestion = "Wait for the current load to finish"


class NotConnected(GatewayError):
    message = "Not connected to inference backend"
    recovery_suggestion = "Check your server configuration and test the connection"


class ConnectionFailed(GatewayError):
    recovery_suggestion = "Verify the server is running and accessible"

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Connection failed with status code {status_code}")


class RequestFailed(GatewayError):
    recovery_suggestion = "Verify the server is running and accessible"

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Request failed with status code {status_code}")


class InvalidResponse(GatewayError):
    message = "Invalid response from AI server"
    recovery_suggestion = "Check server compatibility and version"


class VisionNotSupported(GatewayError):
    message = "Selected model does not support vision/image processing."
    recovery_suggestion = "Switch to a vision-capable model"


class NetworkUnavailable(GatewayError):
    message = "Network connection is not available"
    recovery_suggestion = "Check your internet connection"
    transient = True


class GatewayTimeout(GatewayError):
    message = "Request timed out"
    recovery_suggestion = "Try again or check server status"
    transient = True


class ServerUnavailable(GatewayError):
    message = "AI server is not available"
    recovery_suggestion = "Verify server configuration and availability"


class RateLimitExceeded(GatewayError):
    message = "Rate limit exceeded"
    recovery_suggestion = "Wait before making more requests"


class AuthenticationFailed(GatewayError):
    message = "Authentication failed"
    recovery_suggestion = "Check API key and authentication credentials"


class MaxRetriesExceeded(GatewayError):
    message = "Maximum retry attempts exceeded"
    recovery_suggestion = "Check network connection and server status"


class ContextTooLong(GatewayError):
    recovery_suggestion = "Shorten the message or the attached context"

    def __init__(self, tokens: int, limit: int):
        self.tokens = tokens
        self.limit = limit
        super().__init__(f"Input too long ({tokens} tokens). Maximum: {limit} tokens.")


class InsufficientStorage(GatewayError):
    recovery_suggestion = "Free up disk space or pick a smaller quantization"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient storage. Required: {required / 1e9:.1f} GB, Available: {available / 1e9:.1f} GB"
        )


class InferenceError(GatewayError):
    recovery_suggestion = "Try again"

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Model inference failed: {cause}")


class UnknownError(GatewayError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Unknown error: {cause}")


def map_transport_error(exc: BaseException) -> GatewayError:
    """Convert an httpx transport exception into a gateway error."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return GatewayTimeout()
    if isinstance(exc, httpx.ConnectError):
        return ServerUnavailable()
    if isinstance(exc, httpx.NetworkError):
        return NetworkUnavailable()
    if isinstance(exc, httpx.DecodingError):
        return InvalidResponse()
    return UnknownError(exc)


def map_status(status_code: int) -> GatewayError:
    """Convert a non-2xx HTTP status from a request into a gateway error."""
    if status_code == 429:
        return RateLimitExceeded()
    if status_code in (401, 403):
        return AuthenticationFailed()
    return RequestFailed(status_code)
