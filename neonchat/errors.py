from typing import Optional


class NeonChatError(Exception):
    """Base class for failures that map to a user-facing message."""

    status_code: int = 500
    user_message: str = "AI gateway error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(NeonChatError):
    status_code = 500
    user_message = "Service is not configured."


class GatewayError(NeonChatError):
    status_code = 500
    user_message = "AI gateway error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.upstream_status = status_code
        self.detail = detail


class RateLimitError(GatewayError):
    status_code = 429
    user_message = "Rate limit exceeded. Please try again in a moment."


class QuotaExceededError(GatewayError):
    status_code = 402
    user_message = "Insufficient credits. Add credits to your workspace."


class ImageResolutionError(NeonChatError):
    status_code = 400
    user_message = "Failed to fetch image."


class MemoryCapacityError(NeonChatError):
    status_code = 409
    user_message = "Memory is full and every stored item is pinned."
