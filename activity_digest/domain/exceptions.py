from typing import Optional


class DigestException(Exception):
    """Base exception for all activity-digest errors."""
    pass


class ApiError(DigestException):
    """Raised when a remote API call returns a non-2xx status or cannot be completed."""
    def __init__(self, endpoint: str, status: Optional[int] = None, message: str = "API request failed."):
        self.endpoint = endpoint
        self.status = status
        self.message = message
        super().__init__(f"{message} Endpoint: {endpoint} (status: {status})")

class AuthError(ApiError):
    """Raised on 401: the credential is missing, bad or expired. Fatal to the run."""
    pass

class ForbiddenError(ApiError):
    """Raised on 403 responses that are not rate-limit related."""
    pass

class RateLimitError(ForbiddenError):
    """Raised when the API refuses a request because the rate limit is exhausted."""
    def __init__(self, endpoint: str, status: Optional[int] = 403, reset_at: Optional[int] = None,
                 message: str = "API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(endpoint, status, f"{message} Resets at: {reset_at}")

class NotFoundError(ApiError):
    """Raised internally on 404. Listing calls turn it into an empty result."""
    pass

class TransientApiError(ApiError):
    """Raised for any other non-2xx status, network failure or timeout."""
    pass


class DeliveryError(DigestException):
    """Raised when the digest email cannot be delivered."""
    pass


class StateCorruptionWarning(UserWarning):
    """Emitted when the persisted state file is unreadable and an empty snapshot is used instead."""
    pass
