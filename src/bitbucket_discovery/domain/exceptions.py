"""Errors raised while talking to Bitbucket and discovering heads."""
from typing import Optional


BODY_EXCERPT_LENGTH = 500


class BitbucketError(Exception):
    """Base exception for all Bitbucket failures."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransientNetworkError(BitbucketError):
    """Connection or timeout failure talking to the API."""
    pass


class RateLimitException(BitbucketError):
    """Exception raised when rate limit is hit."""
    pass


class BitbucketRequestError(BitbucketError):
    """The API answered with an unexpected HTTP status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        url: Optional[str] = None,
        body: str = ""
    ):
        super().__init__(message, url)
        self.status_code = status_code
        self.body = body[:BODY_EXCERPT_LENGTH]


class ResourceNotFoundError(BitbucketRequestError):
    """HTTP 404."""
    pass


class UnauthorizedError(BitbucketRequestError):
    """HTTP 401, usually misconfigured credentials."""
    pass


class PermissionDeniedError(BitbucketRequestError):
    """HTTP 403."""
    pass


class MalformedResponseError(BitbucketError):
    """The response body could not be parsed into the expected shape."""
    pass


class InvalidConfigurationError(BitbucketError):
    """Caller supplied an invalid setting or object."""
    pass
