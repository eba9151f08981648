"""
Error taxonomy for Feed Service
"""
from typing import Optional


class FeedServiceError(Exception):
    """Base class for feed service errors"""


class FetchError(FeedServiceError):
    """A remote read failed (network, server error or timeout)"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PartialJoinFailure(FetchError):
    """One of the concurrent sub-feed fetches of a page failed"""

    def __init__(self, source: str, cause: BaseException):
        super().__init__(f"Failed to fetch {source} posts: {cause}", cause)
        self.source = source


class AuthRequiredError(FeedServiceError):
    """Operation needs an authenticated viewer"""

    def __init__(self, operation: str):
        super().__init__(f"Authentication required for {operation}")
        self.operation = operation
