"""
Exception types for the experiments engine.
Fetch and cache errors are recovered inside the engine; only
ExperimentsNotReady reaches consumers.
"""
from typing import Optional


class ExperimentsError(Exception):
    """Base class for experiments engine errors"""


class FetchTimeout(ExperimentsError):
    """Manifest request exceeded its timeout"""


class FetchHttpError(ExperimentsError):
    """Manifest endpoint answered with a non-success status or the connection failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        # Connection errors carry no status code and are retried like 5xx
        return self.status_code is None or self.status_code >= 500


class ManifestParseError(ExperimentsError):
    """Manifest body is not a JSON array"""


class FetchFailed(ExperimentsError):
    """
    Raised by the fetcher once retries are exhausted or a non-retryable
    error occurred. The caller falls back to the cache.
    """

    def __init__(self, message: str, attempts: int = 0, cause: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class CacheUnavailable(ExperimentsError):
    """Persistent store could not be read or written"""


class ExperimentsNotReady(ExperimentsError):
    """user_experiments was read before initialization completed"""
