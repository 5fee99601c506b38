"""Error taxonomy for the chat turn pipeline.

Every error raised out of the pipeline derives from TurnError so the HTTP layer can map
families to status codes with one handler each. Candidate rejections are not errors:
they are Verdict objects consumed by the retry loop.
"""

from typing import Optional


class TurnError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", retry_after: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.retry_after = retry_after


# --------------- Request ---------------
class InvalidRequestError(TurnError):
    status_code = 400


# --------------- Access ---------------
class AccessError(TurnError):
    status_code = 404


class NotFoundError(AccessError):
    status_code = 404


class AccessDeniedError(AccessError):
    status_code = 403


# --------------- Upstream (completion service) ---------------
class UpstreamError(TurnError):
    status_code = 503
    retryable = True

    def __init__(self, message: str = "", retry_after: Optional[int] = 30, model: Optional[str] = None):
        super().__init__(message, retry_after=retry_after)
        self.model = model


class UpstreamUnavailable(UpstreamError):
    pass


class UpstreamTimeout(UpstreamError):
    pass


class UpstreamInvalidResponse(UpstreamError):
    pass


class ModelUnavailableError(UpstreamUnavailable):
    """The requested model cannot serve; the client moves on to the next fallback."""


# --------------- Worker budget ---------------
class RateLimitError(TurnError):
    status_code = 429
    retryable = True

    def __init__(self, message: str = "Too many requests, please try again later.", retry_after: Optional[int] = 60):
        super().__init__(message, retry_after=retry_after)


# --------------- Persistence ---------------
class PersistenceError(TurnError):
    status_code = 500

    def __init__(self, message: str = "", failures: Optional[list] = None):
        super().__init__(message)
        self.failures = failures or []


class SchemaMismatchError(PersistenceError):
    def __init__(self, message: str = "Database schema mismatch. Please run database migrations.", failures: Optional[list] = None):
        super().__init__(message, failures=failures)


class OrderCollisionError(PersistenceError):
    """Another writer took the same (session_id, order_index) slot."""
