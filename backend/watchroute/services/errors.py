class FeedFetchError(Exception):
    """Base exception for origin feed fetch/parse failures."""
    pass

class TransientFetchError(FeedFetchError):
    """Network or parse failure; the feed is retried on its next tick."""
    pass

class RateLimitExhausted(FeedFetchError):
    """Origin signalled rate limiting; the feed cools down before retrying."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after

class InstanceUnavailable(Exception):
    """A Sonarr/Radarr instance needed for routing failed its health check."""

    def __init__(self, message: str, instance_ids=None):
        super().__init__(message)
        self.instance_ids = list(instance_ids or [])

class ArrAPIError(Exception):
    """Sonarr/Radarr API call failed."""
    pass

class DuplicateApprovalRequest(Exception):
    """A pending approval already exists for this user and content."""

    def __init__(self, existing):
        super().__init__(f"Pending approval request {existing.id} already exists")
        self.existing = existing

class InvalidApprovalTransition(Exception):
    """Approval requests only leave the pending state, and only once."""
    pass

class RetryCeilingExceeded(Exception):
    """A deferred entry failed more times than the retry ceiling allows."""
    pass

class PersistenceError(Exception):
    """Usage or approval write failed; callers must retry or surface it."""
    pass
