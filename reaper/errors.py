"""Failure taxonomy for the reclamation path."""


class ReaperError(Exception):
    """Base class for errors raised by the reaper."""


class MalformedNotification(ReaperError):
    """Expiration payload is not a ``{prefix}:{session_id}:{kind}`` key."""

    def __init__(self, payload: str, reason: str):
        super().__init__(f"{reason}: {payload!r}")
        self.payload = payload
        self.reason = reason


class StoreUnavailable(ReaperError):
    """Redis command failed: unreachable, timed out or rejected by the server."""


class SubscriptionLost(ReaperError):
    """The expiration subscription connection dropped or could not be opened."""


class SubscriptionFailed(ReaperError):
    """Startup could not establish the expiration subscription."""


class RuntimeUnavailable(ReaperError):
    """Docker call failed on connectivity, timeout or an engine error."""


class AlreadyStopped(ReaperError):
    """Container was not running any more when asked to stop."""


class AlreadyRemoved(ReaperError):
    """Container was gone, or being removed, when asked to remove."""
