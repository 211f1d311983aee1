"""Expiration listener: turn shadow-marker expirations into reclamation tasks."""

import threading
from collections.abc import Callable

import structlog

from reaper.errors import MalformedNotification, SubscriptionFailed, SubscriptionLost
from reaper.keys import shadow_session_id
from reaper.retry import backoff_delay
from reaper.session_store import SessionStore

logger = structlog.get_logger()


class ExpirationListener:
    """Own the expiration subscription and dispatch each shadow expiry once.

    Before the first successful subscription, ``max_startup_attempts``
    consecutive failures raise SubscriptionFailed. Once subscribed, a lost
    connection is retried forever with capped backoff, and
    ``on_resubscribe`` runs after each reconnect so missed expirations can
    be reconciled. Any other error escaping the receive loop is logged and
    handled like a lost connection.
    """

    def __init__(
        self,
        store: SessionStore,
        dispatch: Callable[[str], object],
        key_prefix: str = "s2c",
        max_startup_attempts: int = 10,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        poll_seconds: float = 1.0,
        on_resubscribe: Callable[[], object] | None = None,
    ):
        self.store = store
        self.dispatch = dispatch
        self.key_prefix = key_prefix
        self.max_startup_attempts = max_startup_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.poll_seconds = poll_seconds
        self.on_resubscribe = on_resubscribe
        self._subscribed = threading.Event()
        self._subscriptions = 0
        self._failures = 0

    @property
    def subscribed(self) -> bool:
        return self._subscribed.is_set()

    def handle(self, channel: str, payload: str | bytes) -> str | None:
        """Dispatch reclamation for a shadow expiry. Returns the session id, or None if ignored."""
        try:
            session_id = shadow_session_id(payload, self.key_prefix)
        except MalformedNotification as e:
            logger.warning("notification_malformed", channel=channel, payload=e.payload, reason=e.reason)
            return None
        if session_id is None:
            logger.debug("notification_ignored", channel=channel, payload=payload)
            return None
        logger.info("shadow_expired", session_id=session_id)
        try:
            self.dispatch(session_id)
        except Exception as e:
            logger.exception("dispatch_failed", session_id=session_id, error=str(e))
        return session_id

    def _on_subscribed(self) -> None:
        self._subscriptions += 1
        self._failures = 0
        self._subscribed.set()
        logger.info(
            "subscribed",
            channel=self.store.expired_channel,
            resubscription=self._subscriptions > 1,
        )
        if self._subscriptions > 1 and self.on_resubscribe is not None:
            try:
                self.on_resubscribe()
            except Exception as e:
                logger.exception("resubscribe_hook_failed", error=str(e))

    def run(self, stop: threading.Event) -> None:
        """Receive expirations until stop is set. Blocks the calling thread."""
        while not stop.is_set():
            try:
                for channel, payload in self.store.expirations(
                    stop,
                    poll_seconds=self.poll_seconds,
                    on_subscribed=self._on_subscribed,
                ):
                    self.handle(channel, payload)
            except SubscriptionLost as e:
                self._retry_subscription(stop, e)
            except Exception as e:
                logger.exception("listener_error", error=str(e))
                self._retry_subscription(stop, e)
        self._subscribed.clear()
        logger.info("listener_stopped")

    def _retry_subscription(self, stop: threading.Event, error: Exception) -> None:
        self._subscribed.clear()
        self._failures += 1
        if self._subscriptions == 0 and self._failures >= self.max_startup_attempts:
            logger.error("subscription_failed", attempts=self._failures, error=str(error))
            raise SubscriptionFailed(
                f"could not subscribe after {self._failures} attempts: {error}"
            ) from error
        delay = backoff_delay(
            self._failures - 1,
            self.backoff_base_seconds,
            self.backoff_max_seconds,
        )
        logger.warning(
            "subscription_lost",
            error=str(error),
            attempt=self._failures,
            retry_in_seconds=round(delay, 3),
            missed_expirations_possible=self._subscriptions > 0,
        )
        stop.wait(delay)
