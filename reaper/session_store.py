"""Redis-backed session records and the key-expiration feed."""

import threading
from collections.abc import Callable, Iterator

import redis
import structlog
from redis.backoff import NoBackoff
from redis.retry import Retry

from reaper import keys
from reaper.config import Settings
from reaper.errors import MalformedNotification, StoreUnavailable, SubscriptionLost

logger = structlog.get_logger()

# Any failed command. ConnectionError, TimeoutError and server replies such as
# WRONGTYPE all derive from RedisError.
_UNAVAILABLE = (redis.exceptions.RedisError,)


def build_redis(config: Settings) -> redis.Redis:
    """Pooled command client; safe to share between reclamation threads."""
    return redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_timeout=config.redis_socket_timeout_seconds,
        socket_connect_timeout=config.redis_socket_timeout_seconds,
    )


def build_subscriber(config: Settings) -> redis.Redis:
    """Client for the expiration subscription.

    No socket read timeout, since the connection idles between events, and
    no internal retry, so a dropped connection reaches the listener. Replies
    are left as bytes: expired keys are binary-safe and are decoded by
    `keys.shadow_session_id`, which treats undecodable ones as malformed.
    """
    return redis.from_url(
        config.redis_url,
        decode_responses=False,
        socket_connect_timeout=config.redis_socket_timeout_seconds,
        health_check_interval=30,
        retry=Retry(NoBackoff(), 0),
    )


class SessionStore:
    """Session-to-container records written by the proxy, keyed by session id."""

    def __init__(
        self,
        redis_client: redis.Redis,
        subscriber: redis.Redis | None = None,
        key_prefix: str = "s2c",
        expired_channel: str = "__keyevent@0__:expired",
        configure_keyspace_events: bool = False,
    ):
        self.redis = redis_client
        self.subscriber = subscriber
        self.key_prefix = key_prefix
        self.expired_channel = expired_channel
        self.configure_keyspace_events = configure_keyspace_events

    def _key(self, session_id: str, kind: str) -> str:
        return keys.session_key(self.key_prefix, session_id, kind)

    def get_container_id(self, session_id: str) -> str | None:
        """Container id for session, or None if the mapping is gone."""
        try:
            return self.redis.get(self._key(session_id, keys.CID))
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e

    def get_port(self, session_id: str) -> int | None:
        try:
            raw = self.redis.get(self._key(session_id, keys.PORT))
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("port_record_invalid", session_id=session_id, value=raw)
            return None

    def shadow_exists(self, session_id: str) -> bool:
        try:
            return bool(self.redis.exists(self._key(session_id, keys.SHADOW)))
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e

    def delete_session_records(self, session_id: str) -> int:
        """Delete port and cid records. Absent keys are not an error. Returns count deleted."""
        try:
            return self.redis.delete(
                self._key(session_id, keys.PORT),
                self._key(session_id, keys.CID),
            )
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e

    def scan_session_ids(self) -> set[str]:
        """Session ids that still have a port or cid record."""
        found: set[str] = set()
        try:
            for kind in (keys.PORT, keys.CID):
                for key in self.redis.scan_iter(match=self._key("*", kind), count=500):
                    try:
                        parsed = keys.parse_key(key)
                    except MalformedNotification:
                        continue
                    if parsed.namespace == self.key_prefix and parsed.kind == kind:
                        found.add(parsed.session_id)
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e
        return found

    def ensure_expired_events(self) -> None:
        """Make sure Redis publishes keyevent expirations (flags E and x).

        Existing flags are kept. Managed Redis often refuses CONFIG; that is
        logged and the subscription proceeds on whatever is configured.
        """
        try:
            current = self.redis.config_get("notify-keyspace-events").get("notify-keyspace-events", "")
            missing = "" if "E" in current else "E"
            if "x" not in current and "A" not in current:
                missing += "x"
            if missing:
                self.redis.config_set("notify-keyspace-events", current + missing)
                logger.info("keyspace_events_enabled", flags=current + missing)
        except redis.exceptions.ResponseError as e:
            logger.warning("keyspace_events_config_refused", error=str(e))
        except _UNAVAILABLE as e:
            raise StoreUnavailable(str(e)) from e

    def expirations(
        self,
        stop: threading.Event,
        poll_seconds: float = 1.0,
        on_subscribed: Callable[[], None] | None = None,
    ) -> Iterator[tuple[str, bytes | str]]:
        """Yield (channel, expired_key) pairs until stop is set.

        The key is passed on as the subscriber client returned it (bytes unless
        the client decodes responses).

        Each call opens a fresh subscription, so the generator can simply be
        restarted after SubscriptionLost. Expirations that happen while no
        subscription is open are not replayed by Redis.
        """
        if self.subscriber is None:
            raise SubscriptionLost("no subscriber client configured")
        pubsub = self.subscriber.pubsub(ignore_subscribe_messages=True)
        try:
            if self.configure_keyspace_events:
                self.ensure_expired_events()
            pubsub.subscribe(self.expired_channel)
            if on_subscribed is not None:
                on_subscribed()
            while not stop.is_set():
                message = pubsub.get_message(timeout=poll_seconds)
                if message is None or message.get("type") != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode("utf-8", "replace")
                yield channel, message["data"]
        except (*_UNAVAILABLE, StoreUnavailable) as e:
            raise SubscriptionLost(str(e)) from e
        finally:
            try:
                pubsub.close()
            except _UNAVAILABLE:
                pass
