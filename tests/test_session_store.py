import threading
from unittest.mock import MagicMock

import pytest
import redis
from structlog.testing import capture_logs

from reaper.config import Settings
from reaper.errors import StoreUnavailable, SubscriptionLost
from reaper.listener import ExpirationListener
from reaper.session_store import SessionStore, build_subscriber


def test_get_container_id_and_port(store):
    assert store.get_container_id("80c7") == "f25d"
    assert store.get_port("80c7") == 32887
    assert store.get_container_id("missing") is None
    assert store.get_port("missing") is None


def test_invalid_port_record_reads_as_missing(store, fake_redis):
    fake_redis.set("s2c:80c7:port", "not-a-port")

    assert store.get_port("80c7") is None


def test_delete_session_records_is_delete_if_present(store, fake_redis):
    fake_redis.set("s2c:80c7:shadow", "")

    assert store.delete_session_records("80c7") == 2
    assert store.delete_session_records("80c7") == 0
    assert fake_redis.get("s2c:80c7:shadow") == ""


def test_shadow_exists(store, fake_redis):
    assert store.shadow_exists("80c7") is False
    fake_redis.set("s2c:80c7:shadow", "")
    assert store.shadow_exists("80c7") is True


def test_scan_session_ids(store, fake_redis):
    fake_redis.set("s2c:b1:port", "1000")
    fake_redis.set("s2c:x:y:cid", "bad")
    fake_redis.set("other:c1:cid", "c")
    fake_redis.set("s2c:d1:shadow", "")

    assert store.scan_session_ids() == {"80c7", "b1"}


@pytest.mark.parametrize(
    "error",
    [
        redis.exceptions.ConnectionError("down"),
        redis.exceptions.TimeoutError("slow"),
        redis.exceptions.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value"),
    ],
)
def test_redis_errors_become_store_unavailable(error):
    client = MagicMock()
    client.get.side_effect = error
    client.delete.side_effect = error
    store = SessionStore(client)

    with pytest.raises(StoreUnavailable):
        store.get_container_id("80c7")
    with pytest.raises(StoreUnavailable):
        store.delete_session_records("80c7")


def test_ensure_expired_events_merges_flags(store, fake_redis):
    fake_redis.config["notify-keyspace-events"] = "Kg"

    store.ensure_expired_events()

    assert fake_redis.config["notify-keyspace-events"] == "KgEx"


def test_ensure_expired_events_leaves_sufficient_flags(store, fake_redis):
    fake_redis.config["notify-keyspace-events"] = "EA"
    fake_redis.config_set = MagicMock()

    store.ensure_expired_events()

    fake_redis.config_set.assert_not_called()


def test_ensure_expired_events_tolerates_refused_config():
    client = MagicMock()
    client.config_get.side_effect = redis.exceptions.ResponseError("unknown command 'CONFIG'")

    SessionStore(client).ensure_expired_events()


def _subscriber(messages):
    subscriber = MagicMock()
    pubsub = subscriber.pubsub.return_value
    pubsub.get_message.side_effect = messages
    return subscriber, pubsub


def test_expirations_yields_messages_until_stopped(fake_redis):
    stop = threading.Event()
    subscriber, pubsub = _subscriber(
        [
            None,
            {"type": "message", "channel": "__keyevent@0__:expired", "data": "s2c:80c7:shadow"},
            {"type": "pong", "channel": None, "data": None},
            {"type": "message", "channel": b"__keyevent@0__:expired", "data": b"s2c:9:port"},
        ]
    )
    subscribed = MagicMock()
    store = SessionStore(fake_redis, subscriber=subscriber)

    received = []
    for channel, payload in store.expirations(stop, poll_seconds=0.01, on_subscribed=subscribed):
        assert channel == "__keyevent@0__:expired"
        received.append(payload)
        if len(received) == 2:
            stop.set()

    assert received == ["s2c:80c7:shadow", b"s2c:9:port"]
    pubsub.subscribe.assert_called_once_with("__keyevent@0__:expired")
    subscribed.assert_called_once_with()
    pubsub.close.assert_called_once_with()


def test_expirations_connection_loss_raises_subscription_lost(fake_redis):
    subscriber, pubsub = _subscriber(redis.exceptions.ConnectionError("reset"))
    store = SessionStore(fake_redis, subscriber=subscriber)

    with pytest.raises(SubscriptionLost):
        list(store.expirations(threading.Event(), poll_seconds=0.01))
    pubsub.close.assert_called_once_with()


def test_expirations_subscribe_failure_skips_on_subscribed(fake_redis):
    subscriber, pubsub = _subscriber([])
    pubsub.subscribe.side_effect = redis.exceptions.ConnectionError("refused")
    subscribed = MagicMock()
    store = SessionStore(fake_redis, subscriber=subscriber)

    with pytest.raises(SubscriptionLost):
        list(store.expirations(threading.Event(), on_subscribed=subscribed))
    subscribed.assert_not_called()


def test_expirations_configures_keyspace_events(fake_redis):
    stop = threading.Event()
    stop.set()
    subscriber, _ = _subscriber([])
    store = SessionStore(fake_redis, subscriber=subscriber, configure_keyspace_events=True)

    assert list(store.expirations(stop)) == []
    assert fake_redis.config["notify-keyspace-events"] == "Ex"


def test_subscriber_leaves_replies_undecoded(monkeypatch):
    from_url = MagicMock()
    monkeypatch.setattr(redis, "from_url", from_url)

    build_subscriber(Settings(_env_file=None))

    assert from_url.call_args.kwargs["decode_responses"] is False


def test_undecodable_expired_key_is_skipped_by_listener(fake_redis):
    stop = threading.Event()
    subscriber, _ = _subscriber(
        [
            {"type": "message", "channel": b"__keyevent@0__:expired", "data": b"s2c:\xff\xfe:shadow"},
            {"type": "message", "channel": b"__keyevent@0__:expired", "data": b"s2c:80c7:shadow"},
        ]
    )
    dispatched = []

    def dispatch(session_id):
        dispatched.append(session_id)
        stop.set()

    listener = ExpirationListener(SessionStore(fake_redis, subscriber=subscriber), dispatch, key_prefix="s2c")
    with capture_logs() as logs:
        listener.run(stop)

    assert dispatched == ["80c7"]
    malformed = [entry for entry in logs if entry["event"] == "notification_malformed"]
    assert [entry["reason"] for entry in malformed] == ["not utf-8"]
