import fnmatch
import threading
from unittest.mock import MagicMock

import docker
import pytest

from reaper.orchestrator.container_manager import ContainerRuntime
from reaper.reclaimer import Reclaimer
from reaper.retry import RetryPolicy
from reaper.session_store import SessionStore


class InMemoryRedis:
    """The subset of redis.Redis (decode_responses=True) the store uses."""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})
        self.config = {"notify-keyspace-events": ""}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self.data.get(key)

    def set(self, key, value):
        with self._lock:
            self.data[key] = str(value)

    def exists(self, *keys):
        with self._lock:
            return sum(1 for key in keys if key in self.data)

    def delete(self, *keys):
        with self._lock:
            return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def scan_iter(self, match=None, count=None):
        with self._lock:
            found = list(self.data)
        return iter(key for key in found if match is None or fnmatch.fnmatchcase(key, match))

    def config_get(self, name):
        return {name: self.config.get(name, "")}

    def config_set(self, name, value):
        self.config[name] = value
        return True

    def close(self):
        pass


class FakeDocker:
    """Docker client double keeping a set of live containers by id."""

    def __init__(self, *container_ids: str):
        self.containers = MagicMock()
        self.live: dict[str, MagicMock] = {}
        for container_id in container_ids:
            self.add(container_id)
        self.containers.get.side_effect = self._get

    def add(self, container_id: str) -> MagicMock:
        container = MagicMock(id=container_id)
        container.remove.side_effect = lambda force=False, _cid=container_id: self._remove(_cid)
        self.live[container_id] = container
        return container

    def close(self):
        pass

    def _get(self, container_id):
        try:
            return self.live[container_id]
        except KeyError:
            raise docker.errors.NotFound(f"No such container: {container_id}") from None

    def _remove(self, container_id):
        if self.live.pop(container_id, None) is None:
            raise docker.errors.NotFound(f"No such container: {container_id}")


@pytest.fixture
def redis_data():
    return {
        "s2c:80c7:port": "32887",
        "s2c:80c7:cid": "f25d",
    }


@pytest.fixture
def fake_redis(redis_data):
    return InMemoryRedis(redis_data)


@pytest.fixture
def store(fake_redis):
    return SessionStore(fake_redis, key_prefix="s2c")


@pytest.fixture
def fake_docker():
    return FakeDocker("f25d")


@pytest.fixture
def runtime(fake_docker):
    return ContainerRuntime(fake_docker, stop_timeout_seconds=1)


@pytest.fixture
def no_wait_retry():
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def reclaimer(store, runtime, no_wait_retry):
    return Reclaimer(store, runtime, retry=no_wait_retry)
