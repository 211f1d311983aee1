"""Wire the store, runtime, reclaimer, listener and reconciler into one service."""

import functools
import threading

import docker
import redis
import structlog

from reaper.config import Settings
from reaper.dispatch import ReclamationDispatcher
from reaper.errors import SubscriptionFailed
from reaper.listener import ExpirationListener
from reaper.orchestrator.container_manager import ContainerRuntime, build_docker
from reaper.reclaimer import Reclaimer
from reaper.retry import RetryPolicy
from reaper.session_store import SessionStore, build_redis, build_subscriber
from reaper.workers.reconcile import Reconciler

logger = structlog.get_logger()


class ReaperService:
    """Own the client handles and threads of a running reaper.

    Clients not passed in are built on first use: the command Redis client
    and the Docker client are shared by reclamation threads, the subscriber
    Redis client belongs to the listener alone.
    """

    def __init__(
        self,
        config: Settings,
        redis_client: redis.Redis | None = None,
        subscriber: redis.Redis | None = None,
        docker_client: docker.DockerClient | None = None,
    ):
        self.config = config
        self.redis_client = redis_client
        self.subscriber = subscriber
        self.docker_client = docker_client
        self.dispatcher: ReclamationDispatcher | None = None
        self.listener: ExpirationListener | None = None
        self.reconciler: Reconciler | None = None
        self.exit_code: int | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._runner: threading.Thread | None = None

    def _build(self) -> None:
        config = self.config
        if self.redis_client is None:
            self.redis_client = build_redis(config)
        if self.subscriber is None:
            self.subscriber = build_subscriber(config)
        if self.docker_client is None:
            self.docker_client = build_docker(config)

        store = SessionStore(
            self.redis_client,
            subscriber=self.subscriber,
            key_prefix=config.key_prefix,
            expired_channel=config.expired_channel,
            configure_keyspace_events=config.configure_keyspace_events,
        )
        reclaimer = Reclaimer(
            store,
            ContainerRuntime(self.docker_client, config.container_stop_timeout_seconds),
            retry=RetryPolicy(
                attempts=config.retry_attempts,
                base_delay=config.retry_base_delay_seconds,
                max_delay=config.retry_max_delay_seconds,
            ),
        )
        self.dispatcher = ReclamationDispatcher(reclaimer, max_workers=config.reclaim_workers)
        self.reconciler = Reconciler(
            store,
            self.dispatcher.submit,
            grace_seconds=config.reconcile_grace_seconds,
        )
        self.listener = ExpirationListener(
            store,
            self.dispatcher.submit,
            key_prefix=config.key_prefix,
            max_startup_attempts=config.subscribe_max_attempts,
            backoff_base_seconds=config.subscribe_backoff_base_seconds,
            backoff_max_seconds=config.subscribe_backoff_max_seconds,
            poll_seconds=config.subscribe_poll_seconds,
            on_resubscribe=functools.partial(self.reconciler.sweep_and_follow_up, self._stop),
        )

    @property
    def ready(self) -> bool:
        return self.listener is not None and self.listener.subscribed

    @property
    def failed(self) -> bool:
        """True once run() ended on an error, or its background thread died before a stop request."""
        if self.exit_code == 1:
            return True
        runner = self._runner
        return runner is not None and not runner.is_alive() and not self._stop.is_set()

    def stats(self) -> dict[str, int | bool]:
        counts: dict[str, int | bool] = self.dispatcher.stats() if self.dispatcher else {}
        counts["subscribed"] = self.ready
        return counts

    def run(self) -> int:
        """Listen until stopped. Returns the process exit code."""
        try:
            self._build()
        except docker.errors.DockerException as e:
            logger.error("docker_unavailable_at_startup", error=str(e))
            self.exit_code = 1
            return self.exit_code

        logger.info(
            "reaper_started",
            channel=self.config.expired_channel,
            key_prefix=self.config.key_prefix,
            workers=self.config.reclaim_workers,
        )
        if self.config.reconcile_interval_seconds > 0:
            thread = threading.Thread(
                target=self.reconciler.run,
                args=(self._stop, self.config.reconcile_interval_seconds),
                name="reconcile",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        self.exit_code = 0
        try:
            self.listener.run(self._stop)
        except SubscriptionFailed as e:
            logger.error("reaper_startup_failed", error=str(e))
            self.exit_code = 1
        except Exception as e:
            logger.exception("reaper_crashed", error=str(e))
            self.exit_code = 1
        finally:
            self._shutdown()
        return self.exit_code

    def start(self) -> None:
        """Run in a background thread (used by the probe API)."""
        thread = threading.Thread(target=self.run, name="reaper", daemon=True)
        self._runner = thread
        thread.start()
        self._threads.append(thread)

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self) -> None:
        """Request stop and wait for the drain to finish."""
        self.request_stop()
        for thread in self._threads:
            thread.join(timeout=self.config.drain_timeout_seconds + self.config.subscribe_poll_seconds + 5)

    def _shutdown(self) -> None:
        self._stop.set()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=self.config.drain_timeout_seconds)
        drained = self.dispatcher.shutdown(self.config.drain_timeout_seconds)
        for client in (self.subscriber, self.redis_client, self.docker_client):
            try:
                client.close()
            except Exception as e:
                logger.warning("client_close_failed", client=type(client).__name__, error=str(e))
        logger.info("reaper_stopped", drained=drained, exit_code=self.exit_code)
