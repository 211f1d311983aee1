"""Session reclamation: resolve the container, stop and remove it, delete the records.

A reclamation is safe to repeat. The cid record is deleted last, so a second
run for the same session either finds no mapping (nothing to tear down) or
finds a container that is already gone. Runs for the same session id are
serialized with a per-session lock; runs for different ids do not block
each other.
"""

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from reaper.errors import (
    AlreadyRemoved,
    AlreadyStopped,
    RuntimeUnavailable,
    StoreUnavailable,
)
from reaper.orchestrator.container_manager import ContainerRuntime
from reaper.retry import RetryPolicy
from reaper.schemas import ContainerState, ReclamationOutcome, ReclamationStatus
from reaper.session_store import SessionStore

logger = structlog.get_logger()


class SessionLocks:
    """One lock per session id, dropped when no thread holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(session_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[session_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[session_id]
                if users <= 1:
                    del self._locks[session_id]
                else:
                    self._locks[session_id] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Reclaimer:
    """Tear down a session's container and bookkeeping after its shadow marker expired."""

    def __init__(
        self,
        store: SessionStore,
        runtime: ContainerRuntime,
        retry: RetryPolicy | None = None,
        locks: SessionLocks | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.retry = retry or RetryPolicy()
        self.locks = locks or SessionLocks()

    def reclaim(self, session_id: str) -> ReclamationOutcome:
        """Resolve, tear down and clean up one session. Never raises for store or runtime failures."""
        with self.locks.hold(session_id):
            start = time.monotonic()
            outcome = ReclamationOutcome(session_id=session_id)
            log = logger.bind(session_id=session_id)
            log.info("reclamation_started")

            if self._resolve(outcome, log):
                self._cleanup(outcome, log)

            outcome.duration_seconds = round(time.monotonic() - start, 3)
            self._report(outcome, log)
            return outcome

    def _resolve(self, outcome: ReclamationOutcome, log) -> bool:
        """Look up and tear down the container. False means records must be kept."""
        try:
            container_id = self.retry.call(
                self.store.get_container_id,
                outcome.session_id,
                retry_on=(StoreUnavailable,),
            )
        except StoreUnavailable as e:
            # Deleting the mapping now would orphan a possibly live container.
            log.error("reclamation_resolve_failed", step="resolve", error=str(e))
            outcome.fail("resolve", e, ReclamationStatus.LEAKED)
            return False

        outcome.port = self._read_port(outcome.session_id, log)
        if container_id is None:
            log.warning("container_mapping_missing")
            outcome.container_state = ContainerState.NO_MAPPING
            return True

        outcome.container_id = container_id
        self._teardown(outcome, container_id, log.bind(container_id=container_id[:12]))
        return True

    def _read_port(self, session_id: str, log) -> int | None:
        # Reported in the outcome only; reclamation does not depend on it.
        try:
            return self.store.get_port(session_id)
        except StoreUnavailable as e:
            log.warning("port_record_read_failed", error=str(e))
            return None

    def _teardown(self, outcome: ReclamationOutcome, container_id: str, log) -> None:
        try:
            container = self.retry.call(
                self.runtime.find,
                container_id,
                retry_on=(RuntimeUnavailable,),
            )
        except RuntimeUnavailable as e:
            log.error("container_find_failed", step="find", error=str(e))
            outcome.container_state = ContainerState.FAILED
            outcome.fail("find", e, ReclamationStatus.PARTIAL)
            return

        if container is None:
            log.warning("container_not_found")
            outcome.container_state = ContainerState.NOT_FOUND
            return

        stopped = True
        try:
            self.retry.call(self.runtime.stop, container, retry_on=(RuntimeUnavailable,))
        except AlreadyStopped:
            log.info("container_already_stopped")
        except RuntimeUnavailable as e:
            stopped = False
            log.error("container_stop_failed", step="stop", error=str(e))
            outcome.fail("stop", e, ReclamationStatus.PARTIAL)

        try:
            self.retry.call(
                self.runtime.remove,
                container,
                force=not stopped,
                retry_on=(RuntimeUnavailable,),
            )
        except AlreadyRemoved:
            log.info("container_already_removed")
        except RuntimeUnavailable as e:
            log.error("container_remove_failed", step="remove", error=str(e))
            outcome.container_state = ContainerState.FAILED
            outcome.fail("remove", e, ReclamationStatus.PARTIAL)
            return

        outcome.container_state = ContainerState.REMOVED
        log.info("container_stopped_and_removed", forced=not stopped)

    def _cleanup(self, outcome: ReclamationOutcome, log) -> None:
        # The shadow marker is not touched: it already expired.
        try:
            outcome.records_deleted = self.retry.call(
                self.store.delete_session_records,
                outcome.session_id,
                retry_on=(StoreUnavailable,),
            )
        except StoreUnavailable as e:
            log.error("session_records_delete_failed", step="cleanup", error=str(e))
            outcome.fail("cleanup", e, ReclamationStatus.LEAKED)
            return
        log.info("session_records_deleted", deleted=outcome.records_deleted)

    def _report(self, outcome: ReclamationOutcome, log) -> None:
        fields = outcome.model_dump(mode="json", exclude={"session_id"})
        if outcome.status == ReclamationStatus.LEAKED:
            log.error("reclamation_complete", **fields)
        elif outcome.status == ReclamationStatus.PARTIAL:
            log.warning("reclamation_complete", **fields)
        else:
            log.info("reclamation_complete", **fields)
