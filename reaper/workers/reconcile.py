"""Reconciliation sweep: reclaim sessions whose expiration notice was missed.

Redis does not replay expirations that fired while the listener was
disconnected, so their port/cid records would stay forever. The sweep looks
for sessions that have records but no shadow marker. A session is only
reclaimed once it has been seen without a marker for ``grace_seconds``,
which leaves the proxy time to write the marker for a session it just
created.
"""

import threading
import time
from collections.abc import Callable

import structlog

from reaper.errors import StoreUnavailable
from reaper.session_store import SessionStore

logger = structlog.get_logger()


class Reconciler:
    def __init__(
        self,
        store: SessionStore,
        dispatch: Callable[[str], object],
        grace_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.dispatch = dispatch
        self.grace_seconds = grace_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._first_seen: dict[str, float] = {}

    def _orphans(self) -> set[str]:
        return {
            session_id
            for session_id in self.store.scan_session_ids()
            if not self.store.shadow_exists(session_id)
        }

    def sweep(self) -> list[str]:
        """Dispatch reclamation for sessions without a marker for at least grace_seconds."""
        with self._lock:
            try:
                orphans = self._orphans()
            except StoreUnavailable as e:
                logger.warning("reconcile_scan_failed", error=str(e))
                return []
            now = self.clock()
            first_seen = {sid: self._first_seen.get(sid, now) for sid in orphans}
            due = sorted(sid for sid, seen in first_seen.items() if now - seen >= self.grace_seconds)
            for session_id in due:
                del first_seen[session_id]
            self._first_seen = first_seen
        for session_id in due:
            logger.warning("reconcile_orphan_found", session_id=session_id)
            self.dispatch(session_id)
        logger.info("reconcile_sweep_complete", dispatched=len(due), pending=len(first_seen))
        return due

    def sweep_and_follow_up(self, stop: threading.Event) -> list[str]:
        """Sweep now, then once more after grace_seconds unless stop is set.

        Used after a resubscription: sessions first seen without a marker in
        this sweep only become due one grace period later, and the periodic
        sweep may be disabled.
        """
        due = self.sweep()
        if self.grace_seconds > 0:
            threading.Thread(
                target=self._follow_up,
                args=(stop,),
                name="reconcile-follow-up",
                daemon=True,
            ).start()
        return due

    def _follow_up(self, stop: threading.Event) -> None:
        if stop.wait(self.grace_seconds):
            return
        try:
            self.sweep()
        except Exception as e:
            logger.exception("reconcile_run_failed", error=str(e))

    def run(self, stop: threading.Event, interval_seconds: float) -> None:
        """Sweep every interval_seconds until stop is set."""
        logger.info("reconciler_started", interval_seconds=interval_seconds)
        while True:
            try:
                self.sweep()
            except Exception as e:
                logger.exception("reconcile_run_failed", error=str(e))
            if stop.wait(interval_seconds):
                break
        logger.info("reconciler_stopped")
