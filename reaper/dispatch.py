"""Run reclamations on a worker pool; the error boundary for every task."""

import concurrent.futures
import threading
from collections import Counter

import structlog

from reaper.reclaimer import Reclaimer
from reaper.schemas import ReclamationOutcome

logger = structlog.get_logger()


class ReclamationDispatcher:
    """Submit one reclamation task per notification and drain them on shutdown."""

    def __init__(self, reclaimer: Reclaimer, max_workers: int = 8):
        self.reclaimer = reclaimer
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="reclaim",
        )
        self._lock = threading.Lock()
        self._pending: set[concurrent.futures.Future] = set()
        self._counts: Counter[str] = Counter()
        self._accepting = True

    def submit(self, session_id: str) -> concurrent.futures.Future | None:
        """Schedule reclaim(session_id). Returns None once shutdown has begun."""
        with self._lock:
            if not self._accepting:
                logger.warning("reclamation_rejected_shutting_down", session_id=session_id)
                return None
            future = self._executor.submit(self._run, session_id)
            self._pending.add(future)
            self._counts["submitted"] += 1
        future.add_done_callback(self._done)
        return future

    def __call__(self, session_id: str) -> concurrent.futures.Future | None:
        return self.submit(session_id)

    def _run(self, session_id: str) -> ReclamationOutcome | None:
        try:
            outcome = self.reclaimer.reclaim(session_id)
        except Exception as e:
            logger.exception("reclamation_task_failed", session_id=session_id, error=str(e))
            with self._lock:
                self._counts["error"] += 1
            return None
        with self._lock:
            self._counts[outcome.status.value] += 1
        return outcome

    def _done(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {
                key: self._counts[key]
                for key in ("submitted", "reclaimed", "partial", "leaked", "error")
            }
            counts["in_flight"] = sum(1 for future in self._pending if not future.done())
        return counts

    def shutdown(self, drain_timeout: float = 30.0) -> bool:
        """Stop accepting work and wait for in-flight reclamations.

        Tasks still queued when the deadline passes are cancelled. Returns
        True if everything finished in time.
        """
        with self._lock:
            self._accepting = False
            pending = set(self._pending)
        done, not_done = concurrent.futures.wait(pending, timeout=drain_timeout)
        if not_done:
            logger.error(
                "reclamation_drain_timeout",
                finished=len(done),
                unfinished=len(not_done),
                drain_timeout_seconds=drain_timeout,
            )
        self._executor.shutdown(wait=False, cancel_futures=True)
        if not not_done:
            logger.info("reclamation_drained", finished=len(done))
        return not not_done
