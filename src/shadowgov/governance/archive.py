"""
Archival mirror publisher.

Committed poll, vote and rollback records are copied to the permanent mirror
in the background. Delivery is retried with exponential backoff behind a
circuit breaker; records that still fail are kept as dead letters and logged.
Nothing here ever raises into the caller or touches engine state.
"""

import logging

logger = logging.getLogger(__name__)
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors.recovery import CircuitBreaker, RetryPolicy, call_with_retry
from .collaborators import ArchivalMirror


@dataclass
class ArchiveRecord:
    """One record queued for the mirror."""

    record_type: str
    record_id: str
    payload: Dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None
    queued_at: float = field(default_factory=time.time)


class MirrorPublisher:
    """Fire-and-forget delivery to an ``ArchivalMirror``.

    Any mirror failure other than a non-retryable ``GovernanceError`` is
    retried under the policy, whatever exception type the mirror raises.
    """

    def __init__(
        self,
        mirror: Optional[ArchivalMirror],
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mirror = mirror
        self.retry_policy = replace(
            retry_policy or RetryPolicy(), retryable_exceptions=[Exception]
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="archive")
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="archive"
        )
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._dead_letters: List[ArchiveRecord] = []
        self.delivered = 0

    def publish(
        self, record_type: str, record_id: str, payload: Dict[str, Any]
    ) -> Optional[Future]:
        """Queue a record for delivery; returns the delivery future."""
        if self.mirror is None:
            return None
        record = ArchiveRecord(record_type, record_id, dict(payload))
        future = self._executor.submit(self._deliver, record)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, record: ArchiveRecord) -> bool:
        try:
            _, attempts = call_with_retry(
                self.retry_policy,
                self.circuit_breaker.call,
                self.mirror.publish,
                record.record_type,
                record.record_id,
                record.payload,
                operation=f"archive {record.record_type}",
                sleep=self._sleep,
            )
        except Exception as e:
            record.attempts += self.retry_policy.max_retries + 1
            record.last_error = str(e)
            with self._lock:
                self._dead_letters.append(record)
            logger.error(
                f"Archival of {record.record_type} {record.record_id} failed; "
                f"kept as dead letter: {e}"
            )
            return False

        record.attempts += attempts
        with self._lock:
            self.delivered += 1
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued deliveries; True when none are still running."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    @property
    def dead_letters(self) -> List[ArchiveRecord]:
        with self._lock:
            return list(self._dead_letters)

    def retry_dead_letters(self) -> int:
        """Requeue every dead letter; returns how many were requeued."""
        with self._lock:
            records, self._dead_letters = self._dead_letters, []
        for record in records:
            future = self._executor.submit(self._deliver, record)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._discard)
        return len(records)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
