"""
Durable FIFO job queue with admission control.

A request is admitted only if the vCPUs it needs, added to the demand
already queued or running, stay within the compute ceiling. Rejected
requests are returned to the caller, never dropped by the queue.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from etl_automation.exceptions import QueueUnavailableError
from etl_automation.models import ComputePool, JobDefinition, JobRunRequest
from etl_automation.runner import db
from etl_automation.runner.capacity import ElasticCapacityProvider


logger = logging.getLogger("etl_automation.queue")


@dataclass(frozen=True)
class EnqueueResult:
    accepted: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def accept(cls) -> "EnqueueResult":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> "EnqueueResult":
        return cls(accepted=False, reason=reason)


class JobQueue:
    """
    Ordered queue of pending job run requests bound to a compute pool.

    Usage:
        queue = JobQueue(pool, capacity, [job_definition], db_path=path)
        queue.enqueue(JobRunRequest(job_definition_ref='redshift-etl-job'))
        request = queue.dequeue()
        ...
        queue.ack(request)
    """

    def __init__(
        self,
        pool: ComputePool,
        capacity: ElasticCapacityProvider,
        definitions: Iterable[JobDefinition],
        db_path: Path = None,
        poll_interval: float = 1.0,
    ):
        self.pool = pool
        self.capacity = capacity
        self.definitions: Dict[str, JobDefinition] = {d.name: d for d in definitions}
        self.db_path = db_path or db.DEFAULT_DB_PATH
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._closed = False

        self._call(db.init_database, self.db_path)

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Queue storage error: {e}") from e

    @property
    def ceiling(self) -> int:
        return min(self.pool.max_units, self.capacity.max_vcpus)

    def _admission_check(self, vcpus: int, credit: int = 0) -> Optional[str]:
        """Return a rejection reason, or None if the request fits."""
        demand = self._call(db.get_queue_demand, self.db_path)
        running = max(demand['in_flight_vcpus'] - credit, self.capacity.in_use_vcpus())
        required = demand['pending_vcpus'] + running + vcpus
        if required > self.ceiling:
            return (
                f"capacity exhausted: {required} vCPUs required, "
                f"ceiling is {self.ceiling}"
            )
        return None

    def enqueue(
        self,
        request: JobRunRequest,
        block: bool = False,
        timeout: float = None,
        replaces: JobRunRequest = None,
    ) -> EnqueueResult:
        """
        Offer a request to the queue.

        Args:
            request: the request to append
            block: wait for capacity instead of failing fast
            timeout: maximum seconds to wait when blocking (None waits forever)
            replaces: an in-flight request this one succeeds (a retry); its
                vCPUs are not counted twice

        Returns:
            EnqueueResult, accepted or rejected with a reason

        Raises:
            QueueUnavailableError: if the queue storage cannot be reached
        """
        definition = self.definitions.get(request.job_definition_ref)
        if definition is None:
            return EnqueueResult.reject(f"unknown job definition '{request.job_definition_ref}'")
        vcpus = definition.resource_request.vcpus
        credit = 0
        if replaces is not None and replaces.job_definition_ref in self.definitions:
            credit = self.definitions[replaces.job_definition_ref].resource_request.vcpus

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return EnqueueResult.reject("queue is closed")

                reason = self._admission_check(vcpus, credit)
                if reason is None:
                    self._call(db.insert_queue_item, request, vcpus, self.db_path)
                    self._cond.notify_all()
                    logger.debug(f"Accepted request {request.request_id} (attempt {request.attempt_count})")
                    return EnqueueResult.accept()

                remaining = None if deadline is None else deadline - time.monotonic()
                if not block or (remaining is not None and remaining <= 0):
                    logger.warning(f"Rejected request {request.request_id}: {reason}")
                    return EnqueueResult.reject(reason)

                wait = self.poll_interval if remaining is None else min(self.poll_interval, remaining)
                self._cond.wait(wait)

    def dequeue(self, timeout: float = None) -> Optional[JobRunRequest]:
        """
        Claim the oldest pending request, blocking until one is available.

        Returns:
            The request, or None on timeout or after close()
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return None

                request = self._call(db.claim_next_queue_item, self.db_path)
                if request is not None:
                    return request

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                wait = self.poll_interval if remaining is None else min(self.poll_interval, remaining)
                self._cond.wait(wait)

    def ack(self, request: JobRunRequest) -> None:
        """Remove a request once its attempt reached a terminal state."""
        self._call(db.delete_queue_item, request.request_id, self.db_path)
        with self._cond:
            self._cond.notify_all()

    def depth(self) -> Dict[str, int]:
        return self._call(db.get_queue_demand, self.db_path)

    def recover(self) -> int:
        """
        Settle requests left in flight by a previous process.

        A request whose attempt was already recorded is removed; any other
        goes back to pending. A recorded attempt that expected a retry which
        never reached the queue is promoted to final so it is still
        reported. Returns the number returned to pending.
        """
        requeued = 0
        for request in self._call(db.get_in_flight_items, self.db_path):
            record = self._call(db.get_run_for_request, request.request_id, self.db_path)
            if record is None:
                self._call(db.release_queue_item, request.request_id, self.db_path)
                requeued += 1
                continue

            if not record.final and not self._call(
                db.has_queued_attempt, request.origin_id, request.request_id, self.db_path
            ):
                logger.warning(f"Retry of request {request.request_id} was lost; marking attempt final")
                self._call(db.mark_final, record.record_id, self.db_path)
            self._call(db.delete_queue_item, request.request_id, self.db_path)
        if requeued:
            logger.warning(f"Returned {requeued} interrupted request(s) to the queue")
        return requeued

    def close(self) -> None:
        """Wake blocked callers; further dequeues return None."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
