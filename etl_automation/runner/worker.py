"""
Background threads: workers consuming the job queue, and the pump that
hands terminal execution records to the failure watcher.
"""

import logging
import threading
from functools import partial
from pathlib import Path
from typing import Dict, List, Set

from etl_automation.models import JobDefinition
from etl_automation.runner import db
from etl_automation.runner.alerts import AlertDispatcher
from etl_automation.runner.executor import JobExecutor
from etl_automation.runner.queue import JobQueue
from etl_automation.runner.watcher import FailureWatcher


logger = logging.getLogger("etl_automation.worker")


class WorkerPool:
    """
    Threads that dequeue requests and execute them.

    A request is acknowledged only after its attempt has been recorded. If
    execution raises unexpectedly the request stays in flight and is
    settled by ``JobQueue.recover`` on the next start.
    """

    def __init__(
        self,
        queue: JobQueue,
        executor: JobExecutor,
        definitions: Dict[str, JobDefinition],
        count: int = 1,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.executor = executor
        self.definitions = definitions
        self.count = count
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._stop.clear()
        for i in range(self.count):
            thread = threading.Thread(
                target=self._worker_main, args=(i + 1,), name=f"worker-{i + 1}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.count} worker(s)")

    def _worker_main(self, worker_index: int) -> None:
        while not self._stop.is_set():
            request = self.queue.dequeue(timeout=self.poll_interval)
            if request is None:
                continue
            self.process(request)

    def process(self, request) -> None:
        """Execute one dequeued request and acknowledge it."""
        definition = self.definitions.get(request.job_definition_ref)
        if definition is None:
            logger.error(f"No job definition '{request.job_definition_ref}' for request {request.request_id}")
            self.queue.ack(request)
            return

        try:
            self.executor.execute(request, definition)
        except Exception:
            logger.exception(f"Execution of request {request.request_id} raised; leaving it in flight")
            return
        self.queue.ack(request)

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Workers stopped")


class TerminalEventPump:
    """
    Delivers final execution records to the failure watcher at least once.

    Records are read from the database outbox and marked notified only after
    the watcher has handled them and any resulting alert dispatch finished.
    """

    def __init__(
        self,
        watcher: FailureWatcher,
        dispatcher: AlertDispatcher,
        db_path: Path = None,
        poll_interval: float = 1.0,
    ):
        self.watcher = watcher
        self.dispatcher = dispatcher
        self.db_path = db_path or db.DEFAULT_DB_PATH
        self.poll_interval = poll_interval
        self._in_progress: Set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    def pump_once(self) -> int:
        """Hand every pending terminal record to the watcher. Returns how many were handed over."""
        handed = 0
        for record in db.get_unnotified_terminal_runs(db_path=self.db_path):
            with self._lock:
                if record.record_id in self._in_progress:
                    continue
                self._in_progress.add(record.record_id)

            try:
                event = self.watcher.on_terminal(record)
            except Exception:
                with self._lock:
                    self._in_progress.discard(record.record_id)
                raise
            handed += 1
            if event is None:
                self._settle(record.record_id)
                continue

            future = self.dispatcher.submit(event)
            future.add_done_callback(partial(self._on_dispatched, record.record_id))
        return handed

    def _on_dispatched(self, record_id: str, future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"Alert dispatch for record {record_id} raised: {exc}")
        else:
            result = future.result()
            if not result.delivered:
                logger.error(f"Alert for record {record_id} not delivered: {result.reason}")
        self._settle(record_id)

    def _settle(self, record_id: str) -> None:
        db.mark_notified(record_id, self.db_path)
        with self._lock:
            self._in_progress.discard(record_id)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.pump_once()
            except Exception:
                logger.exception("Terminal event pump iteration failed")
            self._stop.wait(self.poll_interval)

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="terminal-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
