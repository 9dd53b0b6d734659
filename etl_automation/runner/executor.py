"""
Job executor: runs one attempt of a job run request and records it.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from etl_automation.exceptions import (
    CapacityUnavailableError, QueueUnavailableError, RegistryError, SecretNotFoundError,
)
from etl_automation.models import (
    JobDefinition, JobExecutionRecord, JobRunRequest, TerminalState, new_id, utc_now,
)
from etl_automation.runner import db
from etl_automation.runner.artifact import ArtifactRunner, RunOutcome
from etl_automation.runner.capacity import ElasticCapacityProvider
from etl_automation.secrets import CredentialBroker, resolve_environment


logger = logging.getLogger("etl_automation.executor")


class JobExecutor:
    """
    Executes attempts with scoped capacity, output capture and recording.

    A failed attempt below ``max_attempts`` is resubmitted to the queue as
    the next attempt of the same chain; otherwise its record is final and
    becomes a terminal event for the failure watcher.

    Usage:
        executor = JobExecutor(queue, registry, capacity, runner, credentials, log_dir)
        record = executor.execute(request, job_definition)
    """

    def __init__(
        self,
        queue,
        registry,
        capacity: ElasticCapacityProvider,
        runner: ArtifactRunner,
        credentials: CredentialBroker,
        log_dir: Path,
        db_path: Path = None,
        capacity_timeout: float = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the executor.

        Args:
            queue: JobQueue used to resubmit retries
            registry: ImageRegistry the job image is pulled from
            capacity: provider leasing vCPUs for each attempt
            runner: runner invoking the job artifact
            credentials: broker resolving secret environment values
            log_dir: directory receiving one log file per attempt
            db_path: Path to the database
            capacity_timeout: seconds to wait for capacity before failing the attempt
        """
        self.queue = queue
        self.registry = registry
        self.capacity = capacity
        self.runner = runner
        self.credentials = credentials
        self.log_dir = Path(log_dir)
        self.db_path = db_path or db.DEFAULT_DB_PATH
        self.capacity_timeout = capacity_timeout
        self.clock = clock
        db.init_database(self.db_path)

    def execute(self, request: JobRunRequest, definition: JobDefinition) -> JobExecutionRecord:
        """
        Run one attempt and write its execution record.

        Args:
            request: the dequeued request
            definition: the job definition it refers to

        Returns:
            JobExecutionRecord of the attempt
        """
        attempt_number = request.attempt_count + 1
        record_id = new_id()
        log_path = self.log_dir / f"{record_id}.log"

        logger.info(
            f"Executing job '{definition.name}' (attempt {attempt_number}/{definition.max_attempts})"
        )

        started_at = self.clock()
        outcome = self._attempt(record_id, definition, log_path)
        ended_at = self.clock()

        if outcome.success:
            state = TerminalState.SUCCEEDED
        elif outcome.timed_out:
            state = TerminalState.TIMED_OUT
        else:
            state = TerminalState.FAILED

        retrying = state.is_failure and attempt_number < definition.max_attempts

        record = JobExecutionRecord(
            request_ref=request.request_id,
            origin_ref=request.origin_id,
            job_name=definition.name,
            attempt_number=attempt_number,
            started_at=started_at,
            ended_at=ended_at,
            terminal_state=state,
            log_ref=str(log_path),
            exit_code=outcome.exit_code,
            error_message=outcome.error_message,
            final=not retrying,
            record_id=record_id,
        )
        db.insert_run_record(record, self.db_path)

        if state is TerminalState.SUCCEEDED:
            logger.info(
                f"Job '{definition.name}' completed successfully "
                f"in {record.duration_seconds:.2f}s"
            )
        else:
            logger.warning(
                f"Job '{definition.name}' {state.value.lower()} (attempt {attempt_number}): "
                f"{outcome.error_message}"
            )

        if retrying and not self._resubmit(request):
            # The chain cannot continue, so this attempt becomes the last one.
            db.mark_final(record.record_id, self.db_path)
            record.final = True

        return record

    def _attempt(self, record_id: str, definition: JobDefinition, log_path: Path) -> RunOutcome:
        try:
            env = resolve_environment(definition.environment, self.credentials)
            with self.capacity.lease(definition.resource_request.vcpus, timeout=self.capacity_timeout):
                image = self.registry.pull(definition.image_ref)
                return self.runner.run(
                    run_id=record_id,
                    image=image,
                    definition=definition,
                    env=env,
                    log_path=log_path,
                    timeout=definition.timeout_seconds,
                )
        except (CapacityUnavailableError, RegistryError, SecretNotFoundError) as e:
            msg = f"{type(e).__name__}: {e}"
            self._write_failure_log(log_path, f"Attempt did not start. {msg}")
            return RunOutcome(exit_code=None, error_message=msg)
        except Exception as e:
            logger.exception(f"Attempt {record_id} of '{definition.name}' raised unexpectedly")
            msg = f"{type(e).__name__}: {e}"
            self._write_failure_log(log_path, f"Attempt failed with an unexpected error. {msg}")
            return RunOutcome(exit_code=None, error_message=msg)

    def _write_failure_log(self, log_path: Path, text: str) -> None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(f"{text}\n", encoding='utf-8')
        except OSError as e:
            logger.error(f"Could not write attempt log {log_path}: {e}")

    def _resubmit(self, request: JobRunRequest) -> bool:
        retry = request.next_attempt()
        try:
            result = self.queue.enqueue(retry, replaces=request)
        except QueueUnavailableError as e:
            logger.error(f"Could not resubmit request {request.request_id}: {e}")
            return False

        if not result.accepted:
            logger.error(f"Retry of request {request.request_id} rejected: {result.reason}")
            return False

        logger.info(f"Resubmitted as attempt {retry.attempt_count + 1} (request {retry.request_id})")
        return True
