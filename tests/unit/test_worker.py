"""End-to-end tests: scheduled fire through execution to failure alerts"""
import time

import pytest

from helpers import JOB_NAME, RecordingEndpoint, utc
from etl_automation.models import ComputePool, JobRunRequest, TerminalState
from etl_automation.runner import db
from etl_automation.runner.alerts import AlertDispatcher, NotificationTopic
from etl_automation.runner.artifact import LocalProcessRunner
from etl_automation.runner.capacity import ManagedComputeEnvironment
from etl_automation.runner.executor import JobExecutor
from etl_automation.runner.queue import JobQueue
from etl_automation.runner.scheduler import Schedule, Scheduler
from etl_automation.runner.watcher import FailureWatcher
from etl_automation.runner.worker import TerminalEventPump, WorkerPool


class Pipeline:
    """Scheduler, queue, worker and pump wired around one job definition."""

    def __init__(self, tmp_path, db_path, registry, broker, definition, endpoints):
        pool = ComputePool(max_units=8)
        capacity = ManagedComputeEnvironment(pool)
        self.db_path = db_path
        self.queue = JobQueue(pool, capacity, [definition], db_path=db_path, poll_interval=0.01)
        executor = JobExecutor(
            self.queue, registry, capacity, LocalProcessRunner(), broker,
            log_dir=tmp_path / 'logs', db_path=db_path,
        )
        self.workers = WorkerPool(self.queue, executor, {definition.name: definition})
        self.scheduler = Scheduler(Schedule.parse('0 4 * * ? *'), definition, self.queue)
        self.dispatcher = AlertDispatcher(NotificationTopic(endpoints))
        self.pump = TerminalEventPump(FailureWatcher(), self.dispatcher, db_path=db_path)

    def run_pending(self):
        while True:
            request = self.queue.dequeue(timeout=0)
            if request is None:
                return
            self.workers.process(request)

    def deliver(self):
        handed = self.pump.pump_once()
        self.dispatcher.shutdown(wait=True)
        return handed


@pytest.fixture
def build(tmp_path, db_path, registry, broker):
    def _build(definition, endpoints=None):
        return Pipeline(tmp_path, db_path, registry, broker, definition, endpoints or [])
    return _build


class TestScheduledRuns:
    """Test the full path from a fire to a terminal event"""

    def test_successful_run_sends_no_alert(self, build, make_definition, db_path):
        endpoint = RecordingEndpoint()
        p = build(make_definition(), [endpoint])

        assert p.scheduler.on_fire(utc(2024, 1, 1, 4)) is not None
        p.run_pending()

        runs = db.get_recent_runs(db_path=db_path)
        assert len(runs) == 1
        assert runs[0].terminal_state == TerminalState.SUCCEEDED
        assert p.deliver() == 1
        assert endpoint.messages == []
        assert db.get_unnotified_terminal_runs(db_path=db_path) == []
        assert p.queue.depth()['in_flight'] == 0

    def test_failed_run_sends_one_alert(self, build, make_definition, db_path):
        endpoint = RecordingEndpoint()
        p = build(make_definition("import sys; sys.exit(2)"), [endpoint])

        p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.run_pending()
        p.deliver()

        assert len(endpoint.messages) == 1
        record = db.get_recent_runs(db_path=db_path)[0]
        assert record.log_ref in endpoint.messages[0][1]
        assert db.get_unnotified_terminal_runs(db_path=db_path) == []

    def test_alert_sent_once(self, build, make_definition):
        endpoint = RecordingEndpoint()
        p = build(make_definition("import sys; sys.exit(2)"), [endpoint])

        p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.run_pending()
        p.deliver()
        assert p.pump.pump_once() == 0
        assert len(endpoint.messages) == 1

    def test_retry_chain_alerts_only_final_attempt(self, build, make_definition, db_path):
        endpoint = RecordingEndpoint()
        p = build(make_definition("import sys; sys.exit(1)", max_attempts=3), [endpoint])

        request = p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.run_pending()
        p.deliver()

        chain = db.get_chain_runs(request.origin_id, db_path=db_path)
        assert [r.attempt_number for r in chain] == [1, 2, 3]
        assert all(r.terminal_state == TerminalState.FAILED for r in chain)
        assert len(endpoint.messages) == 1

    def test_undelivered_alert_still_settles(self, build, make_definition, db_path):
        """A dispatch failure is logged, not retried"""
        p = build(make_definition("import sys; sys.exit(2)"), [RecordingEndpoint(fail=True)])
        p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.run_pending()
        p.deliver()
        assert db.get_unnotified_terminal_runs(db_path=db_path) == []

    def test_unexpected_error_fails_attempt_and_alerts(self, build, make_definition, registry, db_path):
        """A corrupt image manifest still produces a record, an alert and an ack"""
        registry._manifest_path(JOB_NAME, 'latest').write_text('{not json', encoding='utf-8')
        endpoint = RecordingEndpoint()
        p = build(make_definition(), [endpoint])

        p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.run_pending()
        p.deliver()

        record = db.get_recent_runs(db_path=db_path)[0]
        assert record.terminal_state == TerminalState.FAILED
        assert record.final
        assert 'JSONDecodeError' in record.error_message
        assert len(endpoint.messages) == 1
        assert p.queue.depth()['in_flight'] == 0
        assert p.queue.depth()['in_flight_vcpus'] == 0

    def test_unknown_definition_is_acknowledged(self, build, make_definition, db_path):
        p = build(make_definition())
        p.workers.process(JobRunRequest('retired-job'))
        assert db.get_recent_runs(db_path=db_path) == []

    def test_workers_drain_queue_in_background(self, build, make_definition, db_path):
        p = build(make_definition())
        p.workers.poll_interval = 0.01
        p.scheduler.on_fire(utc(2024, 1, 1, 4))
        p.workers.start()
        try:
            for _ in range(500):
                if db.get_recent_runs(db_path=db_path):
                    break
                time.sleep(0.01)
        finally:
            p.workers.stop()
        assert len(db.get_recent_runs(db_path=db_path)) == 1
