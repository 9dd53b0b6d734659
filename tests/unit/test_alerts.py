"""Unit Tests for the failure watcher and alert delivery"""
from unittest.mock import MagicMock

import pytest

from helpers import RecordingEndpoint, utc
from etl_automation.models import FailureEvent, JobExecutionRecord, TerminalState
from etl_automation.runner import alerts
from etl_automation.runner.alerts import (
    AlertDispatcher, EmailEndpoint, NotificationTopic, SlackWebhookEndpoint,
    render_failure_message, render_log_url,
)
from etl_automation.runner.watcher import FailureWatcher


def make_record(state, record_id='rec-1'):
    return JobExecutionRecord(
        request_ref='req-1',
        origin_ref='req-1',
        job_name='etl-job',
        attempt_number=1,
        started_at=utc(2024, 3, 1, 4, 0),
        ended_at=utc(2024, 3, 1, 4, 7, 12),
        terminal_state=state,
        log_ref='/var/log/etl/rec-1.log',
        record_id=record_id,
    )


def make_event(**overrides):
    fields = dict(
        execution_record_ref='rec-1',
        log_ref='/var/log/etl/rec-1.log',
        occurred_at=utc(2024, 3, 1, 4, 7, 12),
        job_name='etl-job',
    )
    fields.update(overrides)
    return FailureEvent(**fields)


class TestFailureWatcher:
    """Test filtering of terminal records"""

    def test_success_produces_no_event(self):
        listener = MagicMock()
        watcher = FailureWatcher()
        watcher.subscribe(listener)
        assert watcher.on_terminal(make_record(TerminalState.SUCCEEDED)) is None
        listener.assert_not_called()

    def test_failure_produces_event(self):
        event = FailureWatcher().on_terminal(make_record(TerminalState.FAILED))
        assert event.execution_record_ref == 'rec-1'
        assert event.log_ref == '/var/log/etl/rec-1.log'
        assert event.occurred_at == utc(2024, 3, 1, 4, 7, 12)
        assert event.terminal_state == TerminalState.FAILED

    def test_timeout_produces_event(self):
        event = FailureWatcher().on_terminal(make_record(TerminalState.TIMED_OUT))
        assert event is not None
        assert event.terminal_state == TerminalState.TIMED_OUT

    def test_listeners_notified(self):
        listener = MagicMock()
        watcher = FailureWatcher()
        watcher.subscribe(listener)
        event = watcher.on_terminal(make_record(TerminalState.FAILED))
        listener.assert_called_once_with(event)


class TestRendering:
    """Test the fixed-format alert text"""

    def test_message_text(self):
        message = render_failure_message(make_event())
        assert message == (
            "Your ETL Batch job has failed at 2024-03-01T04:07:12Z. "
            "Please check the logs at file:///var/log/etl/rec-1.log "
            "(ensure you are logged into the correct account before clicking the link)."
        )

    def test_log_url_template(self):
        url = render_log_url('/var/log/etl/rec-1.log', 'https://logs.example.com/view/{log_name}')
        assert url == 'https://logs.example.com/view/rec-1'


class TestAlertDispatcher:
    """Test publishing to notification endpoints"""

    def test_delivers_to_every_endpoint(self):
        slack, email = RecordingEndpoint('slack'), RecordingEndpoint('email')
        result = AlertDispatcher(NotificationTopic([slack, email])).dispatch(make_event())
        assert result.delivered
        assert len(slack.messages) == 1
        assert len(email.messages) == 1
        subject, message = slack.messages[0]
        assert subject == 'ETL job failed: etl-job'
        assert '2024-03-01T04:07:12Z' in message

    def test_no_endpoints(self):
        result = AlertDispatcher(NotificationTopic()).dispatch(make_event())
        assert not result.delivered
        assert result.reason == 'no endpoints configured'

    def test_partial_failure_still_delivered(self):
        ok = RecordingEndpoint('email')
        topic = NotificationTopic([RecordingEndpoint('slack', fail=True), ok])
        result = AlertDispatcher(topic).dispatch(make_event())
        assert result.delivered
        assert 'slack unavailable' in result.reason
        assert len(ok.messages) == 1

    def test_all_endpoints_failing(self):
        topic = NotificationTopic([RecordingEndpoint('slack', fail=True)])
        result = AlertDispatcher(topic).dispatch(make_event())
        assert not result.delivered

    def test_dispatching_same_event_twice(self):
        """Each dispatch sends one identical message and leaves the dispatcher reusable"""
        endpoint = RecordingEndpoint()
        topic = NotificationTopic([endpoint])
        dispatcher = AlertDispatcher(topic)
        event = make_event()

        first = dispatcher.dispatch(event)
        second = dispatcher.dispatch(event)

        assert first.delivered and second.delivered
        assert len(endpoint.messages) == 2
        assert endpoint.messages[0] == endpoint.messages[1]
        assert topic.endpoints == [endpoint]
        assert dispatcher.topic is topic
        assert dispatcher.dispatch(make_event()).delivered

    def test_submit_runs_in_background(self):
        endpoint = RecordingEndpoint()
        dispatcher = AlertDispatcher(NotificationTopic([endpoint]))
        future = dispatcher.submit(make_event())
        assert future.result(timeout=5).delivered
        dispatcher.shutdown()
        assert len(endpoint.messages) == 1


class TestSlackWebhookEndpoint:
    """Test Slack webhook delivery"""

    def test_posts_message(self, monkeypatch):
        post = MagicMock()
        monkeypatch.setattr(alerts.requests, 'post', post)
        SlackWebhookEndpoint('https://hooks.slack.com/services/T/B/X').deliver('ETL job failed', 'details')

        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == 'https://hooks.slack.com/services/T/B/X'
        assert 'ETL job failed' in kwargs['json']['text']
        assert 'details' in kwargs['json']['text']
        assert kwargs['timeout'] == 30
        post.return_value.raise_for_status.assert_called_once()

    def test_http_error_raises(self, monkeypatch):
        post = MagicMock()
        post.return_value.raise_for_status.side_effect = alerts.requests.HTTPError('500')
        monkeypatch.setattr(alerts.requests, 'post', post)
        with pytest.raises(alerts.requests.HTTPError):
            SlackWebhookEndpoint('https://hooks.slack.com/x').deliver('s', 'm')


class TestEmailEndpoint:
    """Test email delivery"""

    def test_build_message(self):
        endpoint = EmailEndpoint('oncall@example.com', 'smtp.example.com', sender='etl@example.com')
        msg = endpoint.build_message('ETL job failed: etl-job', 'Your ETL Batch job has failed')
        assert msg['To'] == 'oncall@example.com'
        assert msg['From'] == 'etl@example.com'
        assert msg['Subject'] == 'ETL job failed: etl-job'
        assert 'Your ETL Batch job has failed' in msg.get_payload(decode=True).decode('utf-8')

    def test_deliver_logs_in_and_sends(self, monkeypatch):
        smtp = MagicMock()
        monkeypatch.setattr(alerts.smtplib, 'SMTP_SSL', smtp)
        EmailEndpoint('oncall@example.com', 'smtp.example.com', username='u', password='p').deliver('s', 'm')

        smtp.assert_called_once_with('smtp.example.com', 465, timeout=30)
        server = smtp.return_value.__enter__.return_value
        server.login.assert_called_once_with('u', 'p')
        server.send_message.assert_called_once()
