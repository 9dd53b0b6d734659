"""
Alert system for job failure notifications.

A failure event is rendered into a single line of text and published to a
fan-out topic that delivers it to every subscribed endpoint (Slack
webhook, email). Delivery is best effort: failures are reported, never
retried here.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from email.mime.text import MIMEText
from pathlib import Path
from typing import List, Optional, Tuple

import requests

from etl_automation.models import FailureEvent


logger = logging.getLogger("etl_automation.alerts")

DEFAULT_LOG_URL_TEMPLATE = "file://{log_path}"

ALERT_TEMPLATE = (
    "Your ETL Batch job has failed at {time}. Please check the logs at {log_url} "
    "(ensure you are logged into the correct account before clicking the link)."
)


def render_log_url(log_ref: str, template: str = DEFAULT_LOG_URL_TEMPLATE) -> str:
    """
    Turn a log reference into a link.

    Placeholders: ``{log_path}`` (the full reference) and ``{log_name}``
    (its final path component without extension).
    """
    return template.format(log_path=log_ref, log_name=Path(log_ref).stem)


def render_failure_message(event: FailureEvent, log_url_template: str = DEFAULT_LOG_URL_TEMPLATE) -> str:
    """Fixed-format alert text embedding the failure time and log link."""
    return ALERT_TEMPLATE.format(
        time=event.occurred_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        log_url=render_log_url(event.log_ref, log_url_template),
    )


class NotificationEndpoint(ABC):
    """A subscriber of the alert topic."""

    name = "endpoint"

    @abstractmethod
    def deliver(self, subject: str, message: str) -> None:
        """Deliver the message, raising on failure."""


class SlackWebhookEndpoint(NotificationEndpoint):
    """Posts the message to a Slack incoming webhook."""

    name = "slack"

    def __init__(self, webhook_url: str, timeout: int = 30):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def deliver(self, subject: str, message: str) -> None:
        payload = {
            "text": f":x: *{subject}*\n{message}",
        }
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class EmailEndpoint(NotificationEndpoint):
    """Sends the message as a plain-text email over SMTP with SSL."""

    name = "email"

    def __init__(
        self,
        recipient: str,
        smtp_host: str,
        smtp_port: int = 465,
        username: str = None,
        password: str = None,
        sender: str = None,
        timeout: int = 30,
    ):
        self.recipient = recipient
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.sender = sender or username or recipient
        self.timeout = timeout

    def build_message(self, subject: str, message: str) -> MIMEText:
        msg = MIMEText(message, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = self.recipient
        return msg

    def deliver(self, subject: str, message: str) -> None:
        msg = self.build_message(subject, message)
        with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)


class NotificationTopic:
    """Fans one message out to every subscribed endpoint."""

    def __init__(self, endpoints: List[NotificationEndpoint] = None):
        self.endpoints = list(endpoints or [])

    def subscribe(self, endpoint: NotificationEndpoint) -> None:
        self.endpoints.append(endpoint)

    def publish(self, subject: str, message: str) -> List[Tuple[str, Optional[str]]]:
        """
        Deliver to all endpoints.

        Returns:
            (endpoint name, error or None) for each endpoint
        """
        outcomes = []
        for endpoint in self.endpoints:
            try:
                endpoint.deliver(subject, message)
                outcomes.append((endpoint.name, None))
            except Exception as e:
                outcomes.append((endpoint.name, str(e)))
        return outcomes


@dataclass(frozen=True)
class DispatchResult:
    delivered: bool
    reason: Optional[str] = None


class AlertDispatcher:
    """
    Renders failure events and publishes them to the topic.

    ``submit`` hands the event to a single background thread so a slow or
    stuck endpoint never blocks the caller.
    """

    def __init__(self, topic: NotificationTopic, log_url_template: str = DEFAULT_LOG_URL_TEMPLATE):
        self.topic = topic
        self.log_url_template = log_url_template
        self._pool: Optional[ThreadPoolExecutor] = None

    def dispatch(self, event: FailureEvent) -> DispatchResult:
        """
        Publish one alert for ``event``.

        Returns:
            DispatchResult; delivered if at least one endpoint accepted it
        """
        if not self.topic.endpoints:
            logger.warning("No alert endpoints configured - alert not sent")
            return DispatchResult(delivered=False, reason="no endpoints configured")

        subject = f"ETL job failed: {event.job_name}" if event.job_name else "ETL job failed"
        message = render_failure_message(event, self.log_url_template)
        outcomes = self.topic.publish(subject, message)

        failures = [f"{name}: {error}" for name, error in outcomes if error]
        for failure in failures:
            logger.error(f"Alert delivery failed ({failure})")

        if len(failures) == len(outcomes):
            return DispatchResult(delivered=False, reason="; ".join(failures))

        logger.info(f"Failure alert sent for record {event.execution_record_ref}")
        return DispatchResult(delivered=True, reason="; ".join(failures) or None)

    def submit(self, event: FailureEvent) -> Future:
        """Dispatch on the background thread; the future yields a DispatchResult."""
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alerts")
        return self._pool.submit(self.dispatch, event)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
