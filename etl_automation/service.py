"""
Service wiring.

Builds every component from an AppConfig and owns their lifecycle: the
scheduler, the queue and its workers, the terminal-event pump with the
failure watcher and alert dispatcher, and the build pipeline.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

from etl_automation.build.pipeline import (
    BuildPipeline, CommandImageBuilder, DockerImageBuilder, GitCheckout,
    GitHubStatusReporter, ImageBuilder, SourceCheckout,
)
from etl_automation.build.registry import DockerImageRegistry, ImageRegistry, LocalImageRegistry
from etl_automation.config import AppConfig
from etl_automation.exceptions import ConfigurationError
from etl_automation.models import JobRunRequest, PushEvent, utc_now
from etl_automation.runner.alerts import (
    AlertDispatcher, EmailEndpoint, NotificationEndpoint, NotificationTopic, SlackWebhookEndpoint,
)
from etl_automation.runner.artifact import ArtifactRunner, DockerRunner, LocalProcessRunner
from etl_automation.runner.capacity import ElasticCapacityProvider, ManagedComputeEnvironment
from etl_automation.runner.executor import JobExecutor
from etl_automation.runner.queue import EnqueueResult, JobQueue
from etl_automation.runner.scheduler import Scheduler
from etl_automation.runner.watcher import FailureWatcher
from etl_automation.runner.worker import TerminalEventPump, WorkerPool
from etl_automation.secrets import CredentialBroker, EnvCredentialBroker


logger = logging.getLogger("etl_automation.service")


def build_endpoints(config: AppConfig, credentials: CredentialBroker) -> List[NotificationEndpoint]:
    """Notification endpoints enabled by the alert configuration."""
    endpoints: List[NotificationEndpoint] = []
    alerts = config.alerts
    if alerts.slack_webhook_url:
        endpoints.append(SlackWebhookEndpoint(alerts.slack_webhook_url))
    if alerts.monitoring_email:
        username = password = None
        if alerts.smtp_secret:
            credential = credentials.get_secret(alerts.smtp_secret)
            username, password = credential.require('username'), credential.require('password')
        endpoints.append(EmailEndpoint(
            recipient=alerts.monitoring_email,
            smtp_host=alerts.smtp_host,
            smtp_port=alerts.smtp_port,
            username=username,
            password=password,
        ))
    return endpoints


class EtlAutomation:
    """
    The running deployment.

    Components can be injected (tests, embedding); anything not given is
    built from the configuration.

    Usage:
        service = EtlAutomation(load_config())
        service.start()
        ...
        service.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        credentials: CredentialBroker = None,
        capacity: ElasticCapacityProvider = None,
        registry: ImageRegistry = None,
        runner: ArtifactRunner = None,
        endpoints: List[NotificationEndpoint] = None,
        checkout: SourceCheckout = None,
        builder: ImageBuilder = None,
    ):
        self.config = config
        self.credentials = credentials or EnvCredentialBroker()
        db_path = config.db_path

        self.capacity = capacity or ManagedComputeEnvironment(config.pool)
        self.queue = JobQueue(
            config.pool, self.capacity, [config.job],
            db_path=db_path, poll_interval=config.queue_poll_seconds,
        )
        self.registry = registry or self._build_registry()
        self.runner = runner or (DockerRunner() if config.runner == "docker" else LocalProcessRunner())
        self.executor = JobExecutor(
            self.queue, self.registry, self.capacity, self.runner, self.credentials,
            log_dir=config.log_dir,
            db_path=db_path,
            capacity_timeout=config.capacity_timeout_seconds,
        )
        self.workers = WorkerPool(
            self.queue, self.executor, {config.job.name: config.job},
            count=config.workers, poll_interval=config.queue_poll_seconds,
        )

        self.watcher = FailureWatcher()
        topic = NotificationTopic(endpoints if endpoints is not None else build_endpoints(config, self.credentials))
        self.dispatcher = AlertDispatcher(topic, config.alerts.log_url_template)
        self.pump = TerminalEventPump(
            self.watcher, self.dispatcher, db_path=db_path, poll_interval=config.queue_poll_seconds,
        )

        self.scheduler = Scheduler(
            config.schedule, config.job, self.queue,
            misfire_grace_seconds=config.misfire_grace_seconds,
        )

        self.pipeline = self._build_pipeline(checkout, builder)
        self._build_pool: Optional[ThreadPoolExecutor] = None
        self._started = False

    def _build_registry(self) -> ImageRegistry:
        if self.config.registry == "docker":
            return DockerImageRegistry(self.config.image_name)
        return LocalImageRegistry(self.config.registry_dir)

    def _build_pipeline(self, checkout: SourceCheckout, builder: ImageBuilder) -> Optional[BuildPipeline]:
        build = self.config.build
        if checkout is None:
            if not build.enabled:
                return None
            checkout = GitCheckout(build.repo_url, self.credentials, build.token_secret or None)
        if builder is None:
            if self.config.registry == "docker":
                builder = DockerImageBuilder(build.build_command)
            else:
                builder = CommandImageBuilder(build.build_command)

        status_callback = None
        if build.enabled and build.repository and build.token_secret:
            token = self.credentials.get_secret(build.token_secret).require('token')
            status_callback = GitHubStatusReporter(build.repository, token, api_url=build.api_url)

        return BuildPipeline(
            self.config.image_name,
            self.registry,
            checkout,
            builder,
            workspace_dir=self.config.workspace_dir,
            timeout_seconds=build.timeout_seconds,
            db_path=self.config.db_path,
            status_callback=status_callback,
        )

    @property
    def webhook_token(self) -> Optional[str]:
        """Shared secret used to verify webhook signatures, if configured."""
        name = self.config.build.webhook_secret
        if not name:
            return None
        return self.credentials.get_secret(name).require('token')

    def start(self) -> None:
        if self._started:
            return
        recovered = self.queue.recover()
        if recovered:
            logger.info(f"Recovered {recovered} request(s) from a previous run")
        self.pump.start()
        self.workers.start()
        self.scheduler.start()
        self._started = True
        logger.info(f"ETL automation started for job '{self.config.job.name}'")

    def stop(self) -> None:
        if not self._started:
            return
        self.scheduler.shutdown()
        self.workers.stop()
        self.queue.close()
        self.pump.pump_once()
        self.pump.stop()
        self.dispatcher.shutdown(wait=True)
        if self._build_pool is not None:
            self._build_pool.shutdown(wait=True)
            self._build_pool = None
        self._started = False
        logger.info("ETL automation stopped")

    def trigger_now(self) -> Optional[JobRunRequest]:
        """Enqueue an immediate run outside the schedule. Returns None if rejected."""
        return self.scheduler.on_fire(utc_now().replace(microsecond=0))

    def enqueue(self, request: JobRunRequest) -> EnqueueResult:
        return self.queue.enqueue(request)

    def submit_build(self, event: PushEvent) -> Future:
        """Run the build for ``event`` on the single build thread."""
        if self.pipeline is None:
            raise ConfigurationError("Build pipeline is not configured (set ETL_GITHUB_REPO_URL)")
        if self._build_pool is None:
            self._build_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="build")
        return self._build_pool.submit(self.pipeline.on_push_event, event)
