"""
Deployment configuration.

Read once at startup from environment variables (after loading a .env
file) into an immutable tree of dataclasses that is passed explicitly to
every component. Invalid values raise ConfigurationError immediately.
"""

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

from etl_automation.exceptions import ConfigurationError
from etl_automation.models import ComputePool, JobDefinition, ResourceRequest, parse_image_ref
from etl_automation.runner.alerts import DEFAULT_LOG_URL_TEMPLATE
from etl_automation.runner.scheduler import Schedule
from etl_automation.secrets import SECRET_REF_PREFIX, CredentialBroker


DEFAULT_SCHEDULE = "0 4 * * ? *"
DEFAULT_IMAGE_REF = "dbt-batch-processing-job-repository:latest"
DEFAULT_COMMAND = "dbt run --profiles-dir ."
GITHUB_TYPES = ("GITHUB", "GITHUB_ENTERPRISE")
RUNNERS = ("docker", "local")
REGISTRIES = ("local", "docker")


@dataclass(frozen=True)
class WarehouseConfig:
    host: str = ""
    schema: str = "public"
    secret: str = "redshift-creds"


@dataclass(frozen=True)
class BuildConfig:
    repo_url: str = ""
    branch: str = "master"
    github_type: str = "GITHUB"
    token_secret: str = "github-creds"
    timeout_seconds: int = 600
    build_command: str = "docker build -t {image_ref} ."
    webhook_secret: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.repo_url)

    @property
    def repository(self) -> Optional[str]:
        """``owner/name`` of the source repository, if it can be derived."""
        path = urlsplit(self.repo_url).path.strip('/')
        if path.endswith('.git'):
            path = path[:-4]
        return path if path.count('/') == 1 else None

    @property
    def api_url(self) -> str:
        if self.github_type == "GITHUB_ENTERPRISE":
            parts = urlsplit(self.repo_url)
            return f"{parts.scheme}://{parts.netloc}/api/v3"
        return "https://api.github.com"


@dataclass(frozen=True)
class AlertConfig:
    monitoring_email: str = ""
    slack_webhook_url: str = ""
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_secret: Optional[str] = None
    log_url_template: str = DEFAULT_LOG_URL_TEMPLATE


@dataclass(frozen=True)
class AppConfig:
    schedule: Schedule
    job: JobDefinition
    pool: ComputePool
    warehouse: WarehouseConfig
    build: BuildConfig
    alerts: AlertConfig
    data_dir: Path = Path("data")
    runner: str = "docker"
    registry: str = "local"
    workers: int = 1
    server_host: str = "0.0.0.0"
    server_port: int = 3003
    log_level: str = "INFO"
    misfire_grace_seconds: int = 60
    queue_poll_seconds: float = 1.0
    capacity_timeout_seconds: int = 300

    def __post_init__(self):
        if self.runner not in RUNNERS:
            raise ConfigurationError(f"ETL_RUNNER must be one of {RUNNERS}, got '{self.runner}'")
        if self.registry not in REGISTRIES:
            raise ConfigurationError(f"ETL_REGISTRY must be one of {REGISTRIES}, got '{self.registry}'")
        if self.workers < 1:
            raise ConfigurationError("ETL_WORKERS must be at least 1")
        if self.job.resource_request.vcpus > self.pool.max_units:
            raise ConfigurationError(
                f"Job needs {self.job.resource_request.vcpus} vCPUs but the pool maximum is {self.pool.max_units}"
            )

    @property
    def db_path(self) -> Path:
        return self.data_dir / "etl_automation.db"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def registry_dir(self) -> Path:
        return self.data_dir / "registry"

    @property
    def workspace_dir(self) -> Path:
        return self.data_dir / "builds"

    @property
    def image_name(self) -> str:
        return parse_image_ref(self.job.image_ref)[0]


def _get(environ: Mapping[str, str], key: str, default: str = "") -> str:
    value = environ.get(key)
    return default if value is None or value.strip() == "" else value.strip()


def _get_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(environ, key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got '{raw}'") from None


def _get_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(environ, key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got '{raw}'") from None


def _job_environment(warehouse: WarehouseConfig) -> Tuple[Tuple[str, str], ...]:
    env = []
    if warehouse.host:
        env.append(("REDSHIFT_HOST", warehouse.host))
    env.append(("SCHEMA", warehouse.schema))
    if warehouse.secret:
        env.append(("REDSHIFT_USER", f"{SECRET_REF_PREFIX}{warehouse.secret}:username"))
        env.append(("REDSHIFT_PASSWORD", f"{SECRET_REF_PREFIX}{warehouse.secret}:password"))
    return tuple(env)


def load_config(env_file: Path = None, environ: Mapping[str, str] = None) -> AppConfig:
    """
    Build the application configuration.

    Args:
        env_file: .env file to load into the process environment (default ./.env)
        environ: explicit variable mapping; skips .env loading when given

    Raises:
        ConfigurationError: if any value is missing or invalid
    """
    if environ is None:
        load_dotenv(env_file or Path(".env"))
        environ = os.environ

    schedule = Schedule.parse(_get(environ, "ETL_JOB_FREQUENCY", DEFAULT_SCHEDULE))

    warehouse = WarehouseConfig(
        host=_get(environ, "ETL_WAREHOUSE_HOST"),
        schema=_get(environ, "ETL_WAREHOUSE_SCHEMA", "public"),
        secret=_get(environ, "ETL_WAREHOUSE_SECRET", "redshift-creds"),
    )

    try:
        command = tuple(shlex.split(_get(environ, "ETL_COMMAND", DEFAULT_COMMAND)))
    except ValueError as e:
        raise ConfigurationError(f"ETL_COMMAND cannot be parsed: {e}") from None

    job = JobDefinition(
        name=_get(environ, "ETL_JOB_NAME", "redshift-etl-job"),
        image_ref=_get(environ, "ETL_IMAGE_REF", DEFAULT_IMAGE_REF),
        command=command,
        resource_request=ResourceRequest(
            vcpus=_get_int(environ, "ETL_JOB_VCPUS", 2),
            memory_mb=_get_int(environ, "ETL_JOB_MEMORY_MB", 2000),
        ),
        max_attempts=_get_int(environ, "ETL_MAX_ATTEMPTS", 1),
        timeout_seconds=_get_int(environ, "ETL_JOB_TIMEOUT_SECONDS", 3600),
        environment=_job_environment(warehouse),
    )

    pool = ComputePool(
        min_units=_get_int(environ, "ETL_MIN_VCPUS", 0),
        desired_units=_get_int(environ, "ETL_DESIRED_VCPUS", 0),
        max_units=_get_int(environ, "ETL_MAX_VCPUS", 32),
        unit_type=_get(environ, "ETL_INSTANCE_TYPE", "optimal"),
    )

    github_type = _get(environ, "ETL_GITHUB_TYPE", "GITHUB").upper()
    if github_type not in GITHUB_TYPES:
        raise ConfigurationError(f"ETL_GITHUB_TYPE must be one of {GITHUB_TYPES}, got '{github_type}'")

    build = BuildConfig(
        repo_url=_get(environ, "ETL_GITHUB_REPO_URL"),
        branch=_get(environ, "ETL_GITHUB_BRANCH", "master"),
        github_type=github_type,
        token_secret=_get(environ, "ETL_GITHUB_SECRET", "github-creds"),
        timeout_seconds=_get_int(environ, "ETL_BUILD_TIMEOUT_MINUTES", 10) * 60,
        build_command=_get(environ, "ETL_BUILD_COMMAND", "docker build -t {image_ref} ."),
        webhook_secret=_get(environ, "ETL_WEBHOOK_SECRET") or None,
    )
    if build.timeout_seconds <= 0:
        raise ConfigurationError("ETL_BUILD_TIMEOUT_MINUTES must be positive")

    alerts = AlertConfig(
        monitoring_email=_get(environ, "ETL_MONITORING_EMAIL"),
        slack_webhook_url=_get(environ, "ETL_SLACK_WEBHOOK_URL"),
        smtp_host=_get(environ, "ETL_SMTP_HOST"),
        smtp_port=_get_int(environ, "ETL_SMTP_PORT", 465),
        smtp_secret=_get(environ, "ETL_SMTP_SECRET") or None,
        log_url_template=_get(environ, "ETL_LOG_URL_TEMPLATE", DEFAULT_LOG_URL_TEMPLATE),
    )
    if alerts.monitoring_email and not alerts.smtp_host:
        raise ConfigurationError("ETL_MONITORING_EMAIL requires ETL_SMTP_HOST")

    return AppConfig(
        schedule=schedule,
        job=job,
        pool=pool,
        warehouse=warehouse,
        build=build,
        alerts=alerts,
        data_dir=Path(_get(environ, "ETL_DATA_DIR", "data")),
        runner=_get(environ, "ETL_RUNNER", "docker").lower(),
        registry=_get(environ, "ETL_REGISTRY", "local").lower(),
        workers=_get_int(environ, "ETL_WORKERS", 1),
        server_host=_get(environ, "ETL_SERVER_HOST", "0.0.0.0"),
        server_port=_get_int(environ, "ETL_SERVER_PORT", 3003),
        log_level=_get(environ, "ETL_LOG_LEVEL", "INFO").upper(),
        misfire_grace_seconds=_get_int(environ, "ETL_MISFIRE_GRACE_SECONDS", 60),
        queue_poll_seconds=_get_float(environ, "ETL_QUEUE_POLL_SECONDS", 1.0),
        capacity_timeout_seconds=_get_int(environ, "ETL_CAPACITY_TIMEOUT_SECONDS", 300),
    )


def validate_secrets(config: AppConfig, broker: CredentialBroker) -> None:
    """
    Resolve every secret the deployment refers to.

    Raises:
        SecretNotFoundError: on the first secret or key that is missing
    """
    for _, value in config.job.environment:
        if value.startswith(SECRET_REF_PREFIX):
            broker.resolve_reference(value[len(SECRET_REF_PREFIX):])

    if config.build.enabled and config.build.token_secret:
        broker.get_secret(config.build.token_secret).require('token')
    if config.build.webhook_secret:
        broker.get_secret(config.build.webhook_secret).require('token')
    if config.alerts.smtp_secret:
        credential = broker.get_secret(config.alerts.smtp_secret)
        credential.require('username')
        credential.require('password')
