"""
Data model for job runs, execution records, failure events and builds.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from etl_automation.exceptions import ConfigurationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_image_ref(image_ref: str) -> Tuple[str, str]:
    """
    Split an image reference into (name, tag).

    The tag is whatever follows the last ':' after the last '/', so
    registry hosts with ports (``host:5000/repo:tag``) are handled.

    Raises:
        ConfigurationError: if the reference has no name or no tag
    """
    ref = (image_ref or "").strip()
    slash = ref.rfind('/')
    colon = ref.rfind(':')
    if colon <= slash:
        raise ConfigurationError(f"Image reference '{image_ref}' must be of the form name:tag")
    name, tag = ref[:colon], ref[colon + 1:]
    if not name or not tag:
        raise ConfigurationError(f"Image reference '{image_ref}' must be of the form name:tag")
    return name, tag


class TerminalState(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_failure(self) -> bool:
        return self is not TerminalState.SUCCEEDED


class BuildState(str, Enum):
    IDLE = "IDLE"
    TRIGGERED = "TRIGGERED"
    CHECKED_OUT = "CHECKED_OUT"
    BUILT = "BUILT"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


class BuildStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ResourceRequest:
    vcpus: int
    memory_mb: int

    def __post_init__(self):
        if not isinstance(self.vcpus, int) or self.vcpus <= 0:
            raise ConfigurationError(f"vcpus must be a positive integer, got {self.vcpus!r}")
        if not isinstance(self.memory_mb, int) or self.memory_mb <= 0:
            raise ConfigurationError(f"memory_mb must be a positive integer, got {self.memory_mb!r}")


@dataclass(frozen=True)
class JobDefinition:
    """
    What to run: an image, its command line and the resources it needs.

    ``environment`` values of the form ``secret:<name>:<key>`` are resolved
    through the credential broker at execution time.
    """
    name: str
    image_ref: str
    command: Tuple[str, ...]
    resource_request: ResourceRequest
    max_attempts: int = 1
    timeout_seconds: int = 3600
    environment: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Job definition needs a name")
        parse_image_ref(self.image_ref)
        if not self.command:
            raise ConfigurationError("Job definition command must not be empty")
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts!r}")
        if self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be positive, got {self.timeout_seconds!r}")


@dataclass(frozen=True)
class ComputePool:
    """vCPU bounds of the compute environment (0 <= min <= desired <= max)."""
    min_units: int = 0
    desired_units: int = 0
    max_units: int = 32
    unit_type: str = "optimal"

    def __post_init__(self):
        if not (0 <= self.min_units <= self.desired_units <= self.max_units):
            raise ConfigurationError(
                f"Compute pool requires 0 <= min <= desired <= max, got "
                f"{self.min_units}/{self.desired_units}/{self.max_units}"
            )


@dataclass
class JobRunRequest:
    """
    One request to run a job definition.

    ``origin_id`` is shared by every attempt of one retry chain.
    """
    job_definition_ref: str
    requested_at: datetime = field(default_factory=utc_now)
    attempt_count: int = 0
    request_id: str = field(default_factory=new_id)
    origin_id: Optional[str] = None

    def __post_init__(self):
        if self.origin_id is None:
            self.origin_id = self.request_id

    def next_attempt(self) -> "JobRunRequest":
        """The request that carries this chain into its next attempt."""
        return JobRunRequest(
            job_definition_ref=self.job_definition_ref,
            requested_at=utc_now(),
            attempt_count=self.attempt_count + 1,
            origin_id=self.origin_id,
        )


@dataclass
class JobExecutionRecord:
    """One attempt of a job run. ``final`` marks the last attempt of a chain."""
    request_ref: str
    origin_ref: str
    job_name: str
    attempt_number: int
    started_at: datetime
    ended_at: datetime
    terminal_state: TerminalState
    log_ref: str
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    final: bool = True
    record_id: str = field(default_factory=new_id)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'record_id': self.record_id,
            'request_ref': self.request_ref,
            'origin_ref': self.origin_ref,
            'job_name': self.job_name,
            'attempt_number': self.attempt_number,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat(),
            'terminal_state': self.terminal_state.value,
            'log_ref': self.log_ref,
            'exit_code': self.exit_code,
            'error_message': self.error_message,
            'final': self.final,
        }


@dataclass(frozen=True)
class FailureEvent:
    execution_record_ref: str
    log_ref: str
    occurred_at: datetime
    job_name: str = ""
    terminal_state: TerminalState = TerminalState.FAILED


@dataclass(frozen=True)
class PushEvent:
    """A source-control event as delivered by the webhook."""
    event_type: str
    source_ref: str
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class BuildTrigger:
    source_ref: str
    triggered_at: datetime = field(default_factory=utc_now)
    trigger_id: str = field(default_factory=new_id)


@dataclass
class BuildResult:
    build_trigger_ref: str
    source_ref: str
    status: BuildStatus
    final_stage: BuildState
    image_ref: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def published(self) -> bool:
        return self.final_stage is BuildState.PUBLISHED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'build_id': self.build_trigger_ref,
            'source_ref': self.source_ref,
            'status': self.status.value,
            'final_stage': self.final_stage.value,
            'image_ref': self.image_ref,
            'error_message': self.error_message,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
