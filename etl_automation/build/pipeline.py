"""
Source-triggered build pipeline.

IDLE -> TRIGGERED -> CHECKED_OUT -> BUILT -> PUBLISHED, or FAILED from any
stage. Only push events start a build. Failures are terminal for their
trigger; a new push is needed to try again. The whole run is bounded by a
wall-clock ceiling.
"""

import hashlib
import logging
import re
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from etl_automation.build.registry import BuiltImage, ImageRegistry
from etl_automation.exceptions import BuildStageError, RegistryError, SecretNotFoundError
from etl_automation.models import (
    BuildResult, BuildState, BuildStatus, BuildTrigger, PushEvent, utc_now,
)
from etl_automation.runner import db
from etl_automation.secrets import CredentialBroker


logger = logging.getLogger("etl_automation.build")

PUSH_EVENT = "push"
SHA_PATTERN = re.compile(r'^[0-9a-f]{40}$')


def _run_stage(stage: str, argv: List[str], cwd: Path, timeout: float, redact: str = None) -> str:
    """Run one stage command, raising BuildStageError on failure or timeout."""
    def clean(text: str) -> str:
        return text.replace(redact, '***') if redact else text

    try:
        completed = subprocess.run(
            argv, cwd=str(cwd), capture_output=True, text=True, timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise BuildStageError(stage, f"timed out after {timeout:.0f} seconds") from None
    except OSError as e:
        raise BuildStageError(stage, clean(str(e))) from None

    if completed.returncode != 0:
        detail = clean((completed.stderr or completed.stdout or '').strip())[-2000:]
        raise BuildStageError(stage, f"exited with code {completed.returncode}: {detail}")
    return completed.stdout


class SourceCheckout(ABC):

    @abstractmethod
    def checkout(self, trigger: BuildTrigger, workdir: Path, timeout: float) -> Path:
        """Materialise ``trigger.source_ref`` under ``workdir`` and return the source root."""


class GitCheckout(SourceCheckout):
    """
    Shallow fetch of the pushed ref over HTTPS.

    The access token comes from the ``token`` key of a secret and is
    embedded in the clone URL only for the git subprocess.
    """

    def __init__(self, repo_url: str, credentials: CredentialBroker = None, token_secret: str = None, git: str = "git"):
        self.repo_url = repo_url
        self.credentials = credentials
        self.token_secret = token_secret
        self.git = git

    def _authenticated_url(self):
        if not self.credentials or not self.token_secret:
            return self.repo_url, None
        try:
            token = self.credentials.get_secret(self.token_secret).require('token')
        except SecretNotFoundError as e:
            raise BuildStageError("checkout", str(e)) from None
        parts = urlsplit(self.repo_url)
        netloc = f"x-access-token:{quote(token, safe='')}@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment)), token

    def checkout(self, trigger: BuildTrigger, workdir: Path, timeout: float) -> Path:
        source = Path(workdir) / "source"
        source.mkdir(parents=True, exist_ok=True)
        url, token = self._authenticated_url()
        deadline = time.monotonic() + timeout

        def remaining() -> float:
            return max(deadline - time.monotonic(), 0.1)

        _run_stage("checkout", [self.git, 'init', '-q'], source, remaining())
        _run_stage("checkout", [self.git, 'fetch', '-q', '--depth', '1', url, trigger.source_ref],
                   source, remaining(), redact=token)
        _run_stage("checkout", [self.git, 'checkout', '-q', 'FETCH_HEAD'], source, remaining())
        logger.info(f"Checked out {trigger.source_ref} from {self.repo_url}")
        return source


class ImageBuilder(ABC):

    @abstractmethod
    def build(self, source_dir: Path, trigger: BuildTrigger, image_ref: str, timeout: float) -> BuiltImage:
        """Build the image for ``image_ref`` from ``source_dir``."""


def tree_digest(root: Path) -> str:
    """sha256 over relative paths and contents of every file outside .git."""
    digest = hashlib.sha256()
    for path in sorted(p for p in Path(root).rglob('*') if p.is_file() and '.git' not in p.parts):
        digest.update(str(path.relative_to(root)).encode('utf-8'))
        digest.update(path.read_bytes())
    return f"sha256:{digest.hexdigest()}"


class CommandImageBuilder(ImageBuilder):
    """
    Runs a build command in the source tree.

    ``{image_ref}`` in the command template is replaced by the target
    reference. The digest is taken over the built source tree.
    """

    def __init__(self, command_template: str):
        self.command_template = command_template

    def build(self, source_dir: Path, trigger: BuildTrigger, image_ref: str, timeout: float) -> BuiltImage:
        argv = shlex.split(self.command_template.format(image_ref=image_ref))
        _run_stage("build", argv, source_dir, timeout)
        return BuiltImage(
            name=image_ref.rsplit(':', 1)[0],
            digest=self.digest(source_dir, image_ref, timeout),
            source_ref=trigger.source_ref,
        )

    def digest(self, source_dir: Path, image_ref: str, timeout: float) -> str:
        return tree_digest(source_dir)


class DockerImageBuilder(CommandImageBuilder):
    """``docker build`` with the digest read back from the local image store."""

    def __init__(self, command_template: str = "docker build -t {image_ref} .", docker: str = "docker"):
        super().__init__(command_template)
        self.docker = docker

    def digest(self, source_dir: Path, image_ref: str, timeout: float) -> str:
        out = _run_stage("build", [self.docker, 'image', 'inspect', '--format', '{{.Id}}', image_ref],
                         source_dir, timeout)
        return out.strip()


class GitHubStatusReporter:
    """Reports build outcomes as commit statuses on the pushed commit."""

    def __init__(self, repository: str, token: str, api_url: str = "https://api.github.com",
                 context: str = "etl-automation/build", timeout: int = 30):
        self.repository = repository
        self.token = token
        self.api_url = api_url.rstrip('/')
        self.context = context
        self.timeout = timeout

    def __call__(self, result: BuildResult) -> None:
        if not SHA_PATTERN.match(result.source_ref):
            logger.debug(f"Not reporting status for non-commit ref {result.source_ref}")
            return

        if result.status is BuildStatus.SUCCEEDED:
            state, description = 'success', f"Published {result.image_ref}"
        else:
            state, description = 'failure', (result.error_message or 'Build failed')[:140]

        response = requests.post(
            f"{self.api_url}/repos/{self.repository}/statuses/{result.source_ref}",
            headers={
                'Authorization': f'Bearer {self.token}',
                'Accept': 'application/vnd.github+json',
            },
            json={'state': state, 'description': description, 'context': self.context},
            timeout=self.timeout,
        )
        response.raise_for_status()


class BuildPipeline:
    """
    Builds and publishes the job image for each push event.

    Usage:
        pipeline = BuildPipeline('dbt-batch-processing-job-repository', registry,
                                 GitCheckout(url), DockerImageBuilder(), workspace_dir)
        result = pipeline.on_push_event(PushEvent('push', 'refs/heads/master'))
    """

    def __init__(
        self,
        image_name: str,
        registry: ImageRegistry,
        checkout: SourceCheckout,
        builder: ImageBuilder,
        workspace_dir: Path,
        timeout_seconds: float = 600,
        db_path: Path = None,
        status_callback: Optional[Callable[[BuildResult], None]] = None,
        tag: str = "latest",
    ):
        self.image_name = image_name
        self.registry = registry
        self.checkout = checkout
        self.builder = builder
        self.workspace_dir = Path(workspace_dir)
        self.timeout_seconds = timeout_seconds
        self.db_path = db_path or db.DEFAULT_DB_PATH
        self.status_callback = status_callback
        self.tag = tag
        self.state = BuildState.IDLE
        self._lock = threading.Lock()
        db.init_database(self.db_path)

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}:{self.tag}"

    def on_push_event(self, event: PushEvent) -> Optional[BuildResult]:
        """
        Handle a source-control event.

        Returns:
            BuildResult for push events, None for any other event type
        """
        if (event.event_type or '').strip().lower() != PUSH_EVENT:
            logger.info(f"Ignoring '{event.event_type}' event for {event.source_ref}")
            return None

        logger.info(f"Push of {event.source_ref} at {event.occurred_at.isoformat()}")
        with self._lock:
            return self.run(BuildTrigger(source_ref=event.source_ref))

    def _transition(self, state: BuildState, trigger: BuildTrigger) -> None:
        logger.info(f"Build {trigger.trigger_id}: {self.state.value} -> {state.value}")
        self.state = state

    def run(self, trigger: BuildTrigger) -> BuildResult:
        """Drive one trigger through all stages to a terminal state."""
        started_at = utc_now()
        deadline = time.monotonic() + self.timeout_seconds
        stage = "checkout"

        def remaining() -> float:
            left = deadline - time.monotonic()
            if left <= 0:
                raise BuildStageError(stage, f"build exceeded {self.timeout_seconds:.0f} second limit")
            return left

        self._transition(BuildState.TRIGGERED, trigger)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix="build-", dir=str(self.workspace_dir)))
        try:
            source = self.checkout.checkout(trigger, workdir, remaining())
            stage = "build"
            remaining()
            self._transition(BuildState.CHECKED_OUT, trigger)

            built = self.builder.build(source, trigger, self.image_ref, remaining())
            stage = "publish"
            remaining()
            self._transition(BuildState.BUILT, trigger)

            try:
                image_ref = self.registry.push(built, tag=self.tag)
            except RegistryError as e:
                raise BuildStageError("publish", str(e)) from e
            self._transition(BuildState.PUBLISHED, trigger)

            result = BuildResult(
                build_trigger_ref=trigger.trigger_id,
                source_ref=trigger.source_ref,
                status=BuildStatus.SUCCEEDED,
                final_stage=BuildState.PUBLISHED,
                image_ref=image_ref,
                started_at=started_at,
                finished_at=utc_now(),
            )
        except BuildStageError as e:
            result = self._failed(trigger, started_at, e)
        except Exception as e:
            logger.exception(f"Unexpected error in {stage} stage of build {trigger.trigger_id}")
            result = self._failed(trigger, started_at, BuildStageError(stage, str(e)))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        db.insert_build(result, self.db_path)
        self._report(result)
        return result

    def _failed(self, trigger: BuildTrigger, started_at, error: BuildStageError) -> BuildResult:
        self._transition(BuildState.FAILED, trigger)
        logger.error(
            f"Build {trigger.trigger_id} of {trigger.source_ref} failed at {error.stage}: {error.message}"
        )
        return BuildResult(
            build_trigger_ref=trigger.trigger_id,
            source_ref=trigger.source_ref,
            status=BuildStatus.FAILED,
            final_stage=BuildState.FAILED,
            error_message=str(error),
            started_at=started_at,
            finished_at=utc_now(),
        )

    def _report(self, result: BuildResult) -> None:
        if self.status_callback is None:
            return
        try:
            self.status_callback(result)
        except Exception as e:
            logger.error(f"Build status callback failed for {result.build_trigger_ref}: {e}")
