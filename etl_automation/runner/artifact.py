"""
Runners for the opaque job artifact.

The artifact is only ever invoked with its fixed command line; exit code 0
means success and anything else is a failure. Combined stdout/stderr is
written to the attempt's log file.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from etl_automation.build.registry import Image
from etl_automation.models import JobDefinition


logger = logging.getLogger("etl_automation.artifact")


@dataclass(frozen=True)
class RunOutcome:
    exit_code: Optional[int]
    timed_out: bool = False
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class ArtifactRunner(ABC):

    def run(
        self,
        run_id: str,
        image: Image,
        definition: JobDefinition,
        env: Dict[str, str],
        log_path: Path,
        timeout: float,
    ) -> RunOutcome:
        """
        Run the artifact to completion or until ``timeout`` seconds pass.

        Args:
            run_id: identifier of the attempt
            image: the pulled image
            definition: job definition carrying command and resources
            env: extra environment for the artifact (may hold secrets)
            log_path: file receiving combined output
            timeout: wall-clock limit in seconds
        """
        argv = self.build_argv(run_id, image, definition, env)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        process_env = dict(os.environ)
        process_env.update(env)

        logger.debug(f"Running {argv[0]} for attempt {run_id}")
        with open(log_path, 'w', encoding='utf-8') as log_file:
            try:
                completed = subprocess.run(
                    argv,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=process_env,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired:
                msg = f"Command timed out after {timeout} seconds"
                log_file.write(f"\n{msg}\n")
                self.on_timeout(run_id)
                return RunOutcome(exit_code=None, timed_out=True, error_message=msg)
            except OSError as e:
                msg = f"Failed to start command: {e}"
                log_file.write(f"{msg}\n")
                return RunOutcome(exit_code=None, error_message=msg)

        exit_code = completed.returncode
        error_message = None if exit_code == 0 else f"Exited with code {exit_code}"
        return RunOutcome(exit_code=exit_code, error_message=error_message)

    @abstractmethod
    def build_argv(self, run_id: str, image: Image, definition: JobDefinition, env: Dict[str, str]) -> List[str]:
        """Command vector that starts the artifact."""

    def on_timeout(self, run_id: str) -> None:
        """Hook for cleaning up after a timed out run."""


class LocalProcessRunner(ArtifactRunner):
    """Runs the command directly on this host, ignoring the image."""

    def build_argv(self, run_id, image, definition, env):
        return list(definition.command)


class DockerRunner(ArtifactRunner):
    """
    Runs the command inside the job image with the docker CLI.

    Environment values are forwarded by name (``-e KEY``) so secrets never
    appear on the command line.
    """

    def __init__(self, docker: str = "docker", extra_args: List[str] = None):
        self.docker = docker
        self.extra_args = list(extra_args or [])

    @staticmethod
    def container_name(run_id: str) -> str:
        return f"etl-{run_id}"

    def build_argv(self, run_id, image, definition, env):
        resources = definition.resource_request
        argv = [
            self.docker, 'run', '--rm',
            '--name', self.container_name(run_id),
            '--cpus', str(resources.vcpus),
            '--memory', f"{resources.memory_mb}m",
        ]
        for key in sorted(env):
            argv += ['-e', key]
        argv += self.extra_args
        argv.append(image.ref)
        argv += list(definition.command)
        return argv

    def on_timeout(self, run_id: str) -> None:
        name = self.container_name(run_id)
        try:
            subprocess.run([self.docker, 'kill', name], capture_output=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to kill timed out container {name}: {e}")
