"""
Image registry: tagged images addressed by ``name:tag``.
"""

import json
import logging
import os
import re
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from etl_automation.exceptions import ImageNotFoundError, RegistryError
from etl_automation.models import parse_image_ref, utc_now


logger = logging.getLogger("etl_automation.registry")


@dataclass(frozen=True)
class BuiltImage:
    """Output of a build step, not yet published."""
    name: str
    digest: str
    source_ref: str


@dataclass(frozen=True)
class Image:
    """A published image as returned by a pull."""
    ref: str
    digest: str
    source_ref: Optional[str] = None
    pushed_at: Optional[datetime] = None


class ImageRegistry(ABC):

    @abstractmethod
    def push(self, image: BuiltImage, tag: str = "latest") -> str:
        """Publish ``image`` under ``tag`` and return its ``name:tag`` reference."""

    @abstractmethod
    def pull(self, image_ref: str) -> Image:
        """
        Fetch a published image.

        Raises:
            ImageNotFoundError: if nothing is published under the reference
        """

    def exists(self, image_ref: str) -> bool:
        try:
            self.pull(image_ref)
            return True
        except ImageNotFoundError:
            return False


class LocalImageRegistry(ImageRegistry):
    """
    Registry kept on the local filesystem as one JSON manifest per tag.

    Pushing an existing tag overwrites it.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _manifest_path(self, name: str, tag: str) -> Path:
        safe_name = re.sub(r'[^A-Za-z0-9._-]', '_', name)
        return self.root / safe_name / f"{tag}.json"

    def push(self, image: BuiltImage, tag: str = "latest") -> str:
        ref = f"{image.name}:{tag}"
        path = self._manifest_path(image.name, tag)
        manifest = {
            'ref': ref,
            'digest': image.digest,
            'source_ref': image.source_ref,
            'pushed_at': utc_now().isoformat(),
        }
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix('.tmp')
                tmp.write_text(json.dumps(manifest, indent=2), encoding='utf-8')
                os.replace(tmp, path)
            except OSError as e:
                raise RegistryError(f"Failed to push {ref}: {e}") from e

        logger.info(f"Pushed {ref} ({image.digest})")
        return ref

    def pull(self, image_ref: str) -> Image:
        name, tag = parse_image_ref(image_ref)
        path = self._manifest_path(name, tag)
        with self._lock:
            if not path.exists():
                raise ImageNotFoundError(f"Image '{image_ref}' not found")
            manifest = json.loads(path.read_text(encoding='utf-8'))

        return Image(
            ref=manifest['ref'],
            digest=manifest['digest'],
            source_ref=manifest.get('source_ref'),
            pushed_at=datetime.fromisoformat(manifest['pushed_at']) if manifest.get('pushed_at') else None,
        )

    def tags(self, name: str) -> List[str]:
        directory = self._manifest_path(name, 'x').parent
        if not directory.exists():
            return []
        return sorted(p.stem for p in directory.glob('*.json'))


class DockerImageRegistry(ImageRegistry):
    """
    Remote registry driven through the docker CLI.

    ``repository`` is the full repository URI; images are tagged into it
    before pushing.
    """

    def __init__(self, repository: str, docker: str = "docker", timeout: int = 600):
        self.repository = repository
        self.docker = docker
        self.timeout = timeout

    def _docker(self, *args: str) -> str:
        try:
            completed = subprocess.run(
                [self.docker, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RegistryError(f"docker {args[0]} failed: {e}") from e
        if completed.returncode != 0:
            raise RegistryError(f"docker {args[0]} failed: {completed.stderr.strip()}")
        return completed.stdout.strip()

    def push(self, image: BuiltImage, tag: str = "latest") -> str:
        ref = f"{self.repository}:{tag}"
        self._docker('tag', image.digest, ref)
        self._docker('push', ref)
        logger.info(f"Pushed {ref} ({image.digest})")
        return ref

    def pull(self, image_ref: str) -> Image:
        parse_image_ref(image_ref)
        try:
            self._docker('pull', image_ref)
        except RegistryError as e:
            raise ImageNotFoundError(f"Image '{image_ref}' could not be pulled: {e}") from e
        digest = self._docker('image', 'inspect', '--format', '{{.Id}}', image_ref)
        return Image(ref=image_ref, digest=digest)
