"""
Credential lookup.

Secrets are stored outside the application. Each named secret is a small
JSON document such as ``{"username": ..., "password": ...}`` or
``{"token": ...}``. Values are never logged: ``Credential`` masks them in
its repr.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

from dotenv import dotenv_values

from etl_automation.exceptions import SecretNotFoundError


logger = logging.getLogger("etl_automation.secrets")

SECRET_REF_PREFIX = "secret:"


class Credential(Mapping):
    """Read-only mapping of secret fields with a masked repr."""

    def __init__(self, name: str, values: Dict[str, str]):
        self.name = name
        self._values = dict(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Credential({self.name!r}, keys={sorted(self._values)})"

    __str__ = __repr__

    def require(self, key: str) -> str:
        if key not in self._values:
            raise SecretNotFoundError(f"Secret '{self.name}' has no key '{key}'")
        return self._values[key]


class CredentialBroker(ABC):
    """Resolves named secrets to values on demand."""

    @abstractmethod
    def get_secret(self, name: str) -> Credential:
        """Return the secret called ``name`` or raise SecretNotFoundError."""

    def resolve_reference(self, reference: str) -> str:
        """
        Resolve ``<secret-name>:<key>`` to a single value.

        Args:
            reference: e.g. ``redshift-creds:password``
        """
        name, sep, key = reference.rpartition(':')
        if not sep or not name or not key:
            raise SecretNotFoundError(f"Malformed secret reference '{reference}'")
        return self.get_secret(name).require(key)


def env_var_for_secret(name: str) -> str:
    """``redshift-creds`` -> ``SECRET_REDSHIFT_CREDS``."""
    return "SECRET_" + re.sub(r'[^A-Za-z0-9]', '_', name).upper()


class EnvCredentialBroker(CredentialBroker):
    """
    Secrets held as JSON in ``SECRET_<NAME>`` variables.

    Variables come from the process environment, optionally overlaid by a
    dedicated secrets file in .env format.
    """

    def __init__(self, environ: Mapping[str, str] = None, env_file: Path = None):
        self._environ = dict(os.environ if environ is None else environ)
        if env_file is not None and Path(env_file).exists():
            self._environ.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})

    def get_secret(self, name: str) -> Credential:
        var = env_var_for_secret(name)
        raw = self._environ.get(var)
        if raw is None:
            raise SecretNotFoundError(f"Secret '{name}' is not defined (expected {var})")
        try:
            values = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SecretNotFoundError(f"Secret '{name}' is not valid JSON: {e.msg}") from None
        if not isinstance(values, dict):
            raise SecretNotFoundError(f"Secret '{name}' must be a JSON object")
        return Credential(name, {str(k): str(v) for k, v in values.items()})


class StaticCredentialBroker(CredentialBroker):
    """In-process secret table, used for embedding and tests."""

    def __init__(self, secrets: Optional[Dict[str, Dict[str, str]]] = None):
        self._secrets = {name: dict(values) for name, values in (secrets or {}).items()}

    def get_secret(self, name: str) -> Credential:
        if name not in self._secrets:
            raise SecretNotFoundError(f"Secret '{name}' is not defined")
        return Credential(name, self._secrets[name])


def resolve_environment(environment, broker: CredentialBroker) -> Dict[str, str]:
    """
    Build a job environment, resolving ``secret:<name>:<key>`` values.

    Args:
        environment: iterable of (variable, value) pairs
        broker: credential broker used for secret references
    """
    resolved = {}
    for key, value in environment:
        if value.startswith(SECRET_REF_PREFIX):
            resolved[key] = broker.resolve_reference(value[len(SECRET_REF_PREFIX):])
        else:
            resolved[key] = value
    return resolved
