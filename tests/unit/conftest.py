"""Shared fixtures for ETL automation tests"""
import os
import sys

import pytest

# Add project root and this directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.dirname(__file__))

from etl_automation.build.registry import BuiltImage, LocalImageRegistry
from etl_automation.models import ComputePool, JobDefinition, ResourceRequest
from etl_automation.runner.capacity import ManagedComputeEnvironment
from etl_automation.secrets import StaticCredentialBroker

from helpers import IMAGE_REF, JOB_NAME, python_command


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / 'test.db'


@pytest.fixture
def broker():
    return StaticCredentialBroker({
        'redshift-creds': {'username': 'etl_user', 'password': 'hunter2'},
        'github-creds': {'token': 'ghp_test'},
    })


@pytest.fixture
def pool():
    return ComputePool(min_units=0, desired_units=0, max_units=8)


@pytest.fixture
def capacity(pool):
    return ManagedComputeEnvironment(pool)


@pytest.fixture
def registry(tmp_path):
    registry = LocalImageRegistry(tmp_path / 'registry')
    registry.push(BuiltImage(name=JOB_NAME, digest='sha256:abc123', source_ref='a' * 40))
    return registry


@pytest.fixture
def make_definition():
    def _make(code='pass', max_attempts=1, timeout_seconds=30, vcpus=2, environment=()):
        return JobDefinition(
            name=JOB_NAME,
            image_ref=IMAGE_REF,
            command=python_command(code),
            resource_request=ResourceRequest(vcpus=vcpus, memory_mb=512),
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            environment=tuple(environment),
        )
    return _make
