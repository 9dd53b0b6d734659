"""
Elastic compute capacity.

Executors ask for vCPUs before starting an attempt and hand them back on
every exit path through a ``CapacityLease`` context manager.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator

from etl_automation.exceptions import CapacityUnavailableError
from etl_automation.models import ComputePool


logger = logging.getLogger("etl_automation.capacity")


class CapacityLease:
    """vCPUs held on behalf of one attempt."""

    def __init__(self, provider: "ElasticCapacityProvider", vcpus: int):
        self.provider = provider
        self.vcpus = vcpus
        self.released = False

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.provider.release(self.vcpus)


class ElasticCapacityProvider(ABC):
    """Ensures N vCPUs are available within a fixed ceiling."""

    @property
    @abstractmethod
    def max_vcpus(self) -> int:
        """Hard ceiling of the compute pool."""

    @abstractmethod
    def in_use_vcpus(self) -> int:
        """vCPUs currently leased."""

    @abstractmethod
    def acquire(self, vcpus: int, timeout: float = None) -> CapacityLease:
        """
        Reserve ``vcpus``, scaling up if needed.

        Raises:
            CapacityUnavailableError: if the vCPUs cannot be reserved in time
        """

    @abstractmethod
    def release(self, vcpus: int) -> None:
        """Return vCPUs previously acquired."""

    @contextmanager
    def lease(self, vcpus: int, timeout: float = None) -> Iterator[CapacityLease]:
        """Scoped acquisition: capacity is released however the block exits."""
        lease = self.acquire(vcpus, timeout=timeout)
        try:
            yield lease
        finally:
            lease.release()


class ManagedComputeEnvironment(ElasticCapacityProvider):
    """
    In-process model of a managed compute environment.

    Desired capacity grows with demand up to ``max_units`` and shrinks back
    towards ``min_units`` (never below what is leased) as leases end.
    """

    def __init__(self, pool: ComputePool):
        self.pool = pool
        self._desired = pool.desired_units
        self._in_use = 0
        self._cond = threading.Condition()

    @property
    def max_vcpus(self) -> int:
        return self.pool.max_units

    @property
    def desired_vcpus(self) -> int:
        with self._cond:
            return self._desired

    def in_use_vcpus(self) -> int:
        with self._cond:
            return self._in_use

    def acquire(self, vcpus: int, timeout: float = None) -> CapacityLease:
        if vcpus > self.pool.max_units:
            raise CapacityUnavailableError(
                f"Request for {vcpus} vCPUs exceeds pool maximum of {self.pool.max_units}"
            )

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._in_use + vcpus > self.pool.max_units:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise CapacityUnavailableError(
                        f"Timed out waiting for {vcpus} vCPUs "
                        f"({self._in_use}/{self.pool.max_units} in use)"
                    )
                self._cond.wait(remaining)

            self._in_use += vcpus
            if self._in_use > self._desired:
                logger.info(f"Scaling up desired vCPUs {self._desired} -> {self._in_use}")
                self._desired = self._in_use
            return CapacityLease(self, vcpus)

    def release(self, vcpus: int) -> None:
        with self._cond:
            self._in_use = max(0, self._in_use - vcpus)
            target = max(self.pool.min_units, self._in_use)
            if target < self._desired:
                logger.info(f"Scaling down desired vCPUs {self._desired} -> {target}")
                self._desired = target
            self._cond.notify_all()
