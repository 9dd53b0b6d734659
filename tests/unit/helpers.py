"""Test doubles shared by the unit tests"""
import sys
from datetime import datetime, timedelta, timezone

from etl_automation.runner.alerts import NotificationEndpoint


JOB_NAME = 'etl-job'
IMAGE_REF = 'etl-job:latest'


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def python_command(code: str):
    """Command tuple running a Python snippet with this interpreter."""
    return (sys.executable, '-c', code)


class RecordingEndpoint(NotificationEndpoint):
    """Endpoint that keeps delivered messages, or fails on demand."""

    def __init__(self, name='recording', fail=False):
        self.name = name
        self.fail = fail
        self.messages = []

    def deliver(self, subject, message):
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        self.messages.append((subject, message))


class FakeClock:
    """Manually advanced clock; ``sleep`` moves time forward."""

    def __init__(self, start, oversleep=None):
        self.now = start
        self.oversleep = list(oversleep or [])
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        extra = self.oversleep.pop(0) if self.oversleep else 0
        self.now = self.now + timedelta(seconds=seconds + extra)
