"""
Failure watcher: turns terminal execution records into failure events.
"""

import logging
from typing import Callable, List, Optional

from etl_automation.models import FailureEvent, JobExecutionRecord


logger = logging.getLogger("etl_automation.watcher")


class FailureWatcher:
    """
    Filters terminal records and emits one FailureEvent per failed or
    timed out record. Successful records are dropped without side effect.
    """

    def __init__(self):
        self._listeners: List[Callable[[FailureEvent], None]] = []

    def subscribe(self, listener: Callable[[FailureEvent], None]) -> None:
        self._listeners.append(listener)

    def on_terminal(self, record: JobExecutionRecord) -> Optional[FailureEvent]:
        if not record.terminal_state.is_failure:
            return None

        event = FailureEvent(
            execution_record_ref=record.record_id,
            log_ref=record.log_ref,
            occurred_at=record.ended_at,
            job_name=record.job_name,
            terminal_state=record.terminal_state,
        )
        logger.info(
            f"Job '{record.job_name}' ended {record.terminal_state.value} "
            f"(record {record.record_id})"
        )
        for listener in self._listeners:
            listener(event)
        return event
