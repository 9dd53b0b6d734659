"""
Database operations for ETL automation.

Handles the durable job queue, execution records (append-only) and build
results. Execution records with ``final = 1 AND notified = 0`` form the
terminal-event outbox read by the failure watcher.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from etl_automation.models import (
    BuildResult, BuildState, BuildStatus, JobExecutionRecord, JobRunRequest,
    TerminalState, utc_now,
)


# Default database path
DEFAULT_DB_PATH = Path("data/etl_automation.db")


@contextmanager
def get_db_connection(db_path: Path = None):
    """
    Context manager for database connections.

    Args:
        db_path: Path to the database file

    Yields:
        sqlite3 connection with row factory set to dict
    """
    path = Path(db_path or DEFAULT_DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_database(db_path: Path = None) -> None:
    """
    Initialize the database with required tables.

    Args:
        db_path: Path to the database file
    """
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()

        # Pending and claimed job run requests
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS job_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT NOT NULL UNIQUE,
                origin_id TEXT NOT NULL,
                job_definition_ref TEXT NOT NULL,
                requested_at TIMESTAMP NOT NULL,
                attempt_count INTEGER DEFAULT 0,
                vcpus INTEGER NOT NULL,
                status TEXT DEFAULT 'pending',
                enqueued_at TIMESTAMP NOT NULL,
                claimed_at TIMESTAMP
            )
        """)

        # Job execution records, one per attempt
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS job_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                request_ref TEXT NOT NULL,
                origin_ref TEXT NOT NULL,
                job_name TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                started_at TIMESTAMP NOT NULL,
                ended_at TIMESTAMP NOT NULL,
                duration_seconds REAL,
                terminal_state TEXT NOT NULL,
                exit_code INTEGER,
                log_ref TEXT,
                error_message TEXT,
                final INTEGER DEFAULT 1,
                notified INTEGER DEFAULT 0,
                notified_at TIMESTAMP
            )
        """)

        # Build results
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS builds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                build_id TEXT NOT NULL UNIQUE,
                source_ref TEXT NOT NULL,
                status TEXT NOT NULL,
                final_stage TEXT NOT NULL,
                image_ref TEXT,
                error_message TEXT,
                started_at TIMESTAMP NOT NULL,
                finished_at TIMESTAMP
            )
        """)

        # Create indexes
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_queue_status ON job_queue(status, seq)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_origin ON job_runs(origin_ref)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_outbox ON job_runs(final, notified)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_started_at ON job_runs(started_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_builds_started_at ON builds(started_at)")

        conn.commit()


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# --- Queue Operations ---

def insert_queue_item(request: JobRunRequest, vcpus: int, db_path: Path = None) -> None:
    """Append a request to the tail of the queue."""
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO job_queue (
                request_id, origin_id, job_definition_ref, requested_at,
                attempt_count, vcpus, status, enqueued_at
            ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
        """, (
            request.request_id, request.origin_id, request.job_definition_ref,
            _ts(request.requested_at), request.attempt_count, vcpus, _ts(utc_now())
        ))
        conn.commit()


def _request_from_row(row: sqlite3.Row) -> JobRunRequest:
    return JobRunRequest(
        job_definition_ref=row['job_definition_ref'],
        requested_at=_parse_ts(row['requested_at']),
        attempt_count=row['attempt_count'],
        request_id=row['request_id'],
        origin_id=row['origin_id'],
    )


def claim_next_queue_item(db_path: Path = None) -> Optional[JobRunRequest]:
    """
    Move the oldest pending request to in_flight and return it.

    The status guard on the UPDATE makes concurrent claimers safe: a
    claimer that loses the race retries with the next row.
    """
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        while True:
            cursor.execute("""
                SELECT * FROM job_queue
                WHERE status = 'pending'
                ORDER BY seq
                LIMIT 1
            """)
            row = cursor.fetchone()
            if not row:
                return None

            cursor.execute("""
                UPDATE job_queue SET status = 'in_flight', claimed_at = ?
                WHERE seq = ? AND status = 'pending'
            """, (_ts(utc_now()), row['seq']))
            conn.commit()
            if cursor.rowcount == 1:
                return _request_from_row(row)


def delete_queue_item(request_id: str, db_path: Path = None) -> bool:
    """Remove an acknowledged request."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM job_queue WHERE request_id = ?", (request_id,))
        conn.commit()
        return cursor.rowcount > 0


def get_queue_demand(db_path: Path = None) -> Dict[str, int]:
    """vCPU demand and row counts of pending and in-flight requests."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT
                COALESCE(SUM(CASE WHEN status = 'pending' THEN vcpus ELSE 0 END), 0) as pending_vcpus,
                COALESCE(SUM(CASE WHEN status = 'in_flight' THEN vcpus ELSE 0 END), 0) as in_flight_vcpus,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) as pending,
                SUM(CASE WHEN status = 'in_flight' THEN 1 ELSE 0 END) as in_flight
            FROM job_queue
        """)
        row = cursor.fetchone()
        return {
            'pending_vcpus': row['pending_vcpus'] or 0,
            'in_flight_vcpus': row['in_flight_vcpus'] or 0,
            'pending': row['pending'] or 0,
            'in_flight': row['in_flight'] or 0,
        }


def get_in_flight_items(db_path: Path = None) -> List[JobRunRequest]:
    """Requests claimed by a worker but never acknowledged."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM job_queue WHERE status = 'in_flight' ORDER BY seq")
        return [_request_from_row(row) for row in cursor.fetchall()]


def release_queue_item(request_id: str, db_path: Path = None) -> None:
    """Return an in-flight request to pending, keeping its position."""
    with get_db_connection(db_path) as conn:
        conn.execute(
            "UPDATE job_queue SET status = 'pending', claimed_at = NULL WHERE request_id = ?",
            (request_id,)
        )
        conn.commit()


# --- Execution Record Operations ---

def insert_run_record(record: JobExecutionRecord, db_path: Path = None) -> None:
    """Append an execution record. Records are never updated except for notification."""
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO job_runs (
                record_id, request_ref, origin_ref, job_name, attempt_number,
                started_at, ended_at, duration_seconds, terminal_state,
                exit_code, log_ref, error_message, final
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.record_id, record.request_ref, record.origin_ref, record.job_name,
            record.attempt_number, _ts(record.started_at), _ts(record.ended_at),
            record.duration_seconds, record.terminal_state.value, record.exit_code,
            record.log_ref, record.error_message, 1 if record.final else 0
        ))
        conn.commit()


def _record_from_row(row: sqlite3.Row) -> JobExecutionRecord:
    return JobExecutionRecord(
        request_ref=row['request_ref'],
        origin_ref=row['origin_ref'],
        job_name=row['job_name'],
        attempt_number=row['attempt_number'],
        started_at=_parse_ts(row['started_at']),
        ended_at=_parse_ts(row['ended_at']),
        terminal_state=TerminalState(row['terminal_state']),
        log_ref=row['log_ref'],
        exit_code=row['exit_code'],
        error_message=row['error_message'],
        final=bool(row['final']),
        record_id=row['record_id'],
    )


def get_run(record_id: str, db_path: Path = None) -> Optional[JobExecutionRecord]:
    """Get a single execution record by ID."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM job_runs WHERE record_id = ?", (record_id,))
        row = cursor.fetchone()
        return _record_from_row(row) if row else None


def get_recent_runs(limit: int = 20, db_path: Path = None) -> List[JobExecutionRecord]:
    """Get the most recent execution records."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM job_runs
            ORDER BY started_at DESC, id DESC
            LIMIT ?
        """, (limit,))
        return [_record_from_row(row) for row in cursor.fetchall()]


def get_chain_runs(origin_ref: str, db_path: Path = None) -> List[JobExecutionRecord]:
    """All attempts of one retry chain, in attempt order."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM job_runs
            WHERE origin_ref = ?
            ORDER BY attempt_number
        """, (origin_ref,))
        return [_record_from_row(row) for row in cursor.fetchall()]


def get_run_for_request(request_ref: str, db_path: Path = None) -> Optional[JobExecutionRecord]:
    """The execution record written for a request, if its attempt finished."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM job_runs WHERE request_ref = ? ORDER BY id DESC LIMIT 1", (request_ref,))
        row = cursor.fetchone()
        return _record_from_row(row) if row else None


def has_queued_attempt(origin_id: str, excluding: str, db_path: Path = None) -> bool:
    """Whether another request of the same chain is still in the queue."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT 1 FROM job_queue WHERE origin_id = ? AND request_id != ? LIMIT 1",
            (origin_id, excluding),
        )
        return cursor.fetchone() is not None


def get_unnotified_terminal_runs(limit: int = 100, db_path: Path = None) -> List[JobExecutionRecord]:
    """Final records not yet handed to the failure watcher, oldest first."""
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM job_runs
            WHERE final = 1 AND notified = 0
            ORDER BY id
            LIMIT ?
        """, (limit,))
        return [_record_from_row(row) for row in cursor.fetchall()]


def mark_final(record_id: str, db_path: Path = None) -> None:
    """Promote a record to last of its chain when a retry could not be queued."""
    with get_db_connection(db_path) as conn:
        conn.execute("UPDATE job_runs SET final = 1 WHERE record_id = ?", (record_id,))
        conn.commit()


def mark_notified(record_id: str, db_path: Path = None) -> None:
    with get_db_connection(db_path) as conn:
        conn.execute(
            "UPDATE job_runs SET notified = 1, notified_at = ? WHERE record_id = ?",
            (_ts(utc_now()), record_id)
        )
        conn.commit()


def get_recent_failures(hours: int = 24, db_path: Path = None) -> List[JobExecutionRecord]:
    """Get final failed or timed out attempts from the last N hours."""
    since = utc_now() - timedelta(hours=hours)
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM job_runs
            WHERE final = 1
            AND terminal_state IN ('FAILED', 'TIMED_OUT')
            AND ended_at >= ?
            ORDER BY ended_at DESC
        """, (_ts(since),))
        return [_record_from_row(row) for row in cursor.fetchall()]


def get_stats_summary(db_path: Path = None) -> Dict[str, Any]:
    """Get overall statistics for the last 24 hours."""
    since = utc_now() - timedelta(hours=24)
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT
                COUNT(*) as total,
                SUM(CASE WHEN terminal_state = 'SUCCEEDED' THEN 1 ELSE 0 END) as successes,
                SUM(CASE WHEN terminal_state != 'SUCCEEDED' THEN 1 ELSE 0 END) as failures,
                AVG(duration_seconds) as avg_duration
            FROM job_runs
            WHERE started_at >= ?
        """, (_ts(since),))
        row = cursor.fetchone()

        return {
            'attempts_24h': row['total'] or 0,
            'successes_24h': row['successes'] or 0,
            'failures_24h': row['failures'] or 0,
            'avg_duration_seconds': round(row['avg_duration'], 2) if row['avg_duration'] else None,
            'success_rate_24h': round(
                (row['successes'] / row['total'] * 100) if row['total'] else 0, 1
            ),
        }


# --- Build Operations ---

def insert_build(result: BuildResult, db_path: Path = None) -> None:
    """Record a finished build."""
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO builds (
                build_id, source_ref, status, final_stage, image_ref,
                error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            result.build_trigger_ref, result.source_ref, result.status.value,
            result.final_stage.value, result.image_ref, result.error_message,
            _ts(result.started_at), _ts(result.finished_at)
        ))
        conn.commit()


def _build_from_row(row: sqlite3.Row) -> BuildResult:
    return BuildResult(
        build_trigger_ref=row['build_id'],
        source_ref=row['source_ref'],
        status=BuildStatus(row['status']),
        final_stage=BuildState(row['final_stage']),
        image_ref=row['image_ref'],
        error_message=row['error_message'],
        started_at=_parse_ts(row['started_at']),
        finished_at=_parse_ts(row['finished_at']),
    )


def get_build(build_id: str, db_path: Path = None) -> Optional[BuildResult]:
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM builds WHERE build_id = ?", (build_id,))
        row = cursor.fetchone()
        return _build_from_row(row) if row else None


def get_recent_builds(limit: int = 20, db_path: Path = None) -> List[BuildResult]:
    with get_db_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM builds
            ORDER BY started_at DESC, id DESC
            LIMIT ?
        """, (limit,))
        return [_build_from_row(row) for row in cursor.fetchall()]
