#!/usr/bin/env python3
"""
Command line entry point.

Usage:
    etl-automation serve
    etl-automation validate
    etl-automation trigger
    etl-automation build --ref refs/heads/master
    etl-automation runs --limit 10
    etl-automation failures --hours 48
"""

import argparse
import logging
import sys
from pathlib import Path

from etl_automation.config import AppConfig, load_config, validate_secrets
from etl_automation.exceptions import EtlAutomationError
from etl_automation.models import JobRunRequest, PushEvent, utc_now
from etl_automation.runner import db
from etl_automation.runner.capacity import ManagedComputeEnvironment
from etl_automation.runner.queue import JobQueue
from etl_automation.secrets import EnvCredentialBroker


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def cmd_serve(config: AppConfig, broker, args) -> int:
    from etl_automation.server import create_app
    from etl_automation.service import EtlAutomation

    validate_secrets(config, broker)
    service = EtlAutomation(config, credentials=broker)
    service.start()
    try:
        app = create_app(service)
        app.run(host=config.server_host, port=config.server_port, debug=False)
    finally:
        service.stop()
    return 0


def cmd_validate(config: AppConfig, broker, args) -> int:
    validate_secrets(config, broker)
    job = config.job
    print(f"Job:       {job.name} ({job.image_ref})")
    print(f"Command:   {' '.join(job.command)}")
    print(f"Resources: {job.resource_request.vcpus} vCPUs, {job.resource_request.memory_mb} MB")
    print(f"Attempts:  {job.max_attempts}, timeout {job.timeout_seconds}s")
    print(f"Pool:      {config.pool.min_units}-{config.pool.max_units} vCPUs ({config.pool.unit_type})")
    print(f"Schedule:  {config.schedule.expression} (UTC)")
    moment = utc_now()
    for _ in range(args.count):
        moment = config.schedule.next_after(moment)
        if moment is None:
            break
        print(f"  next -> {moment.isoformat()}")
    print(f"Builds:    {config.build.repo_url or 'disabled'}")
    print("Configuration OK")
    return 0


def cmd_trigger(config: AppConfig, broker, args) -> int:
    queue = JobQueue(config.pool, ManagedComputeEnvironment(config.pool), [config.job], db_path=config.db_path)
    request = JobRunRequest(job_definition_ref=config.job.name)
    result = queue.enqueue(request)
    if not result.accepted:
        print(f"Rejected: {result.reason}")
        return 1
    print(f"Enqueued request {request.request_id}")
    return 0


def cmd_build(config: AppConfig, broker, args) -> int:
    from etl_automation.service import EtlAutomation

    service = EtlAutomation(config, credentials=broker)
    if service.pipeline is None:
        print("Build pipeline is not configured (set ETL_GITHUB_REPO_URL)")
        return 1
    result = service.pipeline.on_push_event(PushEvent(event_type='push', source_ref=args.ref))
    if result.published:
        print(f"Published {result.image_ref}")
        return 0
    print(f"Build failed: {result.error_message}")
    return 1


def cmd_runs(config: AppConfig, broker, args) -> int:
    runs = db.get_recent_runs(limit=args.limit, db_path=config.db_path)
    if not runs:
        print("No runs recorded")
    for run in runs:
        print(
            f"{run.started_at.isoformat()}  {run.terminal_state.value:<10} "
            f"attempt {run.attempt_number}  {run.duration_seconds:7.1f}s  {run.record_id}"
        )
    return 0


def cmd_failures(config: AppConfig, broker, args) -> int:
    failures = db.get_recent_failures(hours=args.hours, db_path=config.db_path)
    print(f"{len(failures)} failure(s) in the last {args.hours} hours")
    for run in failures:
        print(f"{run.ended_at.isoformat()}  {run.terminal_state.value:<10} {run.log_ref}")
        if run.error_message:
            print(f"    {run.error_message}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog='etl-automation', description='Scheduled ETL job runner')
    parser.add_argument('--env-file', type=Path, help='.env file to load (default ./.env)')
    parser.add_argument('--secrets-file', type=Path, help='.env-format file holding SECRET_* values')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('serve', help='Run scheduler, workers and HTTP API')

    validate = subparsers.add_parser('validate', help='Check configuration and secrets')
    validate.add_argument('--count', type=int, default=5, help='Upcoming fire times to show')

    subparsers.add_parser('trigger', help='Enqueue a run now')

    build = subparsers.add_parser('build', help='Build and publish the job image')
    build.add_argument('--ref', required=True, help='Commit or ref to build')

    runs = subparsers.add_parser('runs', help='Show recent execution records')
    runs.add_argument('--limit', type=int, default=20)

    failures = subparsers.add_parser('failures', help='Show recent failures')
    failures.add_argument('--hours', type=int, default=24)

    args = parser.parse_args(argv)

    commands = {
        'serve': cmd_serve,
        'validate': cmd_validate,
        'trigger': cmd_trigger,
        'build': cmd_build,
        'runs': cmd_runs,
        'failures': cmd_failures,
    }

    try:
        config = load_config(env_file=args.env_file)
        setup_logging(config.log_level)
        broker = EnvCredentialBroker(env_file=args.secrets_file)
        return commands[args.command](config, broker, args)
    except EtlAutomationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
