"""
ETL automation for a data warehouse.

Runs a containerised transformation job on a cron schedule against an
elastic compute pool, alerts operators when a run fails, and rebuilds the
job image whenever its source repository receives a push.

- runner/: scheduling, queueing, execution, failure watching, alerting
- build/: source-triggered image build pipeline and image registry
"""

__version__ = "0.1.0"
