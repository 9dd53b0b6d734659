"""
HTTP API for ETL automation.

Read-only views over runs and builds, a manual trigger, and the
source-control webhook that starts image builds.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from etl_automation import __version__
from etl_automation.exceptions import EtlAutomationError, QueueUnavailableError
from etl_automation.models import JobRunRequest, PushEvent
from etl_automation.runner import db


logger = logging.getLogger("etl_automation.server")

SIGNATURE_HEADER = 'X-Hub-Signature-256'
EVENT_HEADER = 'X-GitHub-Event'


def verify_signature(token: str, body: bytes, signature: str) -> bool:
    """Check a ``sha256=<hex>`` HMAC signature over the raw request body."""
    if not signature or not signature.startswith('sha256='):
        return False
    expected = hmac.new(token.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len('sha256='):])


def _parse_occurred_at(value: str) -> datetime:
    """ISO 8601 timestamp; a trailing ``Z`` or no offset means UTC."""
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_push_event(headers, payload: dict) -> PushEvent:
    """
    Build a PushEvent from a webhook delivery.

    GitHub deliveries carry the event type in a header and the pushed
    commit in ``after``; anything else must send ``event_type`` and
    ``source_ref`` in the body, optionally with ``occurred_at``.

    Raises:
        ValueError: if ``occurred_at`` is not an ISO 8601 timestamp
    """
    event_type = headers.get(EVENT_HEADER) or payload.get('event_type') or ''
    source_ref = payload.get('source_ref') or payload.get('after') or payload.get('ref') or ''
    occurred_at = payload.get('occurred_at')
    if not occurred_at:
        return PushEvent(event_type=event_type, source_ref=source_ref)
    return PushEvent(event_type=event_type, source_ref=source_ref,
                     occurred_at=_parse_occurred_at(str(occurred_at)))


def create_app(service) -> Flask:
    app = Flask(__name__)
    config = service.config
    db_path = config.db_path

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'version': __version__, 'job': config.job.name})

    @app.route('/api/runs')
    def api_runs():
        """Get recent execution records."""
        try:
            limit = request.args.get('limit', 20, type=int)
            runs = db.get_recent_runs(limit=limit, db_path=db_path)
            return jsonify({'runs': [r.to_dict() for r in runs]})
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/runs/<record_id>')
    def api_run(record_id):
        """Get one execution record with the rest of its retry chain."""
        try:
            run = db.get_run(record_id, db_path=db_path)
            if not run:
                return jsonify({'error': 'Run not found'}), 404
            data = run.to_dict()
            data['attempts'] = [r.to_dict() for r in db.get_chain_runs(run.origin_ref, db_path=db_path)]
            return jsonify(data)
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/failures')
    def api_failures():
        """Get recent failures."""
        try:
            hours = request.args.get('hours', 24, type=int)
            failures = db.get_recent_failures(hours=hours, db_path=db_path)
            return jsonify({'failures': [r.to_dict() for r in failures]})
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/stats')
    def api_stats():
        try:
            stats = db.get_stats_summary(db_path=db_path)
            stats['queue'] = service.queue.depth()
            return jsonify(stats)
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/trigger', methods=['POST'])
    def api_trigger():
        """Manually enqueue a run of the job."""
        run_request = JobRunRequest(job_definition_ref=config.job.name)
        try:
            result = service.enqueue(run_request)
        except QueueUnavailableError as e:
            return jsonify({'error': str(e)}), 503

        if not result.accepted:
            return jsonify({'accepted': False, 'reason': result.reason}), 409
        return jsonify({'accepted': True, 'request_id': run_request.request_id}), 202

    @app.route('/api/builds')
    def api_builds():
        try:
            limit = request.args.get('limit', 20, type=int)
            builds = db.get_recent_builds(limit=limit, db_path=db_path)
            return jsonify({'builds': [b.to_dict() for b in builds]})
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/builds/<build_id>')
    def api_build(build_id):
        try:
            build = db.get_build(build_id, db_path=db_path)
            if not build:
                return jsonify({'error': 'Build not found'}), 404
            return jsonify(build.to_dict())
        except Exception as e:
            return jsonify({'error': str(e)}), 500

    @app.route('/api/webhooks/push', methods=['POST'])
    def api_webhook_push():
        """Receive a source-control event and start a build for pushes."""
        if service.pipeline is None:
            return jsonify({'error': 'Build pipeline not configured'}), 503

        try:
            token = service.webhook_token
        except EtlAutomationError as e:
            return jsonify({'error': str(e)}), 500
        if token and not verify_signature(token, request.get_data(), request.headers.get(SIGNATURE_HEADER, '')):
            logger.warning("Rejected webhook delivery with invalid signature")
            return jsonify({'error': 'Invalid signature'}), 401

        payload = request.get_json(silent=True) or {}
        try:
            event = parse_push_event(request.headers, payload)
        except ValueError as e:
            return jsonify({'error': f'Invalid occurred_at: {e}'}), 400
        if event.event_type.strip().lower() != 'push':
            return jsonify({'status': 'ignored', 'reason': f"event '{event.event_type}' does not start builds"})

        branch_ref = f"refs/heads/{config.build.branch}"
        if payload.get('ref') and payload['ref'] != branch_ref:
            return jsonify({'status': 'ignored', 'reason': f"push to {payload['ref']}, watching {branch_ref}"})
        if not event.source_ref:
            return jsonify({'error': 'No source ref in payload'}), 400

        service.submit_build(event)
        logger.info(f"Accepted push of {event.source_ref}")
        return jsonify({'status': 'accepted', 'source_ref': event.source_ref}), 202

    return app
