"""
Health and metrics endpoints for the volume scaler controller.
"""
from datetime import datetime, timezone
import logging
import threading

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = logging.getLogger(__name__)

# a pass older than this many intervals marks the controller degraded
STALE_INTERVALS = 3


def create_app(reconciler) -> Flask:
    """Build the monitoring app for a NodeReconciler."""
    app = Flask(__name__)

    @app.route('/metrics')
    def get_metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    @app.route('/health')
    def health_check():
        """Health check endpoint"""
        tick = reconciler.last_tick
        now = datetime.now(timezone.utc)
        if tick.started_at is None:
            return jsonify({'status': 'starting', 'timestamp': now.isoformat()})

        checks = {
            'last_tick': 'ok' if tick.ok or tick.finished_at is None else 'failed',
            'freshness': 'ok',
        }
        max_age = reconciler.config.poll_interval * STALE_INTERVALS
        if (now - tick.started_at).total_seconds() > max_age:
            checks['freshness'] = 'stale'

        status = 'healthy' if all(v == 'ok' for v in checks.values()) else 'degraded'
        body = {
            'status': status,
            'timestamp': now.isoformat(),
            'last_tick': {
                'started_at': tick.started_at.isoformat(),
                'finished_at': tick.finished_at.isoformat() if tick.finished_at else None,
                'volumes': tick.volumes,
                'error': tick.error or None,
            },
            'checks': checks,
        }
        return jsonify(body), (200 if status == 'healthy' else 503)

    return app


def start_monitoring_server(reconciler, host: str, port: int) -> threading.Thread:
    """Serve the monitoring app from a daemon thread."""
    app = create_app(reconciler)

    def serve():
        try:
            app.run(host=host, port=port, debug=False, use_reloader=False)
        except OSError as e:
            logger.error(f"Monitoring server failed to start: {e}")

    thread = threading.Thread(target=serve, name="monitoring", daemon=True)
    thread.start()
    logger.info(f"Serving /health and /metrics on {host}:{port}")
    return thread
