#!/usr/bin/env python3
"""
Web server module for the segment recorder.
Provides a small operator API to inspect sessions and force a drain.
"""

import logging
import time
from datetime import datetime
from typing import Any, Optional, Tuple, Union

from flask import Flask, jsonify, Response

from config import RECORDING_TZ, WEB_HOST, WEB_PORT
from exceptions import SegmentRecorderError, SessionNotFoundError
from models import SessionState

logger = logging.getLogger(__name__)
app = Flask(__name__)

# Global reference to the session controller (set by main.py)
session_controller = None


def set_session_controller(controller: Any) -> None:
    """Set the session controller instance for the web server to use."""
    global session_controller
    session_controller = controller


def _require_controller():
    if session_controller is None:
        raise SegmentRecorderError("Session controller not available")
    return session_controller


@app.route('/api/health')
def api_health() -> Response:
    """API endpoint for liveness, per-state session counts and running encoders."""
    controller = _require_controller()
    sessions = controller.store.all()
    counts = {state.value: 0 for state in SessionState}
    for session in sessions:
        counts[session.state.value] += 1

    now = time.monotonic()
    encoders = [
        {
            'pid': job.pid,
            'session_id': job.segment.session_id,
            'sequence_index': job.segment.sequence_index,
            'age_seconds': round(now - job.started_at, 1),
            'finishing': job.finished,
        }
        for job in controller.supervisor.active_jobs()
    ]

    return jsonify({
        'status': 'ok',
        'time': datetime.now(RECORDING_TZ).isoformat(),
        'sessions': counts,
        'active_encoders': len(encoders),
        'encoders': encoders,
    })


@app.route('/api/sessions')
def api_sessions() -> Response:
    """API endpoint listing every known session."""
    controller = _require_controller()
    sessions = sorted(controller.store.all(), key=lambda s: s.created_at)
    return jsonify({
        'success': True,
        'sessions': [session.to_dict() for session in sessions],
    })


@app.route('/api/sessions/<session_id>')
def api_session_detail(session_id: str) -> Response:
    """API endpoint for one session, including its segments and history."""
    session = _require_controller().store.require(session_id)
    return jsonify({
        'success': True,
        'session': session.to_dict(),
    })


@app.route('/api/sessions/<session_id>/end', methods=['POST'])
def api_end_session(session_id: str) -> Union[Response, Tuple[Response, int]]:
    """API endpoint to force a session to drain."""
    controller = _require_controller()
    session = controller.store.require(session_id)

    if controller.session_end(session_id, reason="operator"):
        logger.info(f"Operator ended session {session_id}")
        return jsonify({
            'success': True,
            'message': 'Session drain started',
            'state': session.state.value,
        })

    return jsonify({
        'success': False,
        'error': f'Session is already {session.state.value}',
    }), 409


@app.errorhandler(SessionNotFoundError)
def handle_session_not_found(error: SessionNotFoundError) -> Tuple[Response, int]:
    """Handle lookups of unknown sessions."""
    return jsonify({
        'success': False,
        'error': error.message,
        'type': 'not_found'
    }), 404


@app.errorhandler(SegmentRecorderError)
def handle_recorder_error(error: SegmentRecorderError) -> Tuple[Response, int]:
    """Handle all other segment recorder errors."""
    logger.error(f"Segment recorder error: {error.message}", exc_info=True)
    return jsonify({
        'success': False,
        'error': error.message,
        'type': 'application_error'
    }), 500


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the Flask web server."""
    host = host or WEB_HOST
    port = port or WEB_PORT
    app.run(host=host, port=port, debug=False, use_reloader=False)
