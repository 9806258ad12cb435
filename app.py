#!/usr/bin/env python3
"""
Canvas Placer - Flask control server for queued canvas placements
"""

import logging
import os
from pathlib import Path

from flask import Flask, jsonify, request

from canvas.client import DEFAULT_BASE_URL, CanvasClient
from canvas.tokens import TokenStore
from jobs.context import PlacementContext
from jobs.models import DEFAULT_PRIORITY, Pattern
from jobs.store import QueueStore
from jobs.validator import VALIDATION_INTERVAL_SECONDS

app = Flask(__name__)

# ===== Configuration =====

# Load config from file if it exists
_config_file = Path('./canvas_config.env')
if _config_file.exists():
    with open(_config_file, 'r') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                os.environ.setdefault(key.strip(), value.strip())

def get_env(key: str, default: str = "") -> str:
    """Get environment variable."""
    return os.environ.get(key, default)

def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, str(default)).lower()
    return val in ('true', '1', 'yes', 'on')

def get_env_int(key: str, default: int) -> int:
    """Get integer environment variable, falling back on bad values."""
    try:
        return int(os.environ.get(key, default))
    except ValueError:
        return default

CANVAS_BASE_URL = get_env("CANVAS_BASE_URL", DEFAULT_BASE_URL)
CANVAS_TOKEN_FILE = Path(get_env("CANVAS_TOKEN_FILE", "~/.canvas_tokens.json"))
QUEUE_FILE = Path(get_env("QUEUE_FILE", "./queue.json"))
AUTO_RESUME = get_env_bool("AUTO_RESUME", True)
VALIDATION_INTERVAL = get_env_int("VALIDATION_INTERVAL", VALIDATION_INTERVAL_SECONDS)
REQUEST_TIMEOUT = get_env_int("REQUEST_TIMEOUT", 30)
LOG_LEVEL = get_env("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s"
)
logger = logging.getLogger("canvas_placer")

# ===== Initialize Components =====

context = PlacementContext(
    client=CanvasClient(CANVAS_BASE_URL, timeout=REQUEST_TIMEOUT),
    token_store=TokenStore(CANVAS_TOKEN_FILE),
    queue_store=QueueStore(str(QUEUE_FILE)),
    validation_interval=VALIDATION_INTERVAL,
    auto_resume=AUTO_RESUME
)

# ===== Helper Functions =====

def is_local_network(ip):
    """Check if IP is from local network."""
    return ip is not None and (ip.startswith('192.168.') or ip == '127.0.0.1' or ip == 'localhost')

def job_not_found(job_id):
    return jsonify({"error": f"Job not found: {job_id}"}), 404

def bad_request(error):
    message = f"Missing field: {error.args[0]}" if isinstance(error, KeyError) else str(error)
    return jsonify({"error": message}), 400

@app.before_request
def limit_remote_addr():
    """Limit access to local network."""
    if not is_local_network(request.remote_addr):
        return jsonify({"error": "Access denied"}), 403

@app.before_request
def apply_background_events():
    """Reconcile background task results before serving."""
    context.tick()

# ===== Status =====

@app.route('/api/status', methods=['GET'])
def get_status():
    """Get engine status."""
    return jsonify(context.status())

@app.route('/api/messages', methods=['GET'])
def get_messages():
    """Get the recent status log."""
    return jsonify({"messages": list(context.messages)})

# ===== Queue =====

@app.route('/api/queue', methods=['GET'])
def get_queue():
    """List jobs in queue order."""
    return jsonify({"jobs": context.jobs()})

@app.route('/api/queue', methods=['POST'])
def add_job():
    """Queue an anchored pattern."""
    data = request.get_json(silent=True)

    if not data:
        return jsonify({"error": "No data provided"}), 400

    try:
        pattern = Pattern.from_dict(data.get('pattern', data))
        priority = int(data.get('priority', DEFAULT_PRIORITY))
        job = context.add_pattern(pattern, priority)
    except (KeyError, ValueError, TypeError) as e:
        return bad_request(e)

    return jsonify(job.to_dict()), 201

@app.route('/api/queue', methods=['DELETE'])
def clear_queue():
    """Remove every job."""
    context.clear()
    return jsonify({"success": True})

@app.route('/api/queue/<job_id>', methods=['DELETE'])
def remove_job(job_id):
    """Remove one job."""
    if context.queue.get(job_id) is None:
        return job_not_found(job_id)

    context.remove(job_id)
    return jsonify({"success": True})

@app.route('/api/queue/<job_id>/priority', methods=['POST'])
def set_job_priority(job_id):
    """Set job priority (1 highest, 5 lowest)."""
    if context.queue.get(job_id) is None:
        return job_not_found(job_id)

    data = request.get_json(silent=True) or {}
    try:
        job = context.set_priority(job_id, int(data['priority']))
    except (KeyError, ValueError, TypeError) as e:
        return bad_request(e)

    return jsonify(job.to_dict())

@app.route('/api/queue/<job_id>/move', methods=['POST'])
def move_job(job_id):
    """Swap a job with its neighbour."""
    if context.queue.get(job_id) is None:
        return job_not_found(job_id)

    data = request.get_json(silent=True) or {}
    try:
        moved = context.move(job_id, data['direction'])
    except (KeyError, ValueError) as e:
        return bad_request(e)

    return jsonify({"success": True, "moved": moved})

@app.route('/api/queue/<job_id>/pause', methods=['POST'])
def toggle_job_pause(job_id):
    """Toggle the per-job pause flag."""
    if context.queue.get(job_id) is None:
        return job_not_found(job_id)

    job = context.toggle_pause(job_id)
    return jsonify(job.to_dict())

@app.route('/api/queue/<job_id>/retry', methods=['POST'])
def retry_job(job_id):
    """Put a failed job back to pending."""
    if context.queue.get(job_id) is None:
        return job_not_found(job_id)

    try:
        job = context.retry(job_id)
    except ValueError as e:
        return bad_request(e)

    return jsonify(job.to_dict())

# ===== Background Tasks =====

@app.route('/api/run/start', methods=['POST'])
def start_run():
    """Start a placement run over pending jobs."""
    if not context.start_run():
        return jsonify({"success": False, "error": context.messages[-1]["message"]}), 409
    return jsonify({"success": True})

@app.route('/api/run/cancel', methods=['POST'])
def cancel_run():
    """Cancel the active run."""
    if not context.cancel_run():
        return jsonify({"success": False, "error": "No active run"}), 409
    return jsonify({"success": True})

@app.route('/api/run/pause', methods=['POST'])
def pause_run():
    """Hold the active run before its next pixel."""
    if not context.pause_run():
        return jsonify({"success": False, "error": "No active run to pause"}), 409
    return jsonify({"success": True})

@app.route('/api/run/resume', methods=['POST'])
def resume_run():
    """Resume a paused run."""
    if not context.resume_run():
        return jsonify({"success": False, "error": "No paused run"}), 409
    return jsonify({"success": True})

@app.route('/api/validator/start', methods=['POST'])
def start_validator():
    """Start periodic drift validation."""
    if not context.start_validation():
        return jsonify({"success": False, "error": "Validator already active or no tokens"}), 409
    return jsonify({"success": True})

@app.route('/api/validator/stop', methods=['POST'])
def stop_validator():
    """Stop periodic drift validation."""
    if not context.stop_validation():
        return jsonify({"success": False, "error": "Validator not active"}), 409
    return jsonify({"success": True})

@app.route('/api/canvas/refresh', methods=['POST'])
def refresh_canvas():
    """Fetch the canvas in the background."""
    context.refresh_canvas()
    return jsonify({"success": True}), 202

@app.route('/api/profile/refresh', methods=['POST'])
def refresh_profile():
    """Fetch the profile in the background."""
    context.refresh_profile()
    return jsonify({"success": True}), 202

# ===== Config =====

@app.route('/api/config/tokens', methods=['POST'])
def save_tokens():
    """Configure and persist tokens."""
    data = request.get_json(silent=True)

    if not data or not data.get('access_token'):
        return jsonify({"success": False, "error": "No access token provided"}), 400

    context.set_tokens(
        data['access_token'].strip(),
        (data.get('refresh_token') or '').strip() or None,
        base_url=(data.get('base_url') or '').strip() or None
    )
    return jsonify({"success": True, "message": "Tokens saved"})

# ===== Main =====

if __name__ == '__main__':
    context.load()
    if context.client.has_tokens():
        context.refresh_canvas()
        context.refresh_profile()
    else:
        logger.warning("No tokens configured - POST /api/config/tokens to set them")

    # Run Flask
    host = get_env("DASHBOARD_BIND", "0.0.0.0")
    port = get_env_int("DASHBOARD_PORT", 5000)
    app.run(host=host, port=port, debug=False)
