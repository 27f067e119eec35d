from flask import Flask, jsonify, request
from services.errors import public_error_message
from services.geoip import lookup_geo
from services.issue_store import get_issue_store
from services.records import (
    BLOCKED_LABELS,
    CONFIG_LABELS,
    CONFIG_TITLE,
    DELETED_BODY,
    DELETED_TITLE,
    DIRECT_REFERRER,
    MESSAGE_LIST_LABELS,
    NOT_PROVIDED,
    VISIT_LABELS,
    BlockedContentRecord,
    MessageRecord,
    VisitRecord,
    decode_config,
    default_config,
    encode_config,
    iso_timestamp,
    normalize_config_update,
)
from services.visit_stats import aggregate_visits, empty_visit_stats

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

app = Flask(__name__)
app.json.ensure_ascii = False

# Global request body limit (bytes). Form posts here are small.
try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(1024 * 1024)).strip()),
    )
except Exception:
    app.config.setdefault('MAX_CONTENT_LENGTH', 1024 * 1024)


TOKEN_MISSING = 'GitHub token not configured'

# One method per endpoint; OPTIONS is always accepted for CORS preflight.
_ENDPOINT_METHODS: Dict[str, str] = {
    '/api/create-issue': 'POST',
    '/api/close-issue': 'POST',
    '/api/delete-issue': 'POST',
    '/api/get-issues': 'GET',
    '/api/track-visit': 'POST',
    '/api/get-visits': 'GET',
    '/api/log-blocked': 'POST',
    '/api/get-blocked': 'GET',
    '/api/get-config': 'GET',
    '/api/update-config': 'POST',
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@app.after_request
def _cors_headers(resp):
    method = _ENDPOINT_METHODS.get(request.path, 'GET')
    resp.headers['Access-Control-Allow-Origin'] = '*'
    resp.headers['Access-Control-Allow-Methods'] = f'{method}, OPTIONS'
    resp.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return resp


@app.errorhandler(405)
def _method_not_allowed(_e):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(413)
def _payload_too_large(_e):
    return jsonify({'error': 'Request body too large'}), 413


def _preflight():
    return app.response_class('', status=200)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _client_ip() -> str:
    forwarded = (
        request.headers.get('X-Vercel-Forwarded-For')
        or request.headers.get('X-Forwarded-For')
        or request.headers.get('X-Real-IP')
        or ''
    )
    ip = forwarded.split(',')[0].strip() or (request.remote_addr or '').strip() or 'unknown'
    return ip.replace('::ffff:', '')


def _user_agent() -> str:
    return (request.headers.get('User-Agent') or '').strip() or 'unknown'


def _issue_number(payload: Dict[str, Any]) -> Tuple[Optional[int], Optional[str]]:
    raw = payload.get('issueNumber')
    if raw is None or raw == '' or raw == 0:
        return None, 'Missing issueNumber'
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return None, 'Invalid issueNumber'
    if n <= 0:
        return None, 'Invalid issueNumber'
    return n, None


def _server_error(e: Exception):
    return jsonify({'error': public_error_message(e)}), 500


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"ok": True}), 200


# Whisper messages


@app.route('/api/create-issue', methods=['POST', 'OPTIONS'])
def create_issue():
    if request.method == 'OPTIONS':
        return _preflight()

    payload = _json_body()
    name = str(payload.get('name') or '').strip()
    email = str(payload.get('email') or '').strip()
    message = str(payload.get('message') or '').strip()
    if not name or not message:
        return jsonify({'error': 'Missing required fields'}), 400

    store = get_issue_store()
    if not store.has_credentials():
        return jsonify({'error': TOKEN_MISSING}), 500

    record = MessageRecord(name=name, email=email or NOT_PROVIDED, message=message, timestamp=iso_timestamp(_now()))
    draft = record.to_issue()
    try:
        issue = store.create_issue(draft.title, draft.body, draft.labels)
    except Exception as e:
        app.logger.exception("Error creating whisper issue")
        return _server_error(e)

    return jsonify({
        'success': True,
        'issueNumber': issue.get('number'),
        'issueUrl': issue.get('html_url'),
    }), 200


@app.route('/api/close-issue', methods=['POST', 'OPTIONS'])
def close_issue():
    if request.method == 'OPTIONS':
        return _preflight()

    number, err = _issue_number(_json_body())
    if err:
        return jsonify({'error': err}), 400

    store = get_issue_store()
    if not store.has_credentials():
        return jsonify({'error': TOKEN_MISSING}), 500

    try:
        issue = store.update_issue(number, state='closed')
    except Exception as e:
        app.logger.exception("Error closing issue #%s", number)
        return _server_error(e)

    return jsonify({'success': True, 'issueNumber': issue.get('number', number), 'state': issue.get('state')}), 200


@app.route('/api/delete-issue', methods=['POST', 'OPTIONS'])
def delete_issue():
    if request.method == 'OPTIONS':
        return _preflight()

    number, err = _issue_number(_json_body())
    if err:
        return jsonify({'error': err}), 400

    store = get_issue_store()
    if not store.has_credentials():
        return jsonify({'error': TOKEN_MISSING}), 500

    try:
        # Fails with the store's message when the issue does not exist.
        store.get_issue(number)
        issue = store.update_issue(number, state='closed', title=DELETED_TITLE, body=DELETED_BODY)
    except Exception as e:
        app.logger.exception("Error deleting issue #%s", number)
        return _server_error(e)

    return jsonify({
        'success': True,
        'issueNumber': issue.get('number', number),
        'state': issue.get('state'),
        'message': 'Issue 已成功刪除',
    }), 200


@app.route('/api/get-issues', methods=['GET', 'OPTIONS'])
def get_issues():
    if request.method == 'OPTIONS':
        return _preflight()

    try:
        issues = get_issue_store().list_issues(MESSAGE_LIST_LABELS)
    except Exception as e:
        app.logger.exception("Error fetching whisper issues")
        return _server_error(e)

    messages = [MessageRecord.from_issue(i).to_dict() for i in issues]
    return jsonify({'success': True, 'messages': messages}), 200


# Visits


@app.route('/api/track-visit', methods=['POST', 'OPTIONS'])
def track_visit():
    if request.method == 'OPTIONS':
        return _preflight()

    payload = _json_body()
    store = get_issue_store()
    if not store.has_credentials():
        # Never break page loads over analytics.
        return jsonify({'success': True, 'tracked': False, 'message': TOKEN_MISSING}), 200

    client_ip = _client_ip()
    geo = lookup_geo(client_ip)
    now = _now()
    record = VisitRecord(
        timestamp=iso_timestamp(now),
        path=str(payload.get('path') or '/'),
        referrer=str(payload.get('referrer') or DIRECT_REFERRER),
        client_address=client_ip,
        country=geo.country,
        region=geo.region,
        city=geo.city,
        user_agent=_user_agent(),
    )
    draft = record.to_issue(now)
    try:
        issue = store.create_issue(draft.title, draft.body, draft.labels)
    except Exception as e:
        app.logger.exception("Error tracking visit")
        return jsonify({'success': True, 'tracked': False, 'error': public_error_message(e)}), 200

    return jsonify({
        'success': True,
        'tracked': True,
        'issueNumber': issue.get('number'),
        'country': geo.country,
        'region': geo.region,
        'city': geo.city,
    }), 200


@app.route('/api/get-visits', methods=['GET', 'OPTIONS'])
def get_visits():
    if request.method == 'OPTIONS':
        return _preflight()

    try:
        issues = get_issue_store().list_issues(VISIT_LABELS)
    except Exception as e:
        app.logger.exception("Error fetching visits")
        body: Dict[str, Any] = {'success': True, 'degraded': True, 'error': public_error_message(e)}
        body.update(empty_visit_stats())
        return jsonify(body), 200

    body = {'success': True}
    body.update(aggregate_visits(issues, now=_now()))
    return jsonify(body), 200


# Blocked content


@app.route('/api/log-blocked', methods=['POST', 'OPTIONS'])
def log_blocked():
    if request.method == 'OPTIONS':
        return _preflight()

    payload = _json_body()
    message = payload.get('message')
    if not message or not isinstance(message, str):
        return jsonify({'error': 'Missing message'}), 400

    store = get_issue_store()
    if not store.has_credentials():
        return jsonify({'success': True, 'logged': False, 'message': TOKEN_MISSING}), 200

    matches = payload.get('matches')
    words = []
    if isinstance(matches, list):
        for m in matches:
            if isinstance(m, dict) and m.get('word'):
                words.append(str(m['word']))

    client_ip = _client_ip()
    geo = lookup_geo(client_ip)
    now = _now()
    record = BlockedContentRecord(
        timestamp=iso_timestamp(now),
        message=message,
        page=str(payload.get('path') or '/'),
        name=str(payload.get('name') or ''),
        matched_words=words,
        client_address=client_ip,
        country=geo.country,
        region=geo.region,
        city=geo.city,
        user_agent=_user_agent(),
    )
    draft = record.to_issue(now)
    try:
        issue = store.create_issue(draft.title, draft.body, draft.labels)
    except Exception as e:
        app.logger.exception("Error logging blocked content")
        return jsonify({'success': True, 'logged': False, 'error': public_error_message(e)}), 200

    return jsonify({
        'success': True,
        'logged': True,
        'issueNumber': issue.get('number'),
        'issueUrl': issue.get('html_url'),
    }), 200


@app.route('/api/get-blocked', methods=['GET', 'OPTIONS'])
def get_blocked():
    if request.method == 'OPTIONS':
        return _preflight()

    try:
        issues = get_issue_store().list_issues(BLOCKED_LABELS)
    except Exception as e:
        app.logger.exception("Error fetching blocked logs")
        return _server_error(e)

    logs = [BlockedContentRecord.from_issue(i).to_log_entry() for i in issues]
    return jsonify({'success': True, 'logs': logs}), 200


# System configuration


@app.route('/api/get-config', methods=['GET', 'OPTIONS'])
def get_config():
    if request.method == 'OPTIONS':
        return _preflight()

    try:
        issues = get_issue_store().list_issues(CONFIG_LABELS, per_page=1)
    except Exception:
        # The site must keep working with defaults.
        app.logger.exception("Error fetching config")
        return jsonify({'success': True, 'config': default_config()}), 200

    if not issues:
        return jsonify({'success': True, 'config': default_config()}), 200

    config = decode_config(issues[0].get('body'))
    if config is None:
        app.logger.warning("Config issue #%s has no parsable JSON block", issues[0].get('number'))
        config = default_config()
    return jsonify({'success': True, 'config': config}), 200


@app.route('/api/update-config', methods=['POST', 'OPTIONS'])
def update_config():
    if request.method == 'OPTIONS':
        return _preflight()

    config = normalize_config_update(_json_body())
    store = get_issue_store()
    if not store.has_credentials():
        return jsonify({'error': TOKEN_MISSING}), 500

    body = encode_config(config)
    try:
        existing = store.list_issues(CONFIG_LABELS, per_page=1)
        if existing:
            number = existing[0].get('number')
            store.update_issue(number, body=body)
            return jsonify({'success': True, 'updated': True, 'issueNumber': number}), 200

        issue = store.create_issue(CONFIG_TITLE, body, CONFIG_LABELS)
    except Exception as e:
        app.logger.exception("Error updating config")
        return _server_error(e)

    return jsonify({'success': True, 'created': True, 'issueNumber': issue.get('number')}), 200


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT') or 5000))
