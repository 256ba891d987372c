import logging
from functools import wraps
from flask import g, has_request_context, jsonify
from talklink.extensions import db
from talklink.services.talk_errors import TalkServiceError

logger = logging.getLogger(__name__)

def collect_warning(message):
    """Queues a user-facing warning for the JSON response of the current request."""
    if has_request_context():
        g.setdefault('talk_warnings', []).append(message)

def reset_warnings():
    g.talk_warnings = []

def request_warnings():
    return list(g.get('talk_warnings', []))

def handle_talk_errors(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except TalkServiceError as e:
            db.session.rollback()
            logger.warning("Talk request failed: %s", e)
            if e.is_authentication_error:
                # Client should send the user to the settings
                return jsonify({'error': e.message, 'open_settings': True}), 401
            return jsonify({'error': e.message, 'status_code': e.status_code}), 502

    return decorated
