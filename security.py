import hmac
import logging
import re
from functools import wraps

from flask import current_app, jsonify, request, session

import database
from errors import NotRegistered
from team_logic import BATCHES

ROLL_NO_PATTERN = re.compile(r'^[A-Za-z0-9]{5,20}$')

logger = logging.getLogger(__name__)


def is_valid_roll_no(roll_no):
    return isinstance(roll_no, str) and bool(ROLL_NO_PATTERN.match(roll_no))


def is_valid_batch(batch):
    return batch in BATCHES


def is_valid_choices(choices):
    if not isinstance(choices, list) or len(choices) != 2:
        return False
    return all(is_valid_roll_no(c) for c in choices)


def sign_in(roll_no):
    """
    Attach a verified student to the session.

    Called once the external portal has confirmed the student's identity.
    Only pre-registered students may sign in; raises NotRegistered otherwise.
    """
    student = database.get_student(roll_no)
    if not student:
        logger.info(f"Sign-in refused for unregistered roll number {roll_no}")
        raise NotRegistered('Not registered. Contact admin.')

    session.clear()
    session['roll_no'] = student['roll_no']
    session['batch'] = student['batch']
    return student


def sign_out():
    session.clear()


def student_required(view):
    """Reject requests without a signed-in student; exposes roll_no and batch as kwargs."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        roll_no = session.get('roll_no')
        batch = session.get('batch')
        if not is_valid_roll_no(roll_no) or not is_valid_batch(batch):
            return jsonify({'error': 'Not signed in'}), 401
        return view(*args, roll_no=roll_no, batch=batch, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get('ADMIN_KEY')
        provided = request.headers.get('X-Admin-Key', '')
        if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning(f"Admin access denied from {request.remote_addr}")
            return jsonify({'error': 'Admin access denied'}), 403
        return view(*args, **kwargs)
    return wrapped
