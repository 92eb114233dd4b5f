import json
import sqlite3
import time

from flask import Blueprint, Response, current_app, g, jsonify, session

from . import realtime
from .auth import login_required, serialize_student
from .channels import serialize_channel
from .db import query_db, rows_to_dicts, utcnow_iso
from .errors import ModNetError, NotFoundError, ValidationError, json_body
from .modules import enrolled_modules
from .storage import attachments

bp = Blueprint('account', __name__, url_prefix='/account')

DELETED_USER_CONTENT = '[deleted user]'


@bp.route('/export')
@login_required
def export_data():
    """Handles the GDPR data export: everything stored about the student, as a download."""
    student_id = g.student['id']
    channels = query_db(
        '''SELECT c.*, cm.joined_at FROM channels c JOIN channel_members cm ON cm.channel_id = c.id
           WHERE cm.student_id = ? ORDER BY c.name''',
        (student_id,),
    )
    payload = {
        'profile': serialize_student(g.student),
        'modules': enrolled_modules(student_id),
        'channels': [serialize_channel(r) for r in channels],
        'moduleMessages': rows_to_dicts(query_db(
            'SELECT * FROM messages WHERE userid = ? ORDER BY created_at', (student_id,))),
        'groupMessages': rows_to_dicts(query_db(
            'SELECT * FROM group_messages WHERE userid = ? ORDER BY created_at', (student_id,))),
        'reports': rows_to_dicts(query_db(
            'SELECT * FROM reports WHERE reported_by = ? ORDER BY created_at', (student_id,))),
        'exportedAt': utcnow_iso(),
    }

    filename = f'modnet-data-export-{int(time.time() * 1000)}.json'
    return Response(
        json.dumps(payload, indent=2),
        mimetype='application/json',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


def _best_effort(label, query, args):
    """Run one cleanup statement; a failure is logged and the deletion carries on."""
    try:
        query_db(query, args, commit=True)
    except sqlite3.Error as e:
        current_app.logger.error('Failed to %s: %s', label, e)


@bp.route('', methods=['DELETE'])
def delete_account():
    """
    Handles erasing the logged-in student's account. Messages are kept for
    the rest of the room but anonymised; everything else tied to the student
    goes. The steps run in order and are not rolled back.
    """
    data = json_body()
    if data.get('confirm') != 'DELETE':
        raise ValidationError('Please type DELETE to confirm account deletion.')

    user_id = session.get('user_id')
    student = query_db('SELECT * FROM students WHERE userid = ?', (user_id,), one=True) if user_id else None
    if student is None:
        raise NotFoundError('Student profile not found')

    student_id = student['id']
    current_app.logger.info('Starting account deletion for user %s', user_id)

    anonymize = '''UPDATE {} SET userid = NULL, content = ?, attachment_url = NULL, attachment_name = NULL
                   WHERE userid = ?'''
    _best_effort('anonymize messages', anonymize.format('messages'), (DELETED_USER_CONTENT, student_id))
    _best_effort('anonymize group messages', anonymize.format('group_messages'),
                 (DELETED_USER_CONTENT, student_id))

    try:
        removed = attachments().remove_owner(user_id)
        current_app.logger.info('Removed %s attachment(s) for user %s', removed, user_id)
    except (OSError, ModNetError) as e:
        current_app.logger.error('Storage cleanup error: %s', e)

    _best_effort('delete module enrolments', 'DELETE FROM user_modules WHERE userid = ?', (student_id,))
    _best_effort('delete channel memberships', 'DELETE FROM channel_members WHERE student_id = ?', (student_id,))
    _best_effort('delete reports', 'DELETE FROM reports WHERE reported_by = ?', (student_id,))
    realtime.evict_student(student_id)

    try:
        query_db('DELETE FROM students WHERE id = ?', (student_id,), commit=True)
    except sqlite3.Error as e:
        current_app.logger.error('Failed to delete profile: %s', e)
        raise ModNetError('Failed to delete profile', 500)

    try:
        query_db('DELETE FROM otp_codes WHERE email = ?', (student['email'],), commit=True)
        query_db('DELETE FROM users WHERE id = ?', (user_id,), commit=True)
    except sqlite3.Error as e:
        current_app.logger.error('Failed to delete auth user: %s', e)
        raise ModNetError('Failed to delete authentication', 500)

    session.clear()
    current_app.logger.info('Account deleted for user %s', user_id)
    return jsonify({'success': True, 'message': 'Account deleted successfully'})
