from flask import Blueprint, current_app, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from . import realtime
from .auth import admin_required, config_limit
from .channels import get_channel, serialize_channel
from .db import query_db, rows_to_dicts, utcnow_iso
from .errors import AuthError, ConflictError, NotFoundError, ValidationError, json_body, text_field
from .extensions import limiter
from .messaging import soft_delete
from .modules import MODULE_WITH_COURSE, get_course, serialize_module
from .rooms import MESSAGE_TABLES, room_for

bp = Blueprint('admin', __name__, url_prefix='/admin')
limiter.limit(config_limit('ADMIN_RATE_LIMIT'))(bp)

REPORT_STATUSES = ('pending', 'reviewed', 'dismissed', 'message_deleted')

REPORTS_QUERY = '''
    SELECT r.*, s.displayname AS reporter_name,
           CASE r.message_type WHEN 'module' THEN m.content ELSE gm.content END AS message_content
    FROM reports r
    LEFT JOIN students s ON s.id = r.reported_by
    LEFT JOIN messages m ON r.message_type = 'module' AND m.id = r.message_id
    LEFT JOIN group_messages gm ON r.message_type = 'group' AND gm.id = r.message_id
'''


def _hash_admin_password(state):
    password = state.app.config.get('ADMIN_PASSWORD')
    state.app.extensions['modnet.admin_password_hash'] = generate_password_hash(password) if password else None


bp.record_once(_hash_admin_password)


def _required_name(data, label):
    name = text_field(data, 'name')
    if not name:
        raise ValidationError(f'{label} name is required')
    return name


@bp.route('/login', methods=['POST'])
@limiter.limit(config_limit('ADMIN_LOGIN_RATE_LIMIT'))
def login():
    """Handles the admin dashboard sign-in."""
    data = json_body()
    email = text_field(data, 'email').lower()
    password = data.get('password')
    password_hash = current_app.extensions.get('modnet.admin_password_hash')

    if (email != current_app.config['ADMIN_EMAIL'].lower() or password_hash is None
            or not isinstance(password, str) or not check_password_hash(password_hash, password)):
        current_app.logger.warning('Failed admin login for %s', email or '<blank>')
        raise AuthError('Invalid admin credentials')

    session.clear()
    session['role'] = 'admin'
    session['admin_email'] = email
    return jsonify({'success': True, 'email': email, 'role': 'admin'})


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})


# Channels

@bp.route('/channels')
@admin_required
def list_channels():
    rows = query_db('SELECT * FROM channels ORDER BY name, id')
    return jsonify([serialize_channel(r) for r in rows])


@bp.route('/channels', methods=['POST'])
@admin_required
def create_channel():
    data = json_body()
    cur = query_db('INSERT INTO channels (name, description, is_private, created_at) VALUES (?, ?, ?, ?)',
                   (_required_name(data, 'Channel'), text_field(data, 'description') or None,
                    int(bool(data.get('is_private'))), utcnow_iso()), commit=True)
    return jsonify(serialize_channel(get_channel(cur.lastrowid))), 201


@bp.route('/channels/<int:channel_id>', methods=['PUT'])
@admin_required
def update_channel(channel_id):
    channel = get_channel(channel_id)
    data = json_body()
    name = _required_name(data, 'Channel') if 'name' in data else channel['name']
    description = text_field(data, 'description') or None if 'description' in data else channel['description']
    is_private = int(bool(data['is_private'])) if 'is_private' in data else channel['is_private']

    query_db('UPDATE channels SET name = ?, description = ?, is_private = ? WHERE id = ?',
             (name, description, is_private, channel_id), commit=True)
    return jsonify(serialize_channel(get_channel(channel_id)))


@bp.route('/channels/<int:channel_id>', methods=['DELETE'])
@admin_required
def delete_channel(channel_id):
    """Handles removing a channel and its memberships. Messages are retained."""
    get_channel(channel_id)
    query_db('DELETE FROM channel_members WHERE channel_id = ?', (channel_id,), commit=True)
    query_db('DELETE FROM channels WHERE id = ?', (channel_id,), commit=True)
    realtime.close_room(room_for('group', channel_id))
    current_app.logger.info('Channel %s deleted', channel_id)
    return jsonify({'success': True})


# Profile images

@bp.route('/profile-images')
@admin_required
def list_profile_images():
    rows = query_db('SELECT * FROM profile_images ORDER BY created_at DESC, id DESC')
    return jsonify(rows_to_dicts(rows))


@bp.route('/profile-images', methods=['POST'])
@admin_required
def add_profile_image():
    data = json_body()
    image_url = text_field(data, 'image_url')
    if not image_url:
        raise ValidationError('image_url is required')

    cur = query_db('INSERT INTO profile_images (image_url, is_active, created_at) VALUES (?, ?, ?)',
                   (image_url, int(bool(data.get('is_active', True))), utcnow_iso()), commit=True)
    row = query_db('SELECT * FROM profile_images WHERE id = ?', (cur.lastrowid,), one=True)
    return jsonify(dict(row)), 201


@bp.route('/profile-images/<int:image_id>', methods=['DELETE'])
@admin_required
def delete_profile_image(image_id):
    cur = query_db('DELETE FROM profile_images WHERE id = ?', (image_id,), commit=True)
    if cur.rowcount == 0:
        raise NotFoundError('Profile image not found')
    return jsonify({'success': True})


# Users, modules, courses

@bp.route('/users')
@admin_required
def list_users():
    rows = query_db('SELECT * FROM students ORDER BY created_at DESC, id DESC')
    return jsonify(rows_to_dicts(rows))


@bp.route('/modules')
@admin_required
def list_modules():
    rows = query_db(MODULE_WITH_COURSE + ' ORDER BY m.code, m.id')
    return jsonify([serialize_module(r) for r in rows])


@bp.route('/courses')
@admin_required
def list_courses():
    rows = query_db('SELECT * FROM courses ORDER BY code, id')
    return jsonify(rows_to_dicts(rows))


@bp.route('/courses', methods=['POST'])
@admin_required
def create_course():
    data = json_body()
    cur = query_db('INSERT INTO courses (name, code, created_at) VALUES (?, ?, ?)',
                   (_required_name(data, 'Course'), text_field(data, 'code') or None, utcnow_iso()),
                   commit=True)
    return jsonify(dict(get_course(cur.lastrowid))), 201


@bp.route('/courses/<int:course_id>', methods=['PUT'])
@admin_required
def update_course(course_id):
    course = get_course(course_id)
    data = json_body()
    name = _required_name(data, 'Course') if 'name' in data else course['name']
    code = text_field(data, 'code') or None if 'code' in data else course['code']

    query_db('UPDATE courses SET name = ?, code = ? WHERE id = ?', (name, code, course_id), commit=True)
    return jsonify(dict(get_course(course_id)))


@bp.route('/courses/<int:course_id>', methods=['DELETE'])
@admin_required
def delete_course(course_id):
    get_course(course_id)
    in_use = query_db('SELECT 1 FROM modules WHERE courseid = ? LIMIT 1', (course_id,), one=True)
    if in_use is not None:
        raise ConflictError('Cannot delete a course that still has modules')

    query_db('UPDATE students SET courseid = NULL WHERE courseid = ?', (course_id,), commit=True)
    query_db('DELETE FROM courses WHERE id = ?', (course_id,), commit=True)
    return jsonify({'success': True})


# Reports

@bp.route('/reports')
@admin_required
def list_reports():
    status = request.args.get('status')
    if status:
        if status not in REPORT_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(REPORT_STATUSES)}")
        rows = query_db(REPORTS_QUERY + ' WHERE r.status = ? ORDER BY r.created_at DESC, r.id DESC', (status,))
    else:
        rows = query_db(REPORTS_QUERY + ' ORDER BY r.created_at DESC, r.id DESC')
    return jsonify(rows_to_dicts(rows))


@bp.route('/reports/<int:report_id>/action', methods=['POST'])
@admin_required
def report_action(report_id):
    """Admin actions on a report: dismiss, mark_reviewed, delete_message."""
    report = query_db('SELECT * FROM reports WHERE id = ?', (report_id,), one=True)
    if report is None:
        raise NotFoundError('Report not found')

    action = json_body().get('action')

    if action == 'dismiss':
        status = 'dismissed'
    elif action == 'mark_reviewed':
        status = 'reviewed'
    elif action == 'delete_message':
        kind = report['message_type']
        table, room_col = MESSAGE_TABLES[kind]
        message = query_db(f'SELECT id, {room_col} AS room_id, deleted_at FROM {table} WHERE id = ?',
                           (report['message_id'],), one=True)
        if message is None:
            raise NotFoundError('Reported message not found')
        # Moderators are not bound by the sender's edit window
        if message['deleted_at'] is None:
            soft_delete(kind, message['id'])
            realtime.broadcast_delete(room_for(kind, message['room_id']), message['id'], kind)
        status = 'message_deleted'
    else:
        raise ValidationError('Unknown action.')

    query_db('UPDATE reports SET status = ? WHERE id = ?', (status, report_id), commit=True)
    current_app.logger.info('Report %s: %s', report_id, action)
    return jsonify({'success': True, 'id': report_id, 'status': status})
