import os

from flask import Blueprint, current_app, g, jsonify, request, send_file

from . import realtime
from .auth import consent_required, login_required
from .db import query_db, rows_to_dicts, utcnow_iso
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, int_field, json_body, text_field
from .rooms import MESSAGE_TABLES, check_access, has_access, room_for
from .storage import attachments

bp = Blueprint('messaging', __name__)

DELETED_CONTENT = '[message deleted]'
MAX_PAGE_SIZE = 500


def _select(kind):
    table, _ = MESSAGE_TABLES[kind]
    return f'''SELECT m.*, s.displayname, s.profileimage FROM {table} m
               LEFT JOIN students s ON s.id = m.userid'''


def serialize_message(row, kind):
    """Message JSON with the sender join and a fresh link for any attachment."""
    _, room_col = MESSAGE_TABLES[kind]
    message = {
        'id': row['id'],
        'type': kind,
        room_col: row[room_col],
        'userid': row['userid'],
        'content': row['content'],
        'attachment_url': row['attachment_url'],
        'attachment_name': row['attachment_name'],
        'attachment_link': None,
        'reply_to_id': row['reply_to_id'],
        'created_at': row['created_at'],
        'edited_at': row['edited_at'],
        'deleted_at': row['deleted_at'],
        'students': None,
    }
    if row['attachment_url']:
        message['attachment_link'] = f"/attachments/{attachments().sign(row['attachment_url'])}"
    if row['displayname'] is not None:
        message['students'] = {'displayname': row['displayname'], 'profileimage': row['profileimage']}
    return message


def load_message(kind, message_id):
    return query_db(_select(kind) + ' WHERE m.id = ?', (message_id,), one=True)


def _live_message(kind, message_id):
    row = load_message(kind, message_id)
    if row is None or row['deleted_at'] is not None:
        raise NotFoundError('Message not found')
    return row


def _int_arg(name, default, minimum=0, maximum=None):
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a number')
    value = max(value, minimum)
    return min(value, maximum) if maximum is not None else value


def list_room_messages(kind, room_id):
    """
    Non-deleted messages of one room, oldest first. Without `since` the
    newest page is returned; with `since` only later messages, which is
    what the polling fallback asks for.
    """
    check_access(g.student['id'], kind, room_id)
    _, room_col = MESSAGE_TABLES[kind]
    limit = _int_arg('limit', 100, minimum=1, maximum=MAX_PAGE_SIZE)
    offset = _int_arg('offset', 0)
    since = request.args.get('since')

    base = _select(kind) + f' WHERE m.{room_col} = ? AND m.deleted_at IS NULL'
    if since:
        rows = query_db(base + ' AND m.created_at > ? ORDER BY m.created_at, m.id LIMIT ? OFFSET ?',
                        (room_id, since, limit, offset))
    else:
        rows = query_db(base + ' ORDER BY m.created_at DESC, m.id DESC LIMIT ? OFFSET ?',
                        (room_id, limit, offset))
        rows = list(reversed(rows))
    return [serialize_message(r, kind) for r in rows]


def _window_open(row):
    window = current_app.config['MESSAGE_EDIT_WINDOW_SECONDS']
    return row['created_at'] > utcnow_iso(-window)


def _window_minutes():
    return current_app.config['MESSAGE_EDIT_WINDOW_SECONDS'] // 60


def soft_delete(kind, message_id):
    table, _ = MESSAGE_TABLES[kind]
    query_db(f'UPDATE {table} SET content = ?, deleted_at = ? WHERE id = ?',
             (DELETED_CONTENT, utcnow_iso(), message_id), commit=True)


@bp.route('/messages/module/<int:module_id>')
@login_required
@consent_required
def module_messages(module_id):
    return jsonify(list_room_messages('module', module_id))


@bp.route('/messages/channel/<int:channel_id>')
@login_required
@consent_required
def channel_messages(channel_id):
    return jsonify(list_room_messages('group', channel_id))


@bp.route('/messages', methods=['POST'])
@login_required
@consent_required
def send_message():
    """Handles posting a message, reply or attachment to a module or group chat."""
    data = json_body()
    module_id = int_field(data, 'moduleId')
    channel_id = int_field(data, 'channelId')
    if (module_id is None) == (channel_id is None):
        raise ValidationError('Provide exactly one of moduleId or channelId')

    kind, room_id = ('module', module_id) if module_id is not None else ('group', channel_id)
    check_access(g.student['id'], kind, room_id)

    content = text_field(data, 'content')
    attachment_path = text_field(data, 'attachmentPath') or None
    attachment_name = text_field(data, 'attachmentName') or None
    if not content and not attachment_path:
        raise ValidationError('Message cannot be empty.')

    if attachment_path:
        if not attachments().owned_by(attachment_path, g.student['userid']):
            raise ValidationError('Attachment not found')
        attachment_name = attachment_name or os.path.basename(attachment_path)

    table, room_col = MESSAGE_TABLES[kind]
    reply_to = int_field(data, 'replyTo')
    if reply_to is not None:
        parent = query_db(f'SELECT id FROM {table} WHERE id = ? AND {room_col} = ? AND deleted_at IS NULL',
                          (reply_to, room_id), one=True)
        if parent is None:
            raise ValidationError('The message you are replying to is not in this chat.')

    cur = query_db(
        f'''INSERT INTO {table} ({room_col}, userid, content, attachment_url, attachment_name,
                                 reply_to_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)''',
        (room_id, g.student['id'], content or None, attachment_path, attachment_name, reply_to, utcnow_iso()),
        commit=True,
    )

    message = serialize_message(load_message(kind, cur.lastrowid), kind)
    realtime.broadcast_message(room_for(kind, room_id), message)
    return jsonify(message), 201


@bp.route('/messages/<any(module, group):kind>/<int:message_id>', methods=['PUT'])
@login_required
@consent_required
def edit_message(kind, message_id):
    """Handles the sender editing their message within the edit window."""
    row = _live_message(kind, message_id)
    if row['userid'] != g.student['id']:
        raise ForbiddenError('You can only edit your own messages')
    if not _window_open(row):
        raise ConflictError(f'This message can no longer be edited ({_window_minutes()} minute window expired).')

    content = text_field(json_body(), 'content')
    if not content:
        raise ValidationError('Message cannot be empty.')

    table, room_col = MESSAGE_TABLES[kind]
    query_db(f'UPDATE {table} SET content = ?, edited_at = ? WHERE id = ?',
             (content, utcnow_iso(), message_id), commit=True)

    message = serialize_message(load_message(kind, message_id), kind)
    realtime.broadcast_update(room_for(kind, row[room_col]), message)
    return jsonify(message)


@bp.route('/messages/<any(module, group):kind>/<int:message_id>', methods=['DELETE'])
@login_required
@consent_required
def delete_message(kind, message_id):
    """Handles the sender deleting their message. The row is kept."""
    row = _live_message(kind, message_id)
    if row['userid'] != g.student['id']:
        raise ForbiddenError('You can only delete your own messages')
    if not _window_open(row):
        raise ConflictError(f'This message can no longer be deleted ({_window_minutes()} minute window expired).')

    soft_delete(kind, message_id)
    _, room_col = MESSAGE_TABLES[kind]
    realtime.broadcast_delete(room_for(kind, row[room_col]), message_id, kind)
    return jsonify({'success': True, 'id': message_id, 'type': kind})


@bp.route('/messages/<any(module, group):kind>/<int:message_id>/report', methods=['POST'])
@login_required
@consent_required
def report_message(kind, message_id):
    """Handles reporting a message to the moderators."""
    row = _live_message(kind, message_id)
    reason = text_field(json_body(), 'reason')
    if not reason:
        raise ValidationError('Please give a reason for the report.')
    if row['userid'] == g.student['id']:
        raise ValidationError('You cannot report your own message.')

    _, room_col = MESSAGE_TABLES[kind]
    check_access(g.student['id'], kind, row[room_col])

    # Check if this student already has an open report on this message
    existing = query_db(
        '''SELECT id FROM reports WHERE message_id = ? AND message_type = ?
           AND reported_by = ? AND status = 'pending' ''',
        (message_id, kind, g.student['id']), one=True)
    if existing:
        raise ConflictError('You have already reported this message.')

    cur = query_db(
        '''INSERT INTO reports (message_id, message_type, reported_by, reason, status, created_at)
           VALUES (?, ?, ?, ?, 'pending', ?)''',
        (message_id, kind, g.student['id'], reason, utcnow_iso()), commit=True)
    current_app.logger.info('Report %s filed on %s message %s', cur.lastrowid, kind, message_id)

    report = query_db('SELECT * FROM reports WHERE id = ?', (cur.lastrowid,), one=True)
    return jsonify(dict(report)), 201


@bp.route('/reports/mine')
@login_required
def my_reports():
    rows = query_db('SELECT * FROM reports WHERE reported_by = ? ORDER BY created_at DESC, id DESC',
                    (g.student['id'],))
    return jsonify(rows_to_dicts(rows))


@bp.route('/attachments', methods=['POST'])
@login_required
@consent_required
def upload_attachment():
    stored = attachments().save(request.files.get('file'), g.student['userid'])
    current_app.logger.info('Stored attachment %s', stored['path'])
    return jsonify(stored), 201


def _can_read_attachment(path):
    if attachments().owned_by(path, g.student['userid']):
        return True
    for kind, (table, room_col) in MESSAGE_TABLES.items():
        rows = query_db(f'SELECT {room_col} AS room_id FROM {table} WHERE attachment_url = ? AND deleted_at IS NULL',
                        (path,))
        if any(has_access(g.student['id'], kind, r['room_id']) for r in rows):
            return True
    return False


@bp.route('/attachments/sign')
@login_required
@consent_required
def sign_attachment():
    path = request.args.get('path', '')
    if not path or not _can_read_attachment(path):
        raise ForbiddenError('You do not have access to this attachment')

    ttl = current_app.config['SIGNED_URL_TTL_SECONDS']
    return jsonify({'signedUrl': f'/attachments/{attachments().sign(path)}', 'expiresIn': ttl})


@bp.route('/attachments/<token>')
def download_attachment(token):
    """Serves a private attachment to whoever holds a valid signed link."""
    store = attachments()
    path = store.resolve(token, current_app.config['SIGNED_URL_TTL_SECONDS'])
    name = None
    for table, _ in MESSAGE_TABLES.values():
        row = query_db(f'SELECT attachment_name FROM {table} WHERE attachment_url = ? LIMIT 1', (path,), one=True)
        if row is not None and row['attachment_name']:
            name = row['attachment_name']
            break
    return send_file(store.open_path(path), download_name=name or os.path.basename(path))
