import sqlite3

from flask import Blueprint, g, jsonify

from . import realtime
from .auth import consent_required, login_required
from .db import query_db, utcnow_iso
from .errors import ConflictError, ForbiddenError, NotFoundError
from .rooms import room_for

bp = Blueprint('channels', __name__, url_prefix='/channels')


def serialize_channel(row):
    channel = dict(row)
    channel['is_private'] = bool(channel['is_private'])
    return channel


def get_channel(channel_id):
    row = query_db('SELECT * FROM channels WHERE id = ?', (channel_id,), one=True)
    if row is None:
        raise NotFoundError('Channel not found')
    return row


@bp.route('')
@login_required
def list_channels():
    rows = query_db('SELECT * FROM channels ORDER BY name, id')
    return jsonify([serialize_channel(r) for r in rows])


@bp.route('/discover')
@login_required
@consent_required
def discover():
    """
    The Discover view: channels the student is in, and the public ones
    they could still join. Private channels are only ever listed to members.
    """
    mine = query_db(
        '''SELECT c.* FROM channels c JOIN channel_members cm ON cm.channel_id = c.id
           WHERE cm.student_id = ? ORDER BY c.name, c.id''',
        (g.student['id'],),
    )
    others = query_db(
        '''SELECT * FROM channels WHERE is_private = 0 AND id NOT IN (
               SELECT channel_id FROM channel_members WHERE student_id = ?)
           ORDER BY name, id''',
        (g.student['id'],),
    )
    return jsonify({
        'myChats': [serialize_channel(r) for r in mine],
        'otherChats': [serialize_channel(r) for r in others],
    })


@bp.route('/<int:channel_id>')
@login_required
def channel_detail(channel_id):
    return jsonify(serialize_channel(get_channel(channel_id)))


@bp.route('/<int:channel_id>/join', methods=['POST'])
@login_required
@consent_required
def join_channel(channel_id):
    channel = get_channel(channel_id)
    if channel['is_private']:
        raise ForbiddenError('This channel is private')

    try:
        query_db('INSERT INTO channel_members (channel_id, student_id, joined_at) VALUES (?, ?, ?)',
                 (channel_id, g.student['id'], utcnow_iso()), commit=True)
    except sqlite3.IntegrityError:
        raise ConflictError('You are already a member of this channel')

    return jsonify({'channel_id': channel_id, 'student_id': g.student['id']}), 201


@bp.route('/<int:channel_id>/leave', methods=['DELETE'])
@login_required
def leave_channel(channel_id):
    cur = query_db('DELETE FROM channel_members WHERE channel_id = ? AND student_id = ?',
                   (channel_id, g.student['id']), commit=True)
    if cur.rowcount == 0:
        raise NotFoundError('You are not a member of this channel')
    realtime.evict(g.student['id'], room_for('group', channel_id))
    return jsonify({'success': True})
