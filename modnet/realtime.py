import threading

from flask import request
from flask_socketio import emit, join_room, leave_room

from .auth import current_student
from .errors import ModNetError, ValidationError
from .extensions import socketio
from .rooms import check_access, message_type, room_for


class PresenceTracker:
    """
    Who is looking at which room. Counts distinct students, so one student
    with several tabs open counts once. Safe to share between worker threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rooms = {}
        self._sockets = {}

    def join(self, room, sid, student_id):
        with self._lock:
            self._rooms.setdefault(room, {})[sid] = student_id
            self._sockets.setdefault(sid, set()).add(room)
            return self._count(room)

    def leave(self, room, sid):
        with self._lock:
            self._discard(room, sid)
            rooms = self._sockets.get(sid)
            if rooms is not None:
                rooms.discard(room)
                if not rooms:
                    del self._sockets[sid]
            return self._count(room)

    def drop(self, sid):
        """Forget a socket everywhere; returns the new count per affected room."""
        with self._lock:
            counts = {}
            for room in self._sockets.pop(sid, set()):
                self._discard(room, sid)
                counts[room] = self._count(room)
            return counts

    def count(self, room):
        with self._lock:
            return self._count(room)

    def members(self, room):
        with self._lock:
            return set(self._rooms.get(room, {}).values())

    def sockets_of(self, room, student_id):
        with self._lock:
            return [sid for sid, student in self._rooms.get(room, {}).items() if student == student_id]

    def rooms_of(self, student_id):
        with self._lock:
            return sorted(room for room, sockets in self._rooms.items() if student_id in sockets.values())

    def clear(self, room):
        """Forget a room entirely; returns the sockets that were in it."""
        with self._lock:
            sids = list(self._rooms.pop(room, {}))
            for sid in sids:
                rooms = self._sockets.get(sid)
                if rooms is not None:
                    rooms.discard(room)
                    if not rooms:
                        del self._sockets[sid]
            return sids

    def _discard(self, room, sid):
        sockets = self._rooms.get(room)
        if sockets is None:
            return
        sockets.pop(sid, None)
        if not sockets:
            del self._rooms[room]

    def _count(self, room):
        return len(set(self._rooms.get(room, {}).values()))


presence = PresenceTracker()


def broadcast_message(room, message):
    socketio.emit('message:new', message, to=room)


def broadcast_update(room, message):
    socketio.emit('message:updated', message, to=room)


def broadcast_delete(room, message_id, kind):
    socketio.emit('message:deleted', {'id': message_id, 'type': kind, 'room': room}, to=room)


def _broadcast_presence(room, online):
    socketio.emit('presence', {'room': room, 'online': online}, to=room)


def evict(student_id, room):
    """
    Take a student's sockets out of a room they no longer belong to, so
    pushes for it stop and the online count drops.
    """
    sids = presence.sockets_of(room, student_id)
    if not sids:
        return
    for sid in sids:
        socketio.server.leave_room(sid, room, namespace='/')
        online = presence.leave(room, sid)
    _broadcast_presence(room, online)


def evict_student(student_id):
    for room in presence.rooms_of(student_id):
        evict(student_id, room)


def close_room(room):
    """Empty a room whose module or channel is gone."""
    presence.clear(room)
    socketio.close_room(room, namespace='/')


def _room_from(data):
    """(type, id, room) from a join or leave payload."""
    if not isinstance(data, dict):
        raise ValidationError('Invalid room')
    try:
        kind = message_type(data.get('type'))
        room_id = int(data.get('id'))
    except (TypeError, ValueError):
        raise ValidationError('Invalid room')
    return kind, room_id, room_for(kind, room_id)


@socketio.on('connect')
def on_connect(auth=None):
    if current_student() is None:
        return False


@socketio.on('join')
def on_join(data):
    student = current_student()
    if student is None:
        emit('error', {'error': 'Authentication required'})
        return
    if not student['consent_accepted']:
        emit('error', {'error': 'Consent required'})
        return

    try:
        kind, room_id, room = _room_from(data)
        check_access(student['id'], kind, room_id)
    except ModNetError as e:
        emit('error', {'error': e.message})
        return

    join_room(room)
    _broadcast_presence(room, presence.join(room, request.sid, student['id']))


@socketio.on('leave')
def on_leave(data):
    try:
        _, _, room = _room_from(data)
    except ModNetError as e:
        emit('error', {'error': e.message})
        return

    leave_room(room)
    _broadcast_presence(room, presence.leave(room, request.sid))


@socketio.on('disconnect')
def on_disconnect(reason=None):
    for room, online in presence.drop(request.sid).items():
        _broadcast_presence(room, online)
