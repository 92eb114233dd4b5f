import logging
import os
import threading

import requests
import socketio

from .config import Config
from .errors import ModNetError
from .rooms import message_type, room_for
from .timeline import MessageTimeline

EVENTS = ('message:new', 'message:updated', 'message:deleted', 'presence')

log = logging.getLogger(__name__)


def _kind(room):
    """'module:3' -> 'module', 'channel:3' -> 'group'."""
    return message_type(room.split(':', 1)[0])


def _room_id(room):
    return int(room.split(':', 1)[1])


def _room_of(message):
    if message.get('type') == 'group':
        return room_for('group', message['channel_id'])
    return room_for('module', message['moduleid'])


class ChatClient:
    """
    A ModNet client talking to the API gateway. Each open room keeps a
    MessageTimeline that realtime pushes and polling both feed, so either
    transport can drop out without losing or duplicating messages.

    Socket.IO handlers and the poller run on their own threads; the room
    map is guarded by a lock and each timeline locks itself.
    """

    def __init__(self, base_url, session=None, timeout=10):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.timelines = {}
        self.online = {}
        self.user = None
        self.profile = None
        self.sio = None
        self._lock = threading.RLock()
        self._poller = None
        self._stop = None

    def _request(self, method, path, **kwargs):
        response = self.session.request(method, f'{self.base_url}/api{path}', timeout=self.timeout, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            message = body.get('error') if isinstance(body, dict) else None
            raise ModNetError(message or response.reason or 'Request failed', response.status_code)
        return body

    # Login

    def request_otp(self, email):
        return self._request('POST', '/auth/otp/request', json={'email': email})

    def verify_otp(self, email, token):
        result = self._request('POST', '/auth/otp/verify', json={'email': email, 'token': token})
        self.user = result.get('user')
        self.profile = result.get('profile')
        return result

    # Rooms

    def rooms(self):
        with self._lock:
            return list(self.timelines)

    def _timeline(self, room):
        with self._lock:
            return self.timelines.get(room)

    def open_room(self, room_type, room_id):
        """Load a room's history; returns its timeline."""
        room = room_for(room_type, room_id)
        path = 'module' if _kind(room) == 'module' else 'channel'
        rows = self._request('GET', f'/messages/{path}/{_room_id(room)}')
        with self._lock:
            timeline = self.timelines.get(room)
            if timeline is None:
                timeline = self.timelines[room] = MessageTimeline()
        timeline.load(rows)
        if self.sio is not None and self.sio.connected:
            self.sio.emit('join', {'type': path, 'id': _room_id(room)})
        return timeline

    def close_room(self, room):
        with self._lock:
            self.timelines.pop(room, None)
            self.online.pop(room, None)
        if self.sio is not None and self.sio.connected:
            self.sio.emit('leave', {'type': room.split(':', 1)[0], 'id': _room_id(room)})

    def _fetch_since(self, room, timeline):
        path = 'module' if _kind(room) == 'module' else 'channel'
        since = timeline.last_seen
        params = {'since': since} if since else {}
        rows = self._request('GET', f'/messages/{path}/{_room_id(room)}', params=params)
        return timeline.merge(rows)

    def poll(self, room):
        """Fetch what arrived since the newest message we hold; returns the new rows."""
        timeline = self._timeline(room)
        if timeline is None:
            raise KeyError(room)
        return self._fetch_since(room, timeline)

    def poll_all(self):
        with self._lock:
            open_rooms = list(self.timelines.items())
        return {room: self._fetch_since(room, timeline) for room, timeline in open_rooms}

    def start_polling(self, interval=None):
        """
        Poll every open room on a background thread until stop_polling().
        This is the fallback for when realtime is blocked; a failed round is
        logged and the next tick tries again.
        """
        if self._poller is not None:
            return
        interval = Config.POLL_INTERVAL_SECONDS if interval is None else interval
        self._stop = threading.Event()
        self._poller = threading.Thread(target=self._poll_loop, args=(interval, self._stop),
                                        name='modnet-poller', daemon=True)
        self._poller.start()

    def stop_polling(self):
        if self._poller is None:
            return
        self._stop.set()
        self._poller.join()
        self._poller = None
        self._stop = None

    def _poll_loop(self, interval, stop):
        while not stop.wait(interval):
            try:
                self.poll_all()
            except (ModNetError, requests.RequestException) as e:
                log.warning('Polling failed: %s', e)

    # Messages

    def upload(self, file_path):
        with open(file_path, 'rb') as f:
            return self._request('POST', '/attachments', files={'file': (os.path.basename(file_path), f)})

    def send(self, room, content, reply_to=None, attachment=None):
        payload = {'content': content, 'replyTo': reply_to}
        payload['moduleId' if _kind(room) == 'module' else 'channelId'] = _room_id(room)
        if attachment is not None:
            stored = self.upload(attachment)
            payload['attachmentPath'] = stored['path']
            payload['attachmentName'] = stored['name']

        message = self._request('POST', '/messages', json=payload)
        # The realtime echo of this message is absorbed by the timeline
        timeline = self._timeline(room)
        if timeline is not None:
            timeline.add(message)
        return message

    def edit(self, room, message_id, content):
        message = self._request('PUT', f'/messages/{_kind(room)}/{message_id}', json={'content': content})
        timeline = self._timeline(room)
        if timeline is not None:
            timeline.apply_update(message)
        return message

    def delete(self, room, message_id):
        result = self._request('DELETE', f'/messages/{_kind(room)}/{message_id}')
        timeline = self._timeline(room)
        if timeline is not None:
            timeline.remove(message_id)
        return result

    def report(self, room, message_id, reason):
        return self._request('POST', f'/messages/{_kind(room)}/{message_id}/report', json={'reason': reason})

    # Realtime

    def handle_event(self, event, payload):
        if event == 'presence':
            with self._lock:
                self.online[payload['room']] = payload['online']
            return
        if event == 'message:deleted':
            timeline = self._timeline(payload.get('room'))
            if timeline is not None:
                timeline.remove(payload['id'])
            return

        timeline = self._timeline(_room_of(payload))
        if timeline is None:
            return
        if event == 'message:new':
            timeline.add(payload)
        elif event == 'message:updated':
            timeline.apply_update(payload)

    def connect_realtime(self, url=None):
        """
        Attach a Socket.IO connection, sharing the login cookie. The gateway
        only proxies HTTP, so `url` usually points at the messaging service.
        """
        sio = socketio.Client(http_session=self.session)
        for event in EVENTS:
            sio.on(event, lambda payload, event=event: self.handle_event(event, payload))

        @sio.event
        def connect():
            for room in self.rooms():
                sio.emit('join', {'type': room.split(':', 1)[0], 'id': _room_id(room)})

        sio.connect(url or self.base_url)
        self.sio = sio
        return sio

    def disconnect(self):
        self.stop_polling()
        if self.sio is not None:
            self.sio.disconnect()
            self.sio = None
