"""
ModNet - Test configuration and fixtures
"""
import re

import pytest

from modnet import create_app
from modnet.config import TestingConfig
from modnet.db import connect, utcnow_iso
from modnet.extensions import mail, socketio


@pytest.fixture
def app(tmp_path):
    """A fresh app on its own database and upload folder"""
    class Config(TestingConfig):
        DATABASE = str(tmp_path / 'test.sqlite')
        UPLOAD_FOLDER = str(tmp_path / 'uploads')

    yield create_app(Config)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    """Direct connection for arranging rows the API cannot create"""
    conn = connect(app.config['DATABASE'])
    yield conn
    conn.close()


@pytest.fixture
def seeded(db):
    """One course with five modules, a second course, a public and a private channel"""
    now = utcnow_iso()
    with db:
        course = db.execute('INSERT INTO courses (name, code, created_at) VALUES (?, ?, ?)',
                            ('Computer Science', 'CS', now)).lastrowid
        other_course = db.execute('INSERT INTO courses (name, code, created_at) VALUES (?, ?, ?)',
                                  ('History', 'HI', now)).lastrowid
        modules = [
            db.execute('INSERT INTO modules (name, code, courseid, created_at) VALUES (?, ?, ?, ?)',
                       (f'Module {i}', f'CO22{i:02d}', course, now)).lastrowid
            for i in range(1, 6)
        ]
        other_module = db.execute('INSERT INTO modules (name, code, courseid, created_at) VALUES (?, ?, ?, ?)',
                                  ('Medieval Europe', 'HI1001', other_course, now)).lastrowid
        public = db.execute('INSERT INTO channels (name, description, is_private, created_at) VALUES (?, ?, 0, ?)',
                            ('Study Group', 'Revision', now)).lastrowid
        private = db.execute('INSERT INTO channels (name, description, is_private, created_at) VALUES (?, ?, 1, ?)',
                             ('Course Reps', 'Reps only', now)).lastrowid
    return {
        'course': course,
        'other_course': other_course,
        'modules': modules,
        'other_module': other_module,
        'public_channel': public,
        'private_channel': private,
    }


def read_code(outbox):
    return re.search(r'\b(\d{6})\b', outbox[-1].body).group(1)


def login(client, email):
    """Run the OTP flow for `email` on `client`; returns the verify response body."""
    with mail.record_messages() as outbox:
        response = client.post('/auth/otp/request', json={'email': email})
        assert response.status_code == 200
    response = client.post('/auth/otp/verify', json={'email': email, 'token': read_code(outbox)})
    assert response.status_code == 200
    return response.get_json()


@pytest.fixture
def make_student(app, seeded):
    """
    Factory for logged-in students who finished onboarding: consent, the
    seeded course, autumn semester, the first two modules and the public channel.
    """
    def _make(email, consent=True, modules=None, channels=None):
        client = app.test_client()
        data = login(client, email)
        if consent:
            client.post('/profile/consent')
            client.put('/profile/course', json={'courseId': seeded['course']})
            client.put('/profile/semester', json={'semester': 'autumn'})
            client.put('/profile/modules', json={'moduleIds': modules or seeded['modules'][:2]})
            for channel_id in (channels if channels is not None else [seeded['public_channel']]):
                client.post(f'/channels/{channel_id}/join')
        client.student = data['profile']
        client.user = data['user']
        return client

    return _make


@pytest.fixture
def alice(make_student):
    return make_student('alice@student.le.ac.uk')


@pytest.fixture
def bob(make_student):
    return make_student('bob@student.le.ac.uk')


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    response = client.post('/admin/login', json={'email': 'admin@modnet.local', 'password': 'admin123'})
    assert response.status_code == 200
    return client


@pytest.fixture
def socket_for(app):
    """Socket.IO test client sharing the session cookie of a Flask test client"""
    clients = []

    def _connect(flask_client):
        sio = socketio.test_client(app, flask_test_client=flask_client)
        clients.append(sio)
        return sio

    yield _connect
    for sio in clients:
        if sio.is_connected():
            sio.disconnect()


def age_message(db, table, message_id, seconds):
    """Backdate a message so the edit window can be tested"""
    with db:
        db.execute(f'UPDATE {table} SET created_at = ? WHERE id = ?', (utcnow_iso(-seconds), message_id))
