from conftest import login, read_code

from modnet.db import utcnow_iso
from modnet.extensions import mail


def test_otp_request_rejects_non_university_email(client):
    """Only university addresses can sign in"""
    response = client.post('/auth/otp/request', json={'email': 'someone@gmail.com'})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Please use your university email address.'


def test_otp_request_sends_code_and_stores_only_hash(client, db):
    with mail.record_messages() as outbox:
        response = client.post('/auth/otp/request', json={'email': '  Alice@Student.LE.ac.uk '})

    assert response.status_code == 200
    assert response.get_json() == {'sent': True}
    assert outbox[0].recipients == ['alice@student.le.ac.uk']

    code = read_code(outbox)
    row = db.execute('SELECT * FROM otp_codes WHERE email = ?', ('alice@student.le.ac.uk',)).fetchone()
    assert row['code_hash'] != code
    assert row['attempts'] == 0
    assert db.execute('SELECT COUNT(*) FROM users').fetchone()[0] == 1


def test_verify_creates_student_and_session(client):
    data = login(client, 'alice@student.le.ac.uk')

    assert data['profile']['displayname'] == 'alice'
    assert data['profile']['consent_accepted'] is False
    assert data['next'] == 'consent'

    session = client.get('/auth/session')
    assert session.status_code == 200
    assert session.get_json()['user']['email'] == 'alice@student.le.ac.uk'


def test_verify_uses_active_profile_image(client, db):
    with db:
        db.execute('INSERT INTO profile_images (image_url, is_active, created_at) VALUES (?, 1, ?)',
                   ('/avatars/owl.png', utcnow_iso()))
        db.execute('INSERT INTO profile_images (image_url, is_active, created_at) VALUES (?, 0, ?)',
                   ('/avatars/retired.png', utcnow_iso()))

    data = login(client, 'alice@student.le.ac.uk')

    assert data['profile']['profileimage'] == '/avatars/owl.png'


def test_code_is_single_use(client):
    with mail.record_messages() as outbox:
        client.post('/auth/otp/request', json={'email': 'alice@student.le.ac.uk'})
    code = read_code(outbox)

    first = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': code})
    second = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': code})

    assert first.status_code == 200
    assert second.status_code == 401
    assert second.get_json()['error'] == 'Invalid or expired OTP.'


def test_wrong_code_counts_attempts_until_locked(client, db):
    with mail.record_messages() as outbox:
        client.post('/auth/otp/request', json={'email': 'alice@student.le.ac.uk'})
    code = read_code(outbox)
    wrong = '000000' if code != '000000' else '111111'

    for _ in range(5):
        response = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': wrong})
        assert response.status_code == 401

    # Locked out even with the right code now
    response = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': code})
    assert response.status_code == 401
    assert db.execute('SELECT COUNT(*) FROM otp_codes').fetchone()[0] == 0


def test_expired_code_is_rejected(client, db):
    with mail.record_messages() as outbox:
        client.post('/auth/otp/request', json={'email': 'alice@student.le.ac.uk'})
    with db:
        db.execute('UPDATE otp_codes SET expires_at = ?', (utcnow_iso(-1),))

    response = client.post('/auth/otp/verify',
                           json={'email': 'alice@student.le.ac.uk', 'token': read_code(outbox)})

    assert response.status_code == 401


def test_new_request_replaces_pending_code(client):
    with mail.record_messages() as outbox:
        client.post('/auth/otp/request', json={'email': 'alice@student.le.ac.uk'})
        client.post('/auth/otp/request', json={'email': 'alice@student.le.ac.uk'})
    first, second = (m.body for m in outbox)
    first_code = first.split('is ')[1][:6]
    second_code = second.split('is ')[1][:6]

    if first_code != second_code:
        stale = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': first_code})
        assert stale.status_code == 401
    fresh = client.post('/auth/otp/verify', json={'email': 'alice@student.le.ac.uk', 'token': second_code})
    assert fresh.status_code == 200


def test_session_requires_login(client):
    response = client.get('/auth/session')

    assert response.status_code == 401


def test_logout_clears_session(client):
    login(client, 'alice@student.le.ac.uk')

    assert client.post('/auth/logout').get_json() == {'success': True}
    assert client.get('/auth/session').status_code == 401


def test_update_own_profile(client):
    data = login(client, 'alice@student.le.ac.uk')
    user_id = data['user']['id']

    response = client.put(f'/auth/profile/{user_id}', json={'displayname': '  Ally  '})

    assert response.status_code == 200
    assert response.get_json()['displayname'] == 'Ally'
    assert client.get(f'/auth/profile/{user_id}').get_json()['displayname'] == 'Ally'


def test_update_profile_rejects_other_fields(client):
    data = login(client, 'alice@student.le.ac.uk')

    response = client.put(f"/auth/profile/{data['user']['id']}", json={'email': 'x@student.le.ac.uk'})

    assert response.status_code == 400


def test_update_profile_rejects_empty_displayname(client):
    data = login(client, 'alice@student.le.ac.uk')

    response = client.put(f"/auth/profile/{data['user']['id']}", json={'displayname': '   '})

    assert response.status_code == 400


def test_update_profile_rejects_non_string_values(client):
    data = login(client, 'alice@student.le.ac.uk')
    url = f"/auth/profile/{data['user']['id']}"

    assert client.put(url, json={'displayname': 5}).get_json() == {'error': 'displayname must be a string'}
    assert client.put(url, json={'profileimage': ['a']}).status_code == 400
    assert client.put(url, json=['displayname']).status_code == 400


def test_cannot_update_someone_elses_profile(app, client):
    login(client, 'alice@student.le.ac.uk')
    other = app.test_client()
    bob = login(other, 'bob@student.le.ac.uk')

    response = client.put(f"/auth/profile/{bob['user']['id']}", json={'displayname': 'hacked'})

    assert response.status_code == 403


def test_unknown_profile_is_404(client):
    login(client, 'alice@student.le.ac.uk')

    response = client.get('/auth/profile/no-such-user')

    assert response.status_code == 404
    assert response.get_json()['error'] == 'Profile not found'


def test_next_step_is_home_after_onboarding(alice):
    response = alice.get('/auth/session')

    assert response.get_json()['next'] == 'home'


def test_student_modules_listing(alice, seeded):
    response = alice.get(f"/auth/modules/{alice.student['id']}")

    assert [m['id'] for m in response.get_json()] == seeded['modules'][:2]


def test_otp_rate_limit(tmp_path):
    from modnet import create_app
    from modnet.config import TestingConfig

    class Config(TestingConfig):
        DATABASE = str(tmp_path / 'limited.sqlite')
        UPLOAD_FOLDER = str(tmp_path / 'uploads')
        RATELIMIT_ENABLED = True
        AUTH_RATE_LIMIT = '2 per 15 minutes'

    client = create_app(Config).test_client()
    for _ in range(2):
        assert client.post('/auth/otp/request', json={'email': 'a@student.le.ac.uk'}).status_code == 200

    response = client.post('/auth/otp/request', json={'email': 'a@student.le.ac.uk'})
    assert response.status_code == 429
    assert 'Too many requests' in response.get_json()['error']
