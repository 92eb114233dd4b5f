from conftest import age_message


def test_admin_login(client):
    response = client.post('/admin/login', json={'email': 'ADMIN@modnet.local', 'password': 'admin123'})

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'email': 'admin@modnet.local', 'role': 'admin'}


def test_admin_login_rejects_bad_credentials(client):
    wrong_password = client.post('/admin/login', json={'email': 'admin@modnet.local', 'password': 'nope'})
    wrong_email = client.post('/admin/login', json={'email': 'alice@student.le.ac.uk', 'password': 'admin123'})

    assert wrong_password.status_code == 401
    assert wrong_password.get_json()['error'] == 'Invalid admin credentials'
    assert wrong_email.status_code == 401


def test_admin_routes_require_admin(alice, client):
    assert client.get('/admin/users').status_code == 403
    assert alice.get('/admin/users').status_code == 403


def test_admin_logout(admin_client):
    admin_client.post('/admin/logout')

    assert admin_client.get('/admin/users').status_code == 403


def test_channel_crud(admin_client, alice, seeded, db):
    assert admin_client.post('/admin/channels', json={'name': '  '}).status_code == 400

    created = admin_client.post('/admin/channels', json={'name': 'Football', 'description': 'Weekly games'})
    assert created.status_code == 201
    channel = created.get_json()
    assert channel['is_private'] is False

    updated = admin_client.put(f"/admin/channels/{channel['id']}", json={'is_private': True})
    assert updated.get_json()['is_private'] is True
    assert updated.get_json()['name'] == 'Football'

    public_id = seeded['public_channel']
    assert admin_client.delete(f'/admin/channels/{public_id}').get_json() == {'success': True}
    assert db.execute('SELECT COUNT(*) FROM channel_members WHERE channel_id = ?', (public_id,)).fetchone()[0] == 0
    assert [c['name'] for c in admin_client.get('/admin/channels').get_json()] == ['Course Reps', 'Football']


def test_profile_image_crud(admin_client, client):
    assert admin_client.post('/admin/profile-images', json={}).status_code == 400

    active = admin_client.post('/admin/profile-images', json={'image_url': '/avatars/cat.png'}).get_json()
    hidden = admin_client.post('/admin/profile-images',
                               json={'image_url': '/avatars/dog.png', 'is_active': False}).get_json()

    assert len(admin_client.get('/admin/profile-images').get_json()) == 2
    assert [i['id'] for i in client.get('/profile/images').get_json()] == [active['id']]

    assert admin_client.delete(f"/admin/profile-images/{hidden['id']}").status_code == 200
    assert admin_client.delete(f"/admin/profile-images/{hidden['id']}").status_code == 404


def test_users_and_modules(admin_client, alice, seeded):
    users = admin_client.get('/admin/users').get_json()
    modules = admin_client.get('/admin/modules').get_json()

    assert [u['email'] for u in users] == ['alice@student.le.ac.uk']
    assert modules[0]['courses']['name'] == 'Computer Science'


def test_course_crud(admin_client, seeded):
    created = admin_client.post('/admin/courses', json={'name': 'Physics', 'code': 'PH'})
    assert created.status_code == 201
    course_id = created.get_json()['id']

    updated = admin_client.put(f'/admin/courses/{course_id}', json={'code': 'PHY'})
    assert updated.get_json()['code'] == 'PHY'
    assert updated.get_json()['name'] == 'Physics'

    in_use = admin_client.delete(f"/admin/courses/{seeded['course']}")
    assert in_use.status_code == 409

    assert admin_client.delete(f'/admin/courses/{course_id}').get_json() == {'success': True}
    assert admin_client.delete(f'/admin/courses/{course_id}').status_code == 404


def _reported_message(alice, bob, seeded):
    message = alice.post('/messages', json={'moduleId': seeded['modules'][0], 'content': 'rude words'}).get_json()
    report = bob.post(f"/messages/module/{message['id']}/report", json={'reason': 'Abusive'}).get_json()
    return message, report


def test_list_reports(admin_client, alice, bob, seeded):
    _, report = _reported_message(alice, bob, seeded)

    reports = admin_client.get('/admin/reports').get_json()
    pending = admin_client.get('/admin/reports', query_string={'status': 'pending'}).get_json()
    dismissed = admin_client.get('/admin/reports', query_string={'status': 'dismissed'}).get_json()

    assert reports[0]['id'] == report['id']
    assert reports[0]['message_content'] == 'rude words'
    assert reports[0]['reporter_name'] == 'bob'
    assert [r['id'] for r in pending] == [report['id']]
    assert dismissed == []
    assert admin_client.get('/admin/reports', query_string={'status': 'bogus'}).status_code == 400


def test_report_actions(admin_client, alice, bob, seeded):
    _, report = _reported_message(alice, bob, seeded)
    url = f"/admin/reports/{report['id']}/action"

    assert admin_client.post(url, json={'action': 'dismiss'}).get_json()['status'] == 'dismissed'
    assert admin_client.post(url, json={'action': 'mark_reviewed'}).get_json()['status'] == 'reviewed'
    assert admin_client.post(url, json={'action': 'explode'}).status_code == 400
    assert admin_client.post('/admin/reports/9999/action', json={'action': 'dismiss'}).status_code == 404


def test_delete_message_action_ignores_edit_window(admin_client, alice, bob, seeded, db, socket_for):
    message, report = _reported_message(alice, bob, seeded)
    age_message(db, 'messages', message['id'], 2 * 60 * 60)
    bob_sio = socket_for(bob)
    bob_sio.emit('join', {'type': 'module', 'id': seeded['modules'][0]})
    bob_sio.get_received()

    response = admin_client.post(f"/admin/reports/{report['id']}/action", json={'action': 'delete_message'})

    assert response.get_json()['status'] == 'message_deleted'
    row = db.execute('SELECT content, deleted_at FROM messages WHERE id = ?', (message['id'],)).fetchone()
    assert row['content'] == '[message deleted]'
    assert row['deleted_at'] is not None
    assert [e['name'] for e in bob_sio.get_received()] == ['message:deleted']
    assert alice.get(f"/messages/module/{seeded['modules'][0]}").get_json() == []
