import functools
import secrets
import uuid

from flask import Blueprint, current_app, g, jsonify, request, session
from flask_mail import Message
from werkzeug.security import check_password_hash, generate_password_hash

from .db import query_db, row_to_dict, utcnow_iso
from .errors import AuthError, ForbiddenError, NotFoundError, ValidationError, json_body, text_field
from .extensions import limiter, mail

bp = Blueprint('auth', __name__, url_prefix='/auth')

INVALID_OTP = 'Invalid or expired OTP.'


def config_limit(key):
    """Rate limit string read from the app config at request time."""
    return lambda: current_app.config[key]


def serialize_student(row):
    if row is None:
        return None
    student = dict(row)
    student['consent_accepted'] = bool(student['consent_accepted'])
    student['canreview'] = bool(student['canreview'])
    return student


def serialize_user(row):
    return row_to_dict(row)


def current_student():
    """The logged-in student row, or None."""
    student_id = session.get('student_id')
    if student_id is None:
        return None
    return query_db('SELECT * FROM students WHERE id = ?', (student_id,), one=True)


def login_required(view):
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        student = current_student()
        if student is None:
            raise AuthError('Authentication required')
        g.student = student
        return view(*args, **kwargs)

    return wrapped


def consent_required(view):
    """Use below login_required; chat features stay closed until consent."""
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if not g.student['consent_accepted']:
            raise ForbiddenError('Consent required')
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if session.get('role') != 'admin':
            raise ForbiddenError('Admin access required')
        return view(*args, **kwargs)

    return wrapped


def next_step(student):
    """First onboarding step the student has not finished."""
    if not student['consent_accepted']:
        return 'consent'
    if student['courseid'] is None:
        return 'course'
    if not student['semester']:
        return 'semester'
    enrolled = query_db('SELECT 1 FROM user_modules WHERE userid = ? LIMIT 1', (student['id'],), one=True)
    if enrolled is None:
        return 'modules'
    return 'home'


def _email_from(data):
    return text_field(data, 'email').lower()


def _send_code(email, code):
    minutes = current_app.config['OTP_TTL_SECONDS'] // 60
    msg = Message(
        subject='Your ModNet login code',
        recipients=[email],
        body=f'Your ModNet login code is {code}. It expires in {minutes} minutes.',
    )
    mail.send(msg)


@bp.route('/otp/request', methods=['POST'])
@limiter.limit(config_limit('AUTH_RATE_LIMIT'))
def request_otp():
    """Handles sending a one-time login code to a university address."""
    data = json_body()
    email = _email_from(data)

    if not email or not email.endswith(current_app.config['UNIVERSITY_EMAIL_DOMAIN']):
        raise ValidationError('Please use your university email address.')

    user = query_db('SELECT id FROM users WHERE email = ?', (email,), one=True)
    if user is None:
        query_db('INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)',
                 (str(uuid.uuid4()), email, utcnow_iso()), commit=True)

    length = current_app.config['OTP_LENGTH']
    code = ''.join(secrets.choice('0123456789') for _ in range(length))
    now = utcnow_iso()
    expires_at = utcnow_iso(current_app.config['OTP_TTL_SECONDS'])

    # A new request replaces any code still pending for this address
    query_db(
        '''INSERT INTO otp_codes (email, code_hash, expires_at, attempts, created_at)
           VALUES (?, ?, ?, 0, ?)
           ON CONFLICT(email) DO UPDATE SET code_hash = excluded.code_hash,
               expires_at = excluded.expires_at, attempts = 0, created_at = excluded.created_at''',
        (email, generate_password_hash(code), expires_at, now),
        commit=True,
    )

    _send_code(email, code)
    current_app.logger.info('OTP sent to %s', email)
    return jsonify({'sent': True})


@bp.route('/otp/verify', methods=['POST'])
@limiter.limit(config_limit('AUTH_RATE_LIMIT'))
def verify_otp():
    """Handles checking a login code and starting the session."""
    data = json_body()
    email = _email_from(data)
    token = str(data.get('token') or '').strip()

    pending = query_db('SELECT * FROM otp_codes WHERE email = ?', (email,), one=True)
    if pending is None or not token:
        raise AuthError(INVALID_OTP)

    if pending['expires_at'] <= utcnow_iso() or pending['attempts'] >= current_app.config['OTP_MAX_ATTEMPTS']:
        query_db('DELETE FROM otp_codes WHERE email = ?', (email,), commit=True)
        raise AuthError(INVALID_OTP)

    if not check_password_hash(pending['code_hash'], token):
        query_db('UPDATE otp_codes SET attempts = attempts + 1 WHERE email = ?', (email,), commit=True)
        raise AuthError(INVALID_OTP)

    # Codes are single use
    query_db('DELETE FROM otp_codes WHERE email = ?', (email,), commit=True)
    query_db('UPDATE users SET last_sign_in_at = ? WHERE email = ?', (utcnow_iso(), email), commit=True)
    user = query_db('SELECT * FROM users WHERE email = ?', (email,), one=True)

    student = query_db('SELECT * FROM students WHERE userid = ?', (user['id'],), one=True)
    if student is None:
        image = query_db('SELECT image_url FROM profile_images WHERE is_active = 1 ORDER BY RANDOM() LIMIT 1',
                         one=True)
        query_db(
            '''INSERT INTO students (userid, email, displayname, profileimage, created_at)
               VALUES (?, ?, ?, ?, ?)''',
            (user['id'], email, email.split('@')[0], image['image_url'] if image else None, utcnow_iso()),
            commit=True,
        )
        student = query_db('SELECT * FROM students WHERE userid = ?', (user['id'],), one=True)
        current_app.logger.info('Created student profile for %s', email)

    session.clear()
    session['user_id'] = user['id']
    session['student_id'] = student['id']
    session['email'] = email

    return jsonify({
        'user': serialize_user(user),
        'profile': serialize_student(student),
        'next': next_step(student),
    })


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})


@bp.route('/session')
@login_required
def get_session():
    user = query_db('SELECT * FROM users WHERE id = ?', (g.student['userid'],), one=True)
    return jsonify({
        'user': serialize_user(user),
        'profile': serialize_student(g.student),
        'next': next_step(g.student),
    })


@bp.route('/profile/<user_id>')
@login_required
def get_profile(user_id):
    student = query_db('SELECT * FROM students WHERE userid = ?', (user_id,), one=True)
    if student is None:
        raise NotFoundError('Profile not found')
    return jsonify(serialize_student(student))


@bp.route('/profile/<user_id>', methods=['PUT'])
@login_required
def update_profile(user_id):
    """Handles a student changing their display name or avatar."""
    if g.student['userid'] != user_id:
        raise ForbiddenError('You can only update your own profile')

    data = json_body()
    allowed = {'displayname', 'profileimage'}
    extra = set(data) - allowed
    if extra:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(extra))}")
    if not data:
        raise ValidationError('No profile fields to update')

    if 'displayname' in data:
        displayname = text_field(data, 'displayname')
        if not displayname:
            raise ValidationError('Display name cannot be empty')
        data['displayname'] = displayname
    if 'profileimage' in data:
        data['profileimage'] = text_field(data, 'profileimage') or None

    # Column names come from the allow-list above
    assignments = ', '.join(f'{field} = ?' for field in sorted(data))
    query_db(f'UPDATE students SET {assignments} WHERE id = ?',
             tuple(data[field] for field in sorted(data)) + (g.student['id'],), commit=True)

    student = query_db('SELECT * FROM students WHERE id = ?', (g.student['id'],), one=True)
    return jsonify(serialize_student(student))


@bp.route('/modules/<int:student_id>')
@login_required
def student_modules(student_id):
    rows = query_db(
        '''SELECT m.id, m.name, m.code FROM user_modules um
           JOIN modules m ON m.id = um.moduleid
           WHERE um.userid = ? ORDER BY m.code''',
        (student_id,),
    )
    return jsonify([dict(r) for r in rows])
