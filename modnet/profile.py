from flask import Blueprint, current_app, g, jsonify

from . import realtime
from .auth import login_required, serialize_student
from .db import query_db, rows_to_dicts, row_to_dict, utcnow_iso
from .errors import ConflictError, NotFoundError, ValidationError, int_field, json_body, text_field
from .rooms import room_for

bp = Blueprint('profile', __name__, url_prefix='/profile')

SEMESTERS = ('autumn', 'spring', 'summer')


def _reload_student():
    return query_db('SELECT * FROM students WHERE id = ?', (g.student['id'],), one=True)


def _require_course():
    if g.student['courseid'] is None:
        raise ConflictError('Select a course first')


@bp.route('/consent')
@login_required
def get_consent():
    return jsonify({
        'hasConsent': bool(g.student['consent_accepted']),
        'consent_accepted_at': g.student['consent_accepted_at'],
    })


@bp.route('/consent', methods=['POST'])
@login_required
def accept_consent():
    """Handles a student accepting the data-processing terms."""
    query_db('UPDATE students SET consent_accepted = 1, consent_accepted_at = ? WHERE id = ?',
             (utcnow_iso(), g.student['id']), commit=True)
    return jsonify(serialize_student(_reload_student()))


@bp.route('/course', methods=['PUT'])
@login_required
def set_course():
    data = json_body()
    course_id = int_field(data, 'courseId')
    if course_id is None:
        raise ValidationError('Please select a course.')

    course = query_db('SELECT id FROM courses WHERE id = ?', (course_id,), one=True)
    if course is None:
        raise NotFoundError('Course not found')

    query_db('UPDATE students SET courseid = ? WHERE id = ?', (course['id'], g.student['id']), commit=True)
    return jsonify(serialize_student(_reload_student()))


@bp.route('/semester', methods=['PUT'])
@login_required
def set_semester():
    data = json_body()
    semester = text_field(data, 'semester').lower()
    if semester not in SEMESTERS:
        raise ValidationError(f"Semester must be one of: {', '.join(SEMESTERS)}")
    _require_course()

    query_db('UPDATE students SET semester = ? WHERE id = ?', (semester, g.student['id']), commit=True)
    return jsonify(serialize_student(_reload_student()))


@bp.route('/modules', methods=['PUT'])
@login_required
def set_modules():
    """
    Handles the module picker. The submitted list replaces whatever the
    student was enrolled in before.
    """
    _require_course()
    data = json_body()
    module_ids = data.get('moduleIds') or []
    if not isinstance(module_ids, list):
        raise ValidationError('moduleIds must be a list')

    try:
        module_ids = list(dict.fromkeys(int(m) for m in module_ids))
    except (TypeError, ValueError):
        raise ValidationError('moduleIds must be a list of ids')

    max_modules = current_app.config['MAX_MODULES']
    if not module_ids:
        raise ValidationError('Please select your modules.')
    if len(module_ids) > max_modules:
        raise ValidationError(f'You can select up to {max_modules} modules.')

    placeholders = ', '.join('?' for _ in module_ids)
    found = query_db(f'SELECT id FROM modules WHERE courseid = ? AND id IN ({placeholders})',
                     (g.student['courseid'], *module_ids))
    if len(found) != len(module_ids):
        raise ValidationError('Every module must belong to your course.')

    previous = query_db('SELECT moduleid FROM user_modules WHERE userid = ?', (g.student['id'],))
    query_db('DELETE FROM user_modules WHERE userid = ?', (g.student['id'],), commit=True)
    for module_id in module_ids:
        query_db('INSERT INTO user_modules (userid, moduleid) VALUES (?, ?)',
                 (g.student['id'], module_id), commit=True)
    for row in previous:
        if row['moduleid'] not in module_ids:
            realtime.evict(g.student['id'], room_for('module', row['moduleid']))

    rows = query_db(
        '''SELECT m.id, m.name, m.code, m.courseid FROM user_modules um
           JOIN modules m ON m.id = um.moduleid WHERE um.userid = ? ORDER BY m.code''',
        (g.student['id'],),
    )
    return jsonify(rows_to_dicts(rows))


@bp.route('/review', methods=['POST'])
@login_required
def submit_review():
    """Handles the one-off star rating and suggestion box."""
    data = json_body()
    review = data.get('review')
    if isinstance(review, bool) or not isinstance(review, int) or not 1 <= review <= 5:
        raise ValidationError('Review must be a whole number from 1 to 5.')
    if not g.student['canreview']:
        raise ConflictError('You have already submitted a review.')

    suggestion = text_field(data, 'suggestion') or None
    query_db('UPDATE students SET review = ?, suggestion = ?, canreview = 0 WHERE id = ?',
             (review, suggestion, g.student['id']), commit=True)
    return jsonify(serialize_student(_reload_student()))


@bp.route('/images')
def list_images():
    rows = query_db('SELECT * FROM profile_images WHERE is_active = 1 ORDER BY created_at DESC, id DESC')
    return jsonify(rows_to_dicts(rows))


@bp.route('/images/random')
def random_image():
    row = query_db('SELECT * FROM profile_images WHERE is_active = 1 ORDER BY RANDOM() LIMIT 1', one=True)
    if row is None:
        return jsonify({'image_url': None})
    return jsonify(row_to_dict(row))


@bp.route('/images/<int:image_id>')
def get_image(image_id):
    row = query_db('SELECT * FROM profile_images WHERE id = ? AND is_active = 1', (image_id,), one=True)
    if row is None:
        raise NotFoundError('Profile image not found')
    return jsonify(row_to_dict(row))
