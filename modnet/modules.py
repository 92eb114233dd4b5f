import sqlite3

from flask import Blueprint, current_app, g, jsonify

from . import realtime
from .auth import admin_required, login_required
from .db import query_db, rows_to_dicts, utcnow_iso
from .errors import ConflictError, NotFoundError, ValidationError, int_field, json_body, text_field
from .rooms import room_for

bp = Blueprint('modules', __name__)

MODULE_WITH_COURSE = '''
    SELECT m.id, m.name, m.code, m.courseid, m.created_at,
           c.id AS course_id, c.name AS course_name, c.code AS course_code
    FROM modules m LEFT JOIN courses c ON c.id = m.courseid
'''


def serialize_module(row):
    module = {
        'id': row['id'],
        'name': row['name'],
        'code': row['code'],
        'courseid': row['courseid'],
        'created_at': row['created_at'],
        'courses': None,
    }
    if row['course_id'] is not None:
        module['courses'] = {'id': row['course_id'], 'name': row['course_name'], 'code': row['course_code']}
    return module


def get_module(module_id):
    row = query_db(MODULE_WITH_COURSE + ' WHERE m.id = ?', (module_id,), one=True)
    if row is None:
        raise NotFoundError('Module not found')
    return row


def get_course(course_id):
    row = query_db('SELECT * FROM courses WHERE id = ?', (course_id,), one=True)
    if row is None:
        raise NotFoundError('Course not found')
    return row


def enrolled_modules(student_id):
    rows = query_db(
        '''SELECT m.id, m.name, m.code, m.courseid FROM user_modules um
           JOIN modules m ON m.id = um.moduleid WHERE um.userid = ? ORDER BY m.code''',
        (student_id,),
    )
    return rows_to_dicts(rows)


def _module_fields(data, partial=False):
    fields = {}
    if 'name' in data or not partial:
        name = text_field(data, 'name')
        if not name:
            raise ValidationError('Module name is required')
        fields['name'] = name
    if 'code' in data:
        fields['code'] = text_field(data, 'code') or None
    if 'courseid' in data or not partial:
        course_id = int_field(data, 'courseid')
        if course_id is None:
            raise ValidationError('Course is required')
        fields['courseid'] = get_course(course_id)['id']
    return fields


@bp.route('/modules')
def list_modules():
    rows = query_db(MODULE_WITH_COURSE + ' ORDER BY m.code, m.id')
    return jsonify([serialize_module(r) for r in rows])


@bp.route('/modules/<int:module_id>')
def module_detail(module_id):
    return jsonify(serialize_module(get_module(module_id)))


@bp.route('/modules', methods=['POST'])
@admin_required
def create_module():
    fields = _module_fields(json_body())
    cur = query_db('INSERT INTO modules (name, code, courseid, created_at) VALUES (?, ?, ?, ?)',
                   (fields['name'], fields.get('code'), fields['courseid'], utcnow_iso()), commit=True)
    current_app.logger.info('Module %s created', cur.lastrowid)
    return jsonify(serialize_module(get_module(cur.lastrowid))), 201


@bp.route('/modules/<int:module_id>', methods=['PUT'])
@admin_required
def update_module(module_id):
    get_module(module_id)
    fields = _module_fields(json_body(), partial=True)
    if not fields:
        raise ValidationError('No module fields to update')

    assignments = ', '.join(f'{name} = ?' for name in fields)
    query_db(f'UPDATE modules SET {assignments} WHERE id = ?', (*fields.values(), module_id), commit=True)
    return jsonify(serialize_module(get_module(module_id)))


@bp.route('/modules/<int:module_id>', methods=['DELETE'])
@admin_required
def delete_module(module_id):
    """Handles removing a module. Its chat history is retained."""
    get_module(module_id)
    query_db('DELETE FROM user_modules WHERE moduleid = ?', (module_id,), commit=True)
    query_db('DELETE FROM modules WHERE id = ?', (module_id,), commit=True)
    realtime.close_room(room_for('module', module_id))
    current_app.logger.info('Module %s deleted', module_id)
    return jsonify({'success': True})


@bp.route('/modules/user/<int:student_id>')
@login_required
def modules_for_student(student_id):
    return jsonify(enrolled_modules(student_id))


@bp.route('/modules/<int:module_id>/enroll', methods=['POST'])
@login_required
def enroll(module_id):
    get_module(module_id)
    student_id = g.student['id']

    count = query_db('SELECT COUNT(*) AS n FROM user_modules WHERE userid = ?', (student_id,), one=True)['n']
    existing = query_db('SELECT 1 FROM user_modules WHERE userid = ? AND moduleid = ?',
                        (student_id, module_id), one=True)
    if existing is not None:
        raise ConflictError('Already enrolled in this module')

    max_modules = current_app.config['MAX_MODULES']
    if count >= max_modules:
        raise ValidationError(f'You can select up to {max_modules} modules.')

    try:
        query_db('INSERT INTO user_modules (userid, moduleid) VALUES (?, ?)', (student_id, module_id), commit=True)
    except sqlite3.IntegrityError:
        raise ConflictError('Already enrolled in this module')

    return jsonify({'userid': student_id, 'moduleid': module_id}), 201


@bp.route('/modules/<int:module_id>/unenroll', methods=['DELETE'])
@login_required
def unenroll(module_id):
    query_db('DELETE FROM user_modules WHERE userid = ? AND moduleid = ?',
             (g.student['id'], module_id), commit=True)
    realtime.evict(g.student['id'], room_for('module', module_id))
    return jsonify({'success': True})


@bp.route('/courses')
def list_courses():
    rows = query_db('SELECT * FROM courses ORDER BY code, id')
    return jsonify(rows_to_dicts(rows))


@bp.route('/courses/<int:course_id>')
def course_detail(course_id):
    return jsonify(dict(get_course(course_id)))


@bp.route('/courses/<int:course_id>/modules')
def course_modules(course_id):
    get_course(course_id)
    rows = query_db(MODULE_WITH_COURSE + ' WHERE m.courseid = ? ORDER BY m.code, m.id', (course_id,))
    return jsonify([serialize_module(r) for r in rows])
