from .db import query_db
from .errors import ForbiddenError, ValidationError

# message type -> (table, room column)
MESSAGE_TABLES = {
    'module': ('messages', 'moduleid'),
    'group': ('group_messages', 'channel_id'),
}

ROOM_PREFIX = {'module': 'module', 'group': 'channel'}


def message_type(value):
    """Accepts the API's 'module'/'group' and the socket's 'channel' spelling."""
    if not isinstance(value, str):
        raise ValidationError('Room type must be module or channel')
    value = value.strip().lower()
    if value == 'channel':
        value = 'group'
    if value not in MESSAGE_TABLES:
        raise ValidationError('Room type must be module or channel')
    return value


def room_for(room_type, room_id):
    return f'{ROOM_PREFIX[message_type(room_type)]}:{int(room_id)}'


def has_access(student_id, room_type, room_id):
    if message_type(room_type) == 'module':
        row = query_db('SELECT 1 FROM user_modules WHERE userid = ? AND moduleid = ?',
                       (student_id, room_id), one=True)
    else:
        row = query_db('SELECT 1 FROM channel_members WHERE student_id = ? AND channel_id = ?',
                       (student_id, room_id), one=True)
    return row is not None


def check_access(student_id, room_type, room_id):
    if not has_access(student_id, room_type, room_id):
        if message_type(room_type) == 'module':
            raise ForbiddenError("You don't have access to this module's chat.")
        raise ForbiddenError("You don't have access to this group's chat.")
