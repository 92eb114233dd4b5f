import sqlite3
from datetime import datetime, timedelta, timezone

import click
from flask import current_app, g

SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    last_sign_in_at TEXT
);

CREATE TABLE IF NOT EXISTS otp_codes (
    email TEXT PRIMARY KEY,
    code_hash TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS modules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT,
    courseid INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS students (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    userid TEXT NOT NULL UNIQUE REFERENCES users(id),
    email TEXT NOT NULL,
    displayname TEXT NOT NULL,
    profileimage TEXT,
    courseid INTEGER,
    semester TEXT,
    canreview INTEGER NOT NULL DEFAULT 1,
    review INTEGER,
    suggestion TEXT,
    consent_accepted INTEGER NOT NULL DEFAULT 0,
    consent_accepted_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_modules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    userid INTEGER NOT NULL REFERENCES students(id),
    moduleid INTEGER NOT NULL REFERENCES modules(id),
    UNIQUE (userid, moduleid)
);

CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    is_private INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL REFERENCES channels(id),
    student_id INTEGER NOT NULL REFERENCES students(id),
    joined_at TEXT NOT NULL,
    UNIQUE (channel_id, student_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    moduleid INTEGER NOT NULL,
    userid INTEGER REFERENCES students(id),
    content TEXT,
    attachment_url TEXT,
    attachment_name TEXT,
    reply_to_id INTEGER REFERENCES messages(id),
    created_at TEXT NOT NULL,
    edited_at TEXT,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS group_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL,
    userid INTEGER REFERENCES students(id),
    content TEXT,
    attachment_url TEXT,
    attachment_name TEXT,
    reply_to_id INTEGER REFERENCES group_messages(id),
    created_at TEXT NOT NULL,
    edited_at TEXT,
    deleted_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_room ON messages (moduleid, created_at);
CREATE INDEX IF NOT EXISTS idx_group_messages_room ON group_messages (channel_id, created_at);

CREATE TABLE IF NOT EXISTS reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL,
    message_type TEXT NOT NULL,
    reported_by INTEGER REFERENCES students(id),
    reason TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS profile_images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_url TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
'''


def utcnow():
    return datetime.now(timezone.utc)


def utcnow_iso(offset_seconds=0):
    """
    Current UTC time as a fixed-width ISO string. Every timestamp column uses
    this format, so string comparison in SQL orders them correctly.
    """
    moment = utcnow() + timedelta(seconds=offset_seconds)
    return moment.isoformat(timespec='microseconds')


def connect(path):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def get_db():
    """
    Connect to the application's configured database. The connection
    is unique for each request and will be reused if this is called
    again.
    """
    if 'db' not in g:
        g.db = connect(current_app.config['DATABASE'])

    return g.db


def close_connection(exception=None):
    """Closes the database again at the end of the request."""
    db = g.pop('db', None)

    if db is not None:
        db.close()


def query_db(query, args=(), one=False, commit=False):
    """
    Queries the database and returns a list of rows, a single row, or None.
    With commit=True the write is committed and the cursor is returned so
    callers can read lastrowid / rowcount.
    """
    db = get_db()

    # The connection context manager commits on success and rolls back on error
    with db:
        cur = db.execute(query, args)

    if commit:
        return cur

    rv = cur.fetchall()
    return (rv[0] if rv else None) if one else rv


def row_to_dict(row):
    return dict(row) if row is not None else None


def rows_to_dicts(rows):
    return [dict(r) for r in rows]


def ensure_schema(db_path):
    conn = connect(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()


@click.command('init-db')
def init_db_command():
    """Create every ModNet table in the configured database."""
    ensure_schema(current_app.config['DATABASE'])
    click.echo(f"Database ready: {current_app.config['DATABASE']}")


def init_app(app):
    app.teardown_appcontext(close_connection)
    app.cli.add_command(init_db_command)
