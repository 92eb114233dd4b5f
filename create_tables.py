"""Utility script to create the ModNet tables.

Usage:
    python create_tables.py            # uses database.sqlite in this folder
    python create_tables.py --db path/to/database.sqlite
    python create_tables.py --seed     # also add a demo course, modules and channels

Every service also creates missing tables on startup, so this is only needed
to prepare a database ahead of time.
"""

import argparse
import os
import sys

from modnet.db import connect, ensure_schema, utcnow_iso

DEMO_MODULES = (
    ('Software Engineering', 'CO2201'),
    ('Databases', 'CO2209'),
    ('Web Technologies', 'CO2219'),
    ('Algorithms', 'CO2212'),
)

DEMO_CHANNELS = (
    ('Study Group', 'Revision sessions and shared notes', 0),
    ('Course Reps', 'Student representatives', 1),
)


def seed(db_path: str) -> None:
    conn = connect(db_path)
    try:
        with conn:
            if conn.execute('SELECT 1 FROM courses LIMIT 1').fetchone():
                print('Database already has courses, skipping seed data.')
                return
            now = utcnow_iso()
            cur = conn.execute('INSERT INTO courses (name, code, created_at) VALUES (?, ?, ?)',
                               ('Computer Science', 'CS', now))
            for name, code in DEMO_MODULES:
                conn.execute('INSERT INTO modules (name, code, courseid, created_at) VALUES (?, ?, ?, ?)',
                             (name, code, cur.lastrowid, now))
            for name, description, is_private in DEMO_CHANNELS:
                conn.execute('INSERT INTO channels (name, description, is_private, created_at) VALUES (?, ?, ?, ?)',
                             (name, description, is_private, now))
        print(f'Seed data added to database: {db_path}')
    finally:
        conn.close()


def create_tables(db_path: str) -> None:
    if not os.path.exists(db_path):
        print(f"Warning: database file '{db_path}' does not exist. It will be created if the directory is writable.")
    try:
        ensure_schema(db_path)
        print(f'ModNet tables ensured in database: {db_path}')
    except Exception as e:
        print(f'Failed to create tables: {e}')
        raise


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Create the ModNet tables')
    parser.add_argument('--db', default='database.sqlite', help='Path to SQLite database file')
    parser.add_argument('--seed', action='store_true', help='Add demo course, modules and channels')
    args = parser.parse_args()

    try:
        create_tables(args.db)
        if args.seed:
            seed(args.db)
    except Exception:
        sys.exit(1)
