import sqlite3
from contextlib import contextmanager

from flask import g, current_app

from errors import TeamConflict

SCHEMA = """
    CREATE TABLE IF NOT EXISTS teams (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        batch TEXT NOT NULL CHECK (batch IN ('A', 'B')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS team_members (
        team_id INTEGER NOT NULL,
        position INTEGER NOT NULL,
        roll_no TEXT UNIQUE NOT NULL,
        PRIMARY KEY (team_id, position),
        FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        roll_no TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        batch TEXT NOT NULL CHECK (batch IN ('A', 'B')),
        team_id INTEGER DEFAULT NULL,
        edit_attempts_left INTEGER NOT NULL DEFAULT 2
            CHECK (edit_attempts_left BETWEEN 0 AND 2),
        FOREIGN KEY (team_id) REFERENCES teams(id)
    );

    CREATE TABLE IF NOT EXISTS preferences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        roll_no TEXT UNIQUE NOT NULL,
        batch TEXT NOT NULL CHECK (batch IN ('A', 'B')),
        choice_1 TEXT NOT NULL,
        choice_2 TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS settings (
        batch TEXT PRIMARY KEY CHECK (batch IN ('A', 'B')),
        selection_open INTEGER NOT NULL DEFAULT 1
    );
"""


def get_db():
    """Get a database connection"""
    if 'db' not in g:
        g.db = sqlite3.connect(current_app.config['DATABASE'])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


def close_db(e=None):
    """Close the database connection"""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def init_db():
    """Initialize the database with required tables"""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def init_app(app):
    app.teardown_appcontext(close_db)
    with app.app_context():
        init_db()


def query_db(query, args=(), one=False):
    """Execute a query and return results"""
    db = get_db()
    cur = db.execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


def execute_db(query, args=()):
    """Execute a query that doesn't return results"""
    db = get_db()
    db.execute(query, args)
    db.commit()


@contextmanager
def transaction():
    """
    Run a block of writes as one IMMEDIATE transaction.

    The write lock is taken up front, so reads made inside the block see the
    state the writes will commit against. Any exception rolls everything back.
    """
    db = get_db()
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()


def _placeholders(values):
    return ','.join('?' for _ in values)


# Student operations
def get_student(roll_no):
    row = query_db("SELECT * FROM students WHERE roll_no = ?", [roll_no], one=True)
    return dict(row) if row else None


def get_students(roll_nos):
    roll_nos = list(roll_nos)
    if not roll_nos:
        return []
    rows = query_db(
        f"SELECT * FROM students WHERE roll_no IN ({_placeholders(roll_nos)}) ORDER BY id",
        roll_nos
    )
    return [dict(r) for r in rows]


def get_students_by_batch(batch):
    rows = query_db("SELECT * FROM students WHERE batch = ? ORDER BY id", [batch])
    return [dict(r) for r in rows]


def get_unassigned_roll_nos(batch, db=None):
    db = db or get_db()
    rows = db.execute(
        "SELECT roll_no FROM students WHERE batch = ? AND team_id IS NULL ORDER BY id",
        [batch]
    ).fetchall()
    return [r['roll_no'] for r in rows]


def add_student(roll_no, name, batch):
    try:
        execute_db(
            "INSERT INTO students (roll_no, name, batch) VALUES (?, ?, ?)",
            (roll_no, name, batch)
        )
        return True
    except sqlite3.IntegrityError:
        return False


def spend_edit_attempt(db, roll_no):
    """Decrement the budget only while the student is still free and has attempts left."""
    cur = db.execute(
        """UPDATE students SET edit_attempts_left = edit_attempts_left - 1
        WHERE roll_no = ? AND team_id IS NULL AND edit_attempts_left > 0""",
        [roll_no]
    )
    return cur.rowcount == 1


# Preference operations
def _preference_from_row(row):
    pref = dict(row)
    pref['choices'] = [pref.pop('choice_1'), pref.pop('choice_2')]
    return pref


def get_preference(roll_no):
    row = query_db("SELECT * FROM preferences WHERE roll_no = ?", [roll_no], one=True)
    return _preference_from_row(row) if row else None


def get_preferences_by_batch(batch):
    rows = query_db("SELECT * FROM preferences WHERE batch = ?", [batch])
    return {r['roll_no']: _preference_from_row(r)['choices'] for r in rows}


def upsert_preference(db, roll_no, batch, choices):
    db.execute(
        """INSERT INTO preferences (roll_no, batch, choice_1, choice_2, updated_at)
        VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(roll_no) DO UPDATE SET
            batch = excluded.batch,
            choice_1 = excluded.choice_1,
            choice_2 = excluded.choice_2,
            updated_at = excluded.updated_at""",
        (roll_no, batch, choices[0], choices[1])
    )


def delete_preferences(db, roll_nos):
    roll_nos = list(roll_nos)
    db.execute(
        f"DELETE FROM preferences WHERE roll_no IN ({_placeholders(roll_nos)})",
        roll_nos
    )


# Settings operations
def get_selection_open(batch):
    row = query_db("SELECT selection_open FROM settings WHERE batch = ?", [batch], one=True)
    if row is None:
        return None
    return bool(row['selection_open'])


def set_selection_open(batch, is_open, db=None):
    sql = """INSERT INTO settings (batch, selection_open) VALUES (?, ?)
        ON CONFLICT(batch) DO UPDATE SET selection_open = excluded.selection_open"""
    if db is not None:
        db.execute(sql, (batch, int(is_open)))
    else:
        execute_db(sql, (batch, int(is_open)))


# Team operations
def _team_from_row(row, db=None):
    db = db or get_db()
    members = db.execute(
        "SELECT roll_no FROM team_members WHERE team_id = ? ORDER BY position",
        [row['id']]
    ).fetchall()
    return {
        'id': row['id'],
        'batch': row['batch'],
        'members': [m['roll_no'] for m in members],
        'created_at': row['created_at'],
    }


def get_team(team_id):
    row = query_db("SELECT * FROM teams WHERE id = ?", [team_id], one=True)
    return _team_from_row(row) if row else None


def get_teams_by_batch(batch):
    rows = query_db("SELECT * FROM teams WHERE batch = ? ORDER BY created_at, id", [batch])
    return [_team_from_row(r) for r in rows]


def insert_team(db, batch, members):
    """
    Create a team and claim its members inside the caller's transaction.

    Members are claimed with a conditional update; if any of them is no longer
    free (or not in ``batch``) the affected row count comes up short and
    TeamConflict is raised so the surrounding transaction rolls back.
    Preferences of the members are removed in the same step.
    """
    cur = db.execute("INSERT INTO teams (batch) VALUES (?)", [batch])
    team_id = cur.lastrowid

    cur = db.execute(
        f"""UPDATE students SET team_id = ?
        WHERE batch = ? AND team_id IS NULL AND roll_no IN ({_placeholders(members)})""",
        [team_id, batch, *members]
    )
    if cur.rowcount != len(members):
        raise TeamConflict(members)

    try:
        db.executemany(
            "INSERT INTO team_members (team_id, position, roll_no) VALUES (?, ?, ?)",
            [(team_id, position, roll_no) for position, roll_no in enumerate(members)]
        )
    except sqlite3.IntegrityError:
        raise TeamConflict(members)

    delete_preferences(db, members)

    row = db.execute("SELECT * FROM teams WHERE id = ?", [team_id]).fetchone()
    return _team_from_row(row, db)


def remove_team(db, team_id):
    db.execute("UPDATE students SET team_id = NULL WHERE team_id = ?", [team_id])
    db.execute("DELETE FROM team_members WHERE team_id = ?", [team_id])
    db.execute("DELETE FROM teams WHERE id = ?", [team_id])
