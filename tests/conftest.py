import pytest

import database
from app import create_app
from team_logic import TeamLogic

ADMIN_KEY = 'test-admin-key'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'DATABASE': str(tmp_path / 'teams.db'),
        'ADMIN_KEY': ADMIN_KEY,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'EXPORT_FOLDER': str(tmp_path / 'exports'),
    })
    return app


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def logic(app_ctx):
    return TeamLogic()


@pytest.fixture
def add_students(app_ctx):
    """Register students in a batch and return their roll numbers."""
    def _add(batch, *roll_nos):
        for roll_no in roll_nos:
            assert database.add_student(roll_no, f"Student {roll_no}", batch)
        return list(roll_nos)
    return _add


def assert_store_invariants():
    """Checks that must hold after any sequence of operations."""
    students = [dict(r) for r in database.query_db("SELECT * FROM students")]
    preferences = {r['roll_no'] for r in database.query_db("SELECT roll_no FROM preferences")}
    by_roll = {s['roll_no']: s for s in students}

    for s in students:
        if s['team_id'] is not None:
            assert s['roll_no'] not in preferences, f"{s['roll_no']} is teamed but still has a preference"
        assert 0 <= s['edit_attempts_left'] <= 2

    for row in database.query_db("SELECT * FROM teams"):
        team = database.get_team(row['id'])
        assert 1 <= len(team['members']) <= 3
        assert len(set(team['members'])) == len(team['members'])
        for roll_no in team['members']:
            assert by_roll[roll_no]['batch'] == team['batch']
            assert by_roll[roll_no]['team_id'] == team['id']
