import os
from io import BytesIO

import openpyxl
import pandas as pd
import pytest
from flask import session

import database
import security
from conftest import ADMIN_KEY, assert_store_invariants
from errors import NotRegistered
from team_logic import EXPORT_COLUMNS

ADMIN_HEADERS = {'X-Admin-Key': ADMIN_KEY}


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def roster(app):
    with app.app_context():
        for roll_no in ('AA001', 'AA002', 'AA003', 'AA004'):
            database.add_student(roll_no, f"Student {roll_no}", 'A')
        database.add_student('BB001', 'Student BB001', 'B')


def login(client, roll_no, batch='A'):
    with client.session_transaction() as sess:
        sess['roll_no'] = roll_no
        sess['batch'] = batch


def select(client, roll_no, choices):
    login(client, roll_no)
    return client.post('/team/selection', json={'choices': choices})


def test_health(client):
    assert client.get('/').get_json()['status'] == 'ok'
    assert client.get('/health').get_json() == {'status': 'healthy'}


def test_sign_in_requires_registration(app, roster):
    with app.test_request_context():
        with pytest.raises(NotRegistered) as excinfo:
            security.sign_in('ZZ999')
        assert excinfo.value.status_code == 403
        assert excinfo.value.to_dict() == {'error': 'Not registered. Contact admin.'}
        assert 'roll_no' not in session

        student = security.sign_in('AA001')
        assert student['roll_no'] == 'AA001'
        assert session['roll_no'] == 'AA001'
        assert session['batch'] == 'A'


def test_student_routes_need_session(client, roster):
    assert client.get('/students').status_code == 401
    assert client.get('/team/status').status_code == 401
    assert client.post('/team/selection', json={'choices': ['AA002', 'AA003']}).status_code == 401


def test_logout_clears_session(client, roster):
    login(client, 'AA001')
    assert client.get('/me').status_code == 200
    client.post('/auth/logout')
    assert client.get('/me').status_code == 401


def test_students_lists_own_batch(client, roster):
    login(client, 'AA001')
    data = client.get('/students').get_json()

    assert data['batch'] == 'A'
    assert [s['rollNo'] for s in data['students']] == ['AA001', 'AA002', 'AA003', 'AA004']
    assert all(s['selectable'] for s in data['students'])


def test_selection_flow_forms_team(app, client, roster):
    assert select(client, 'AA001', ['AA002', 'AA003']).get_json()['teamFormed'] is False
    assert select(client, 'AA002', ['AA001', 'AA003']).get_json()['teamFormed'] is False

    response = select(client, 'AA003', ['AA001', 'AA002'])
    assert response.status_code == 200
    assert response.get_json() == {'saved': True, 'editAttemptsLeft': 1, 'teamFormed': True}

    status = client.get('/team/status').get_json()
    assert status == {'state': 'formed', 'batch': 'A', 'team': ['AA001', 'AA002', 'AA003']}

    me = client.get('/me').get_json()
    assert me['teamId'] is not None
    assert me['currentChoices'] == []

    with app.app_context():
        assert_store_invariants()


@pytest.mark.parametrize('choices', [
    ['AA002'],
    ['AA002', 'AA003', 'AA004'],
    ['AA002', 'bad roll!'],
    'AA002',
])
def test_selection_rejects_bad_payload(client, roster, choices):
    response = select(client, 'AA001', choices)
    assert response.status_code == 400


@pytest.mark.parametrize('choices, status, message', [
    (['AA001', 'AA002'], 400, 'Cannot select yourself'),
    (['AA002', 'AA002'], 400, 'Cannot select same person twice'),
    (['AA002', 'BB001'], 400, 'Cross-batch selection not allowed'),
    (['AA002', 'ZZ999'], 404, 'One or more choices not found'),
])
def test_selection_reports_typed_failures(client, roster, choices, status, message):
    response = select(client, 'AA001', choices)
    assert response.status_code == status
    assert response.get_json() == {'error': message}


def test_selection_closed_gate(client, roster):
    client.post('/admin/selection/close', json={'batch': 'A'}, headers=ADMIN_HEADERS)

    response = select(client, 'AA001', ['AA002', 'AA003'])
    assert response.status_code == 403
    assert response.get_json() == {'error': 'Selection phase is closed'}


def test_admin_routes_need_key(client, roster):
    assert client.get('/admin/selection/status').status_code == 403
    assert client.get('/admin/selection/status', headers={'X-Admin-Key': 'wrong'}).status_code == 403
    assert client.post('/admin/finalize', json={'batch': 'A'}).status_code == 403


def test_admin_denied_when_key_not_configured(app, client):
    app.config['ADMIN_KEY'] = None
    assert client.get('/admin/selection/status', headers={'X-Admin-Key': ''}).status_code == 403


def test_selection_status_toggles(client):
    assert client.get('/admin/selection/status', headers=ADMIN_HEADERS).get_json() == {
        'A': {'selectionOpen': True},
        'B': {'selectionOpen': True},
    }

    response = client.post('/admin/selection/close', json={'batch': 'B'}, headers=ADMIN_HEADERS)
    assert response.get_json() == {'batch': 'B', 'selectionOpen': False}
    assert client.get('/admin/selection/status', headers=ADMIN_HEADERS).get_json()['B'] == {'selectionOpen': False}

    response = client.post('/admin/selection/open', json={'batch': 'B'}, headers=ADMIN_HEADERS)
    assert response.get_json() == {'batch': 'B', 'selectionOpen': True}


@pytest.mark.parametrize('path', ['/admin/selection/close', '/admin/finalize'])
def test_admin_batch_validation(client, path):
    response = client.post(path, json={'batch': 'C'}, headers=ADMIN_HEADERS)
    assert response.status_code == 400


def test_finalize_route(app, client, roster):
    response = client.post('/admin/finalize', json={'batch': 'A'}, headers=ADMIN_HEADERS)
    assert response.get_json() == {'finalized': True, 'teamsCreated': 2}

    with app.app_context():
        assert database.get_unassigned_roll_nos('A') == []
        assert database.get_unassigned_roll_nos('B') == ['BB001']
        assert_store_invariants()


def test_manual_team_and_dissolve(app, client, roster):
    response = client.post(
        '/admin/team/manual',
        json={'batch': 'A', 'members': ['AA004', 'AA001']},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    team = response.get_json()
    assert team['members'] == ['AA004', 'AA001']

    again = client.post(
        '/admin/team/manual',
        json={'batch': 'A', 'members': ['AA001']},
        headers=ADMIN_HEADERS,
    )
    assert again.status_code == 409

    response = client.delete(f"/admin/team/{team['id']}", headers=ADMIN_HEADERS)
    assert response.get_json() == {'success': True}
    assert client.delete(f"/admin/team/{team['id']}", headers=ADMIN_HEADERS).status_code == 404

    login(client, 'AA001')
    assert client.get('/team/status').get_json() == {'state': 'pending', 'batch': 'A'}


@pytest.mark.parametrize('payload, status', [
    ({'batch': 'A', 'members': []}, 400),
    ({'batch': 'A', 'members': ['AA001', 'AA002', 'AA003', 'AA004']}, 400),
    ({'batch': 'A', 'members': ['AA001', 'BB001']}, 400),
    ({'batch': 'A', 'members': ['ZZ999']}, 404),
    ({'batch': 'A', 'members': 'AA001'}, 400),
])
def test_manual_team_failures(client, roster, payload, status):
    response = client.post('/admin/team/manual', json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == status


def test_dashboard(client, roster):
    select(client, 'AA001', ['AA002', 'AA003'])

    data = client.get('/admin/dashboard?batch=A', headers=ADMIN_HEADERS).get_json()

    assert data['students'][0]['choices'] == ['AA002', 'AA003']
    assert data['teams'] == []
    assert data['summary']['pendingPreferences'] == 1
    assert client.get('/admin/dashboard', headers=ADMIN_HEADERS).status_code == 400


def test_export_teams_workbook(client, roster):
    client.post('/admin/finalize', json={'batch': 'A'}, headers=ADMIN_HEADERS)

    response = client.get('/admin/export/teams?batch=A', headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert 'Teams_Batch_A_' in response.headers['Content-Disposition']

    wb = openpyxl.load_workbook(BytesIO(response.data))
    ws = wb['Teams_Batch_A']
    rows = list(ws.iter_rows(values_only=True))
    assert list(rows[0]) == EXPORT_COLUMNS
    assert rows[1][:4] == (1, 'A', 'AA001', 'Student AA001')
    assert rows[2][:4] == (2, 'A', 'AA004', 'Student AA004')
    assert 'Summary' in wb.sheetnames


def test_upload_roster(app, client):
    df = pd.DataFrame([
        {'Roll No': 'CC00001', 'Name': 'First', 'Batch': 'a'},
        {'Roll No': 'CC00002', 'Name': 'Second', 'Batch': 'B'},
        {'Roll No': 'CC00003', 'Name': 'Third', 'Batch': 'Z'},
        {'Roll No': 'x', 'Name': 'Too Short', 'Batch': 'A'},
    ])

    def post_roster():
        buffer = BytesIO()
        df.to_excel(buffer, index=False, engine='openpyxl')
        buffer.seek(0)
        return client.post(
            '/admin/students/upload',
            data={'file': (buffer, 'roster.xlsx')},
            content_type='multipart/form-data',
            headers=ADMIN_HEADERS,
        )

    assert post_roster().get_json() == {'added': 2, 'duplicates': 0, 'skipped': 1}
    assert post_roster().get_json() == {'added': 0, 'duplicates': 2, 'skipped': 1}
    assert os.listdir(app.config['UPLOAD_FOLDER']) == []

    with app.app_context():
        student = database.get_student('CC00001')
        assert student['batch'] == 'A'
        assert student['edit_attempts_left'] == 2


def test_upload_unreadable_workbook_is_discarded(app, client):
    response = client.post(
        '/admin/students/upload',
        data={'file': (BytesIO(b'not a workbook'), 'roster.xlsx')},
        content_type='multipart/form-data',
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
    assert os.listdir(app.config['UPLOAD_FOLDER']) == []


def test_upload_rejects_non_excel(client):
    response = client.post(
        '/admin/students/upload',
        data={'file': (BytesIO(b'roll,name'), 'roster.csv')},
        content_type='multipart/form-data',
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
