import logging
from typing import Dict, List, Optional, Sequence

import database
from errors import (
    AlreadyTeamed,
    CrossBatch,
    DuplicateChoice,
    InvalidChoices,
    InvalidInput,
    InvalidSize,
    NoAttemptsLeft,
    NotFound,
    SelectionClosed,
    SelfSelection,
    TargetAlreadyTeamed,
    TeamConflict,
)

BATCHES = ('A', 'B')
TEAM_SIZE = 3

EXPORT_COLUMNS = [
    'Team No', 'Batch',
    'Member 1 Roll', 'Member 1 Name',
    'Member 2 Roll', 'Member 2 Name',
    'Member 3 Roll', 'Member 3 Name',
]


class TeamLogic:
    """
    Mutual-selection team matching for a batch of students.

    Nothing is cached between calls: every operation re-reads the rows it
    decides on, and every multi-row write goes through one store transaction.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    # Selection gate

    def is_selection_open(self, batch: str) -> bool:
        selection_open = database.get_selection_open(batch)
        return True if selection_open is None else selection_open

    def open_selection(self, batch: str) -> Dict:
        database.set_selection_open(batch, True)
        self.logger.info(f"Selection opened for batch {batch}")
        return {'batch': batch, 'selectionOpen': True}

    def close_selection(self, batch: str) -> Dict:
        database.set_selection_open(batch, False)
        self.logger.info(f"Selection closed for batch {batch}")
        return {'batch': batch, 'selectionOpen': False}

    def get_selection_status(self) -> Dict:
        return {batch: {'selectionOpen': self.is_selection_open(batch)} for batch in BATCHES}

    # Preferences

    def save_preference(self, roll_no: str, choices: Sequence[str]) -> Dict:
        """
        Validate and record a student's two choices, then try to form a team.

        All checks run before the first write. A successful call spends one
        edit attempt and may create a team and remove up to three preferences.
        """
        student = database.get_student(roll_no)
        if not student:
            raise NotFound('Student not found')
        if student['team_id'] is not None:
            raise AlreadyTeamed('Already in a team')
        if student['edit_attempts_left'] <= 0:
            raise NoAttemptsLeft('No edit attempts left')

        batch = student['batch']
        if not self.is_selection_open(batch):
            raise SelectionClosed('Selection phase is closed')

        if not isinstance(choices, (list, tuple)) or len(choices) != 2:
            raise InvalidChoices('Must select exactly 2 teammates')
        if not all(isinstance(c, str) for c in choices):
            raise InvalidChoices('Choices must be roll numbers')
        if roll_no in choices:
            raise SelfSelection('Cannot select yourself')
        if choices[0] == choices[1]:
            raise DuplicateChoice('Cannot select same person twice')

        chosen = database.get_students(choices)
        if len(chosen) != 2:
            raise NotFound('One or more choices not found')
        for c in chosen:
            if c['batch'] != batch:
                raise CrossBatch('Cross-batch selection not allowed')
            if c['team_id'] is not None:
                raise TargetAlreadyTeamed(f"{c['roll_no']} is already in a team")

        with database.transaction() as conn:
            if not database.spend_edit_attempt(conn, roll_no):
                # Lost a race with a team assignment or another submission
                current = dict(conn.execute(
                    "SELECT team_id FROM students WHERE roll_no = ?", [roll_no]
                ).fetchone())
                if current['team_id'] is not None:
                    raise AlreadyTeamed('Already in a team')
                raise NoAttemptsLeft('No edit attempts left')
            database.upsert_preference(conn, roll_no, batch, list(choices))

        self.logger.debug(f"Preference saved for {roll_no}: {list(choices)}")

        team = self.try_form_team(roll_no)

        return {
            'saved': True,
            'editAttemptsLeft': student['edit_attempts_left'] - 1,
            'teamFormed': team is not None,
        }

    # Consensus matching

    def try_form_team(self, roll_no: str) -> Optional[Dict]:
        """
        Form a team if ``roll_no`` and both of its choices name each other.

        Returns the new team, or None when there is no 3-cycle or when another
        request claimed one of the members first.
        """
        student = database.get_student(roll_no)
        if not student or student['team_id'] is not None:
            return None

        pref = database.get_preference(roll_no)
        if not pref or len(set(pref['choices'])) != 2 or roll_no in pref['choices']:
            return None

        choice_b, choice_c = pref['choices']
        partners = database.get_students([choice_b, choice_c])
        if len(partners) != 2:
            return None
        for partner in partners:
            if partner['batch'] != student['batch'] or partner['team_id'] is not None:
                return None

        pref_b = database.get_preference(choice_b)
        pref_c = database.get_preference(choice_c)
        if not pref_b or not pref_c:
            return None

        is_cycle = (
            set(pref['choices']) == {choice_b, choice_c}
            and set(pref_b['choices']) == {roll_no, choice_c}
            and set(pref_c['choices']) == {roll_no, choice_b}
        )
        if not is_cycle:
            return None

        members = sorted([roll_no, choice_b, choice_c])
        try:
            with database.transaction() as conn:
                team = database.insert_team(conn, student['batch'], members)
        except TeamConflict:
            self.logger.warning(f"Team {members} already claimed by a concurrent request")
            return None

        self.logger.info(f"Team {team['id']} formed by mutual selection: {members}")
        return team

    # Administrative lifecycle

    def finalize_teams(self, batch: str) -> Dict:
        """Close selection and group every remaining student into teams of three."""
        teams_created = 0
        with database.transaction() as conn:
            database.set_selection_open(batch, False, db=conn)
            roll_nos = database.get_unassigned_roll_nos(batch, db=conn)
            for start in range(0, len(roll_nos), TEAM_SIZE):
                database.insert_team(conn, batch, roll_nos[start:start + TEAM_SIZE])
                teams_created += 1

        self.logger.info(f"Finalized batch {batch}: {teams_created} teams created")
        return {'finalized': True, 'teamsCreated': teams_created}

    def manual_create_team(self, batch: str, members: Sequence[str]) -> Dict:
        if not isinstance(members, (list, tuple)) or not 1 <= len(members) <= TEAM_SIZE:
            raise InvalidSize(f'Team must have 1-{TEAM_SIZE} members')
        if not all(isinstance(m, str) for m in members):
            raise InvalidInput('Members must be roll numbers')
        if len(set(members)) != len(members):
            raise InvalidInput('Team members must be distinct')

        found = {s['roll_no']: s for s in database.get_students(members)}
        missing = [m for m in members if m not in found]
        if missing:
            raise NotFound(f"Students not found: {', '.join(missing)}")
        for m in members:
            if found[m]['batch'] != batch:
                raise CrossBatch(f'{m} is not in batch {batch}')
            if found[m]['team_id'] is not None:
                raise AlreadyTeamed(f'{m} is already in a team')

        try:
            with database.transaction() as conn:
                team = database.insert_team(conn, batch, list(members))
        except TeamConflict as e:
            raise AlreadyTeamed('One or more members were assigned to a team meanwhile') from e

        self.logger.info(f"Team {team['id']} created manually in batch {batch}: {team['members']}")
        return team

    def dissolve_team(self, team_id: int) -> Dict:
        team = database.get_team(team_id)
        if not team:
            raise NotFound('Team not found')

        with database.transaction() as conn:
            database.remove_team(conn, team_id)

        self.logger.info(f"Team {team_id} dissolved, members released: {team['members']}")
        return {'success': True}

    # Projections

    def get_students_by_batch(self, batch: str) -> List[Dict]:
        return [
            {
                'rollNo': s['roll_no'],
                'name': s['name'],
                'selectable': s['team_id'] is None,
            }
            for s in database.get_students_by_batch(batch)
        ]

    def get_team_status(self, roll_no: str) -> Dict:
        """Only the caller's own team is ever revealed; pending says nothing about choices."""
        student = database.get_student(roll_no)
        if not student:
            raise NotFound('Student not found')

        if student['team_id'] is not None:
            team = database.get_team(student['team_id'])
            return {
                'state': 'formed',
                'batch': student['batch'],
                'team': team['members'] if team else [],
            }

        return {'state': 'pending', 'batch': student['batch']}

    def get_student_profile(self, roll_no: str) -> Dict:
        student = database.get_student(roll_no)
        if not student:
            raise NotFound('Student not found')

        pref = database.get_preference(roll_no)
        return {
            'rollNo': student['roll_no'],
            'name': student['name'],
            'batch': student['batch'],
            'teamId': student['team_id'],
            'editAttemptsLeft': student['edit_attempts_left'],
            'currentChoices': pref['choices'] if pref else [],
        }

    def get_export_data(self, batch: str) -> List[Dict]:
        """One row per team, in creation order, with up to three roll/name pairs."""
        names = {s['roll_no']: s['name'] for s in database.get_students_by_batch(batch)}

        rows = []
        for index, team in enumerate(database.get_teams_by_batch(batch), 1):
            row = {'Team No': index, 'Batch': team['batch']}
            for slot in range(TEAM_SIZE):
                roll_no = team['members'][slot] if slot < len(team['members']) else ''
                row[f'Member {slot + 1} Roll'] = roll_no
                row[f'Member {slot + 1} Name'] = names.get(roll_no, '')
            rows.append(row)
        return rows

    def get_admin_dashboard_data(self, batch: str) -> Dict:
        students = database.get_students_by_batch(batch)
        preferences = database.get_preferences_by_batch(batch)
        teams = database.get_teams_by_batch(batch)

        assigned = sum(1 for s in students if s['team_id'] is not None)
        return {
            'batch': batch,
            'selectionOpen': self.is_selection_open(batch),
            'students': [
                {
                    'rollNo': s['roll_no'],
                    'name': s['name'],
                    'teamId': s['team_id'],
                    'editAttemptsLeft': s['edit_attempts_left'],
                    'choices': preferences.get(s['roll_no'], []),
                }
                for s in students
            ],
            'teams': [self.team_payload(t) for t in teams],
            'summary': {
                'totalStudents': len(students),
                'assigned': assigned,
                'unassigned': len(students) - assigned,
                'teams': len(teams),
                'pendingPreferences': len(preferences),
            },
        }

    @staticmethod
    def team_payload(team: Dict) -> Dict:
        return {
            'id': team['id'],
            'batch': team['batch'],
            'members': team['members'],
            'createdAt': team['created_at'],
        }


# Global instance for import
team_logic = TeamLogic()
