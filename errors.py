"""
Failure types raised by the team logic and by student sign-in.

Every one of these is an expected, client-correctable condition. They are
raised before the first write of an operation, so a caller that sees one can
assume the store was left untouched.
"""


class TeamError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class NotFound(TeamError):
    status_code = 404


class AlreadyTeamed(TeamError):
    status_code = 409


class TargetAlreadyTeamed(AlreadyTeamed):
    pass


class NoAttemptsLeft(TeamError):
    status_code = 400


class SelectionClosed(TeamError):
    status_code = 403


class NotRegistered(TeamError):
    status_code = 403


class InvalidInput(TeamError):
    status_code = 400


class InvalidChoices(InvalidInput):
    pass


class SelfSelection(InvalidInput):
    pass


class DuplicateChoice(InvalidInput):
    pass


class InvalidSize(InvalidInput):
    pass


class CrossBatch(TeamError):
    status_code = 400


class TeamConflict(Exception):
    """A member was assigned to another team between the check and the commit."""

    def __init__(self, members):
        super().__init__(f"Team commit rejected, members no longer free: {members}")
        self.members = list(members)
