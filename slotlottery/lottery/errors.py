"""
Lottery exception classes.

Engine code raises these; :mod:`slotlottery.workflows` turns them into
failed :class:`~slotlottery.lottery.types.OperationResult` values so callers
never have to catch them.
"""


class LotteryError(Exception):
    """
    Base class for every domain failure. ``code`` is stable for API consumers.
    """

    code = "lottery_error"
    default_message = "Lottery operation failed."

    def __init__(self, msg=None, *args, **kwargs):
        super().__init__(msg or self.default_message, *args, **kwargs)

    @property
    def message(self) -> str:
        return str(self.args[0])


class NotFoundError(LotteryError):
    """
    Raises when the referenced event, session or entry does not exist.
    """

    code = "not_found"
    default_message = "Requested object was not found."


class AuthorizationError(LotteryError):
    """
    Raises when the caller is not the organizer of the target event.
    """

    code = "unauthorized"
    default_message = "Only the event organizer may perform this action."


class WindowClosedError(LotteryError):
    """
    Raises when an entry is submitted outside the entry window or while the
    session is not accepting entries.
    """

    code = "window_closed"
    default_message = "The lottery is not accepting entries."


class DuplicateEntryError(LotteryError):
    code = "duplicate_entry"
    default_message = "An entry for this applicant and slot already exists."


class AlreadyCompletedError(LotteryError):
    code = "already_completed"
    default_message = "The lottery session is already completed."


class ValidationError(LotteryError):
    code = "validation_error"
    default_message = "Invalid input."


class PersistenceError(LotteryError):
    """
    Wraps a database failure raised while committing an atomic unit.
    """

    code = "persistence_error"
    default_message = "Failed to persist the lottery change."


__all__ = [
    "AlreadyCompletedError",
    "AuthorizationError",
    "DuplicateEntryError",
    "LotteryError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    "WindowClosedError",
]
