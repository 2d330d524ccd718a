class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    """Bad input. Rejected immediately and never queued."""


class NotFoundError(LedgerServiceError):
    """A referenced loan, user or transaction does not exist (yet)."""


class ConflictError(LedgerServiceError):
    def __init__(self, message: str, conflict=None):
        super().__init__(message)
        self.conflict = conflict


class TransientError(LedgerServiceError):
    """Storage or carrier unreachable. Safe to retry."""


class DuplicateError(LedgerServiceError):
    """The idempotence key was already applied; callers treat this as success."""


class InvalidStateTransitionError(LedgerServiceError):
    pass
