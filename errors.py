class LedgerError(Exception):
    """Base class for every error raised by the ledger services."""


class NotFound(LedgerError, LookupError):
    """A referenced user, account or transaction does not exist."""


class InvalidArgument(LedgerError, ValueError):
    """Input rejected before touching the store (negative amount, bad count...)."""


class ConstraintViolation(LedgerError, ValueError):
    """The store rejected a write that breaks a foreign-key, unique or check rule."""


class StorageFailure(LedgerError, RuntimeError):
    """The underlying database could not complete the unit of work."""


class BulkLoadFailed(StorageFailure):
    def __init__(self, message: str, *, requested: int, inserted: int = 0) -> None:
        super().__init__(message)
        self.requested = requested
        self.inserted = inserted
