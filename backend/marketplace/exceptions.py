"""
Lifecycle engine error taxonomy.

Not-found errors surface to the caller. Concurrency conflicts are normally
swallowed by the cycle that hit them and only raised from read paths that
ran out of re-check attempts. Transient datastore errors are raised once
acquisition retries are exhausted.
"""


class LifecycleError(Exception):
    """Base class for lifecycle engine failures."""
    pass


class ApplicationNotFoundError(LifecycleError):
    """Raised when a referenced application does not exist."""

    def __init__(self, application_id: int):
        self.application_id = application_id
        super().__init__(f"Application {application_id} not found")


class LedgerEntryNotFoundError(LifecycleError):
    """Raised when a referenced revenue collection entry does not exist."""

    def __init__(self, entry_id: int):
        self.entry_id = entry_id
        super().__init__(f"Revenue collection entry {entry_id} not found")


class ConcurrencyConflictError(LifecycleError):
    """Raised when a status kept moving under a read path."""
    pass


class InvalidTransitionError(LifecycleError):
    """Raised when an operator action is not legal from the current status."""
    pass


class UnknownCheckKindError(LifecycleError):
    """Raised for an unrecognised manual check kind."""
    pass


class TransientDatastoreError(LifecycleError):
    """Raised when a datastore connection cannot be acquired."""
    pass


class TransactionBudgetExceededError(LifecycleError):
    """Raised when a unit of work outlives its time budget. The unit is rolled back."""
    pass
