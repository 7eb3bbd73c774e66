"""
Custom exception hierarchy for the reconciliation engine.

Hierarchy:

    TradeLedgerError (base)
    ├── OperationalError   — transient/retryable (upstream, storage, locks)
    │   ├── UpstreamTimeoutError
    │   │   └── PageLimitExceededError
    │   ├── PersistenceConflictError
    │   └── DiscrepancyApplyError
    ├── DataError          — bad row, drop it and count it
    │   ├── MalformedRecordError
    │   ├── InvalidExecutionError
    │   └── ValidationError
    └── InvariantError     — workflow violation, never continue silently
        └── DiscrepancyAlreadyResolvedError

Rules:
    - OperationalError: abort the run, nothing persisted, caller may retry.
    - DataError: absorb into run statistics, continue with the batch.
    - InvariantError: surface to the operator as-is.
"""


class TradeLedgerError(Exception):
    """Base exception for all reconciliation engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeLedgerError):
    """Transient/retryable error: upstream feed, storage, lock contention."""
    pass


class UpstreamTimeoutError(OperationalError):
    """The execution/income feed did not finish within the caller's timeout.

    Fatal to the run: everything fetched so far is discarded.
    """
    pass


class PageLimitExceededError(UpstreamTimeoutError):
    """The feed still had pages after the caller's page-count cap."""
    pass


class PersistenceConflictError(OperationalError):
    """Another run holds the write lock for the same account.

    The run is aborted before any write; the caller retries later.
    """

    def __init__(self, message: str, account_id: str | None = None):
        super().__init__(message)
        self.account_id = account_id


class DiscrepancyApplyError(OperationalError):
    """The balance correction write failed while applying a discrepancy fix.

    The discrepancy stays unresolved; the operator retries.
    """

    def __init__(self, message: str, discrepancy_id: str | None = None):
        super().__init__(message)
        self.discrepancy_id = discrepancy_id


# ============ DATA (bad input row, skip it) ============

class DataError(TradeLedgerError):
    """Bad input data for a single row.

    Treatment: catch, log, count, continue with the rest of the batch.
    """
    pass


class MalformedRecordError(DataError):
    """A raw feed record is missing a required field (symbol, price, quantity)."""

    def __init__(self, message: str, record: dict | None = None):
        super().__init__(message)
        self.record = record


class InvalidExecutionError(DataError):
    """An execution has a zero/negative quantity or price."""

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class ValidationError(DataError):
    """Raised when operator input fails validation."""
    pass


# ============ INVARIANT (workflow violation) ============

class InvariantError(TradeLedgerError):
    """A one-way state transition or ownership rule would be violated."""
    pass


class DiscrepancyAlreadyResolvedError(InvariantError):
    """Resolved is terminal; a resolved discrepancy cannot be resolved again."""
    pass
