"""
Error taxonomy for identity reconciliation
Every failure inside a reconciliation transaction rolls the transaction
back before one of these reaches the caller.
"""


class ReconciliationError(Exception):
    """Base class for reconciliation failures"""

    retryable = False


class InvalidObservation(ReconciliationError):
    """Neither an email nor a phone number was supplied"""


class IntegrityFault(ReconciliationError):
    """
    Stored contacts violate the cluster invariants, e.g. a secondary whose
    linked_id does not resolve to a live primary. Never repaired automatically.
    """


class ConflictError(ReconciliationError):
    """Transient store conflict (serialization failure, lock timeout); safe to retry"""

    retryable = True


class StoreUnavailable(ReconciliationError):
    """The underlying contact store could not be reached or failed on I/O"""
