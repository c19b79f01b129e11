"""
Business logic services for Identity Reconciliation API
Contains the reconciliation engine and the contact stores it runs against
"""

from .contact_store import ContactStore
from .exceptions import (
    ConflictError,
    IntegrityFault,
    InvalidObservation,
    ReconciliationError,
    StoreUnavailable,
)
from .identity_service import IdentityService
from .memory_store import InMemoryContactStore

__all__ = [
    "ContactStore",
    "ConflictError",
    "IdentityService",
    "InMemoryContactStore",
    "IntegrityFault",
    "InvalidObservation",
    "ReconciliationError",
    "StoreUnavailable",
]
