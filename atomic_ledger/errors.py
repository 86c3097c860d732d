"""
Error Taxonomy Module

Domain errors surfaced to callers of the transfer protocol and the fault
injector, and the store-level errors that LedgerStore implementations raise.
Every domain error carries a stable category and an HTTP status so the API
layer can render it without inspecting the message.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all errors surfaced by the ledger core"""
    
    category = "ledger_error"
    http_status = 500
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        """Structured error body"""
        body = {"category": self.category, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class InvalidTransfer(LedgerError):
    """
    Raised when a transfer request is malformed:
    - amount is zero, negative, non-finite or has sub-cent precision
    - source and destination are the same account
    """
    category = "invalid_transfer"
    http_status = 400


class AccountNotFound(LedgerError):
    """Raised when the source or destination account does not exist"""
    category = "account_not_found"
    http_status = 404


class InsufficientFunds(LedgerError):
    """Raised when the sender's balance is lower than the transfer amount"""
    category = "insufficient_funds"
    http_status = 400


class TransientConflict(LedgerError):
    """Raised when retryable store conflicts persisted past the retry budget"""
    category = "transient_conflict"
    http_status = 503


class PersistenceFailure(LedgerError):
    """Raised for any non-retryable store failure during the transfer protocol"""
    category = "persistence_failure"
    http_status = 500


class FaultInjectionFailure(LedgerError):
    """Raised when the external node-stop action could not be executed"""
    category = "fault_injection_failure"
    http_status = 500


# Store-level errors. These never leave the transfer coordinator.

class StoreError(Exception):
    """Permanent store failure (constraint violation, bad schema, ...)"""


class RetryableStoreError(StoreError):
    """Transaction aborted by the store; rerunning it may succeed"""


class StoreUnavailableError(StoreError):
    """Store cannot serve the request (quorum lost, node unreachable)"""
