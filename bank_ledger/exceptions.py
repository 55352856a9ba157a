"""
Ledger Exceptions

Domain errors raised by the account and loan ledgers and the transfer
coordinator. Validation errors remain ValueErrors so callers that only know
about bad input keep working.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors"""
    pass


class ValidationError(LedgerError, ValueError):
    """Raised for malformed input: bad term length, non-positive amounts"""
    pass


class NotFoundError(LedgerError, LookupError):
    """Raised when an account, loan, customer or record id is unknown"""
    pass


class InsufficientFundsError(LedgerError):
    """Raised when a debit would take an account below zero"""
    pass


class ConsistencyError(LedgerError):
    """
    A two-step operation partially failed and could not be compensated.

    The event has been written to the audit trail for manual reconciliation.
    """
    
    def __init__(self, message: str, operation: str = "", snapshot: dict = None):
        super().__init__(message)
        self.operation = operation
        self.snapshot = snapshot or {}


class LockTimeoutError(LedgerError, TimeoutError):
    """Raised when an entity lock cannot be acquired within the timeout"""
    pass
