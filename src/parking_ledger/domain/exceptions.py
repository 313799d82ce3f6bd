# File: src/parking_ledger/domain/exceptions.py
"""
Error taxonomy for the parking ledger

Every failure a caller can recover from is a LedgerError carrying a stable
error code and a human-readable message. The ledger never retries any of
them; retry policy belongs to the caller.
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base exception for ledger errors"""

    error_code = "LEDGER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class NotFoundError(LedgerError):
    """Unknown facility, or plate not parked where expected"""
    error_code = "NOT_FOUND"


class ConflictError(LedgerError):
    """Plate already parked, or a record closed twice"""
    error_code = "CONFLICT"


class CapacityExceededError(LedgerError):
    """Facility has no free places"""
    error_code = "CAPACITY_EXCEEDED"


class InvalidArgumentError(LedgerError, ValueError):
    """Malformed plate, blank search fragment or inverted time range"""
    error_code = "INVALID_ARGUMENT"


class LedgerStorageError(LedgerError):
    """Storage failure not otherwise classified; the transaction was rolled back"""
    error_code = "INTERNAL_ERROR"
