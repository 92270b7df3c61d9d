"""
Exceptions for the payintent verifier.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """
    Error codes shared by exceptions and verification results.

    CONFIRMATION_PENDING is informational: a match was found but it is not
    yet buried deep enough to satisfy the confirmation policy.
    """
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RPC_ERROR = "RPC_ERROR"
    EXPIRED_ERROR = "EXPIRED_ERROR"
    CONFIRMATION_PENDING = "CONFIRMATION_PENDING"
    CHAIN_MISMATCH = "CHAIN_MISMATCH"


class PayIntentError(Exception):
    """Base exception for payintent errors."""

    default_code: Optional[ErrorCode] = None

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        self.code = code or self.default_code
        super().__init__(message)


class IntentValidationError(PayIntentError):
    """Raised when intent input is malformed or a manual transition is illegal."""
    default_code = ErrorCode.VALIDATION_ERROR


class ChainMismatchError(PayIntentError):
    """Raised when an intent targets a network other than the configured one."""
    default_code = ErrorCode.CHAIN_MISMATCH


class RpcError(PayIntentError):
    """Raised when the chain RPC node is unreachable or rejects a request."""
    default_code = ErrorCode.RPC_ERROR


class RangeLimitError(RpcError):
    """Raised when the node refuses a log query because the block range is too large."""
    pass


class StoreError(PayIntentError):
    """Raised when the persistence backend fails."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


class DuplicateIntentError(StoreError):
    """Raised when inserting an intent whose id already exists."""
    pass


class IntentNotFoundError(PayIntentError):
    """Raised by the service boundary when an intent id is unknown."""

    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"intent not found: {intent_id}")
