"""
Error taxonomy and result type shared by the facilitator layers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class ErrorKind(str, Enum):
    VALIDATION = 'validation_error'
    NOT_FOUND = 'nonce_not_found'
    EXPIRED = 'nonce_expired'
    ALREADY_SETTLED = 'already_settled'
    SIGNATURE_INVALID = 'signature_invalid'
    SPLIT_MISMATCH = 'split_mismatch'
    INSUFFICIENT_FUNDS = 'insufficient_funds'
    SUBMISSION_FAILURE = 'submission_failure'
    CONFIRMATION_TIMEOUT = 'confirmation_timeout'
    STORAGE = 'storage_error'
    NONCE_COLLISION = 'nonce_collision'


class FacilitatorError(Exception):
    """Base error for facilitator failures."""

    kind = ErrorKind.VALIDATION
    default_message = 'Facilitator error.'

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def details(self) -> Dict[str, Any]:
        return {}


class ValidationError(FacilitatorError):
    """Raised when an incoming request is malformed."""

    kind = ErrorKind.VALIDATION
    default_message = 'Invalid request.'


class NonceNotFoundError(FacilitatorError):
    kind = ErrorKind.NOT_FOUND
    default_message = 'Nonce not found.'


class ExpiredError(FacilitatorError):
    kind = ErrorKind.EXPIRED
    default_message = 'Nonce has expired.'


class AlreadySettledError(FacilitatorError):
    kind = ErrorKind.ALREADY_SETTLED
    default_message = 'Payment already settled.'


class SignatureInvalidError(FacilitatorError):
    kind = ErrorKind.SIGNATURE_INVALID
    default_message = 'Signature does not match the authorization payload.'


class SplitMismatchError(FacilitatorError):
    """Split payment does not satisfy the configured fee policy."""

    kind = ErrorKind.SPLIT_MISMATCH

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {'reason': self.reason}


class InsufficientFundsError(FacilitatorError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f'Insufficient balance. Required: {required}, Available: {available}')

    def details(self) -> Dict[str, Any]:
        return {'required': str(self.required), 'available': str(self.available)}


class SubmissionFailureError(FacilitatorError):
    """
    The ledger rejected or never received the transfer.

    ``submitted`` is False only when the failure happened before anything
    was sent to the ledger.
    """

    kind = ErrorKind.SUBMISSION_FAILURE

    def __init__(self, cause: str, submitted: bool = True):
        self.cause = cause
        self.submitted = submitted
        super().__init__(f'Failed to submit sponsored transaction: {cause}')


class ConfirmationTimeoutError(FacilitatorError):
    kind = ErrorKind.CONFIRMATION_TIMEOUT

    def __init__(self, transaction_signature: str, timeout_seconds: float):
        self.transaction_signature = transaction_signature
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'Timed out after {timeout_seconds}s waiting for confirmation of {transaction_signature}.')

    def details(self) -> Dict[str, Any]:
        return {'transactionSignature': self.transaction_signature}


class StorageError(FacilitatorError):
    """Transient storage failure (disk, connection)."""

    kind = ErrorKind.STORAGE
    default_message = 'Nonce storage is temporarily unavailable.'


class NonceCollisionError(FacilitatorError):
    kind = ErrorKind.NONCE_COLLISION
    default_message = 'Unable to generate a unique nonce.'


RETRYABLE_KINDS = frozenset({
    ErrorKind.STORAGE,
    ErrorKind.SUBMISSION_FAILURE,
    ErrorKind.CONFIRMATION_TIMEOUT,
})


@dataclass(frozen=True)
class Ok:
    value: Any = None

    ok = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    extra: Dict[str, Any] = field(default_factory=dict)

    ok = False

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @classmethod
    def from_exception(cls, exc: FacilitatorError) -> 'Err':
        return cls(kind=exc.kind, detail=exc.message, extra=exc.details())


Result = Union[Ok, Err]
