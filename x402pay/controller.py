"""
Payment lifecycle: nonce issuance, verification and settlement.

States: pending -> verified -> settling -> settled | failed, with expired
reachable from pending/verified once the nonce's expiry passes. Verify and
settle are independent HTTP calls, so settle re-runs every guard itself.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from loguru import logger

from x402pay.config import FacilitatorConfig
from x402pay.errors import (
    ConfirmationTimeoutError,
    Err,
    FacilitatorError,
    InsufficientFundsError,
    Ok,
    Result,
    SignatureInvalidError,
    StorageError,
    SubmissionFailureError,
    ValidationError,
)
from x402pay.ledger import ExpectedTransfer
from x402pay.models import NonceRecord, TransactionRecord
from x402pay.settlement import Settled, SettlementExecutor, decode_signed_transfer
from x402pay.signatures import SignatureVerifier, is_valid_address
from x402pay.splits import SplitPaymentValidator
from x402pay.store import NonceStore
from x402pay.types import (
    SPLIT_DISABLED,
    AuthorizationPayload,
    PaymentRequest,
    SplitEnabled,
    SplitPaymentSpec,
)


@dataclass(frozen=True)
class IssuedNonce:
    record: NonceRecord
    payload: AuthorizationPayload


@dataclass(frozen=True)
class Verified:
    nonce: str
    payer: str
    amount: str
    expiry: int


def authorization_payload(record: NonceRecord) -> AuthorizationPayload:
    """The payload a client must sign for ``record``."""
    return AuthorizationPayload(
        amount=record.amount_value,
        recipient=record.recipient,
        resource_id=record.resource_id,
        resource_url=record.resource_url,
        nonce=record.nonce,
        expiry=record.expiry_ms,
    )


def expected_transfer(record: NonceRecord, payer: str) -> ExpectedTransfer:
    """The payments a signed transfer must make to settle ``record``."""
    split = record.split_spec
    if isinstance(split, SplitEnabled):
        payments = tuple((r.address, r.amount) for r in split.recipients)
    else:
        payments = ((record.recipient, record.amount_value),)
    return ExpectedTransfer(payer=payer, payments=payments)


class PaymentLifecycleController:
    def __init__(
        self,
        store: NonceStore,
        verifier: SignatureVerifier,
        split_validator: SplitPaymentValidator,
        executor: SettlementExecutor,
        config: FacilitatorConfig,
    ):
        self.store = store
        self.verifier = verifier
        self.split_validator = split_validator
        self.executor = executor
        self.config = config

    # Issuance

    def _check_issuance(
        self,
        amount: int,
        recipient: str,
        split: SplitPaymentSpec,
        ttl_seconds: int,
    ) -> None:
        if amount <= 0:
            raise ValidationError('Amount must be positive.')
        max_amount = self.config.max_payment_amount
        if max_amount and amount > max_amount:
            raise ValidationError(f'Amount exceeds the maximum of {max_amount}.')
        max_ttl = self.config.max_nonce_ttl_seconds
        if ttl_seconds <= 0 or ttl_seconds > max_ttl:
            raise ValidationError(f'Nonce lifetime must be between 1 and {max_ttl} seconds.')
        if not is_valid_address(recipient):
            raise ValidationError(f'Invalid recipient address: {recipient}')
        if isinstance(split, SplitEnabled):
            for split_recipient in split.recipients:
                if not is_valid_address(split_recipient.address):
                    raise ValidationError(f'Invalid split recipient address: {split_recipient.address}')
        self.split_validator.validate(split, amount)

    def issue_nonce(
        self,
        amount: int,
        recipient: str,
        split: SplitPaymentSpec = SPLIT_DISABLED,
        ttl_seconds: Optional[int] = None,
        resource_id: str = '',
        resource_url: str = '',
    ) -> Result:
        ttl_seconds = ttl_seconds or self.config.nonce_ttl_seconds
        try:
            self._check_issuance(amount, recipient, split, ttl_seconds)
            record = self.store.create(
                amount=amount,
                recipient=recipient,
                split=split,
                ttl=timedelta(seconds=ttl_seconds),
                resource_id=resource_id,
                resource_url=resource_url,
            )
        except FacilitatorError as exc:
            logger.info('nonce issuance rejected: {}', exc.message)
            return Err.from_exception(exc)
        return Ok(IssuedNonce(record=record, payload=authorization_payload(record)))

    # Verification

    @staticmethod
    def _payload_matches(payload: AuthorizationPayload, record: NonceRecord) -> bool:
        return (
            payload.amount == record.amount_value
            and payload.recipient == record.recipient
            and payload.expiry == record.expiry_ms
            and payload.resource_id == record.resource_id
            and payload.resource_url == record.resource_url
        )

    def _guard(self, request: PaymentRequest) -> NonceRecord:
        """Run the full guard set shared by verify and settle."""
        payload = request.payload
        record = self.store.get(payload.nonce)
        self.store.ensure_open(record)

        if not self._payload_matches(payload, record):
            raise ValidationError('Authorization payload does not match the issued nonce.')

        if not self.verifier.verify(payload.serialize(), request.signature, request.client_public_key):
            raise SignatureInvalidError()

        self.split_validator.validate(record.split_spec, record.amount_value)
        return record

    def verify(self, request: PaymentRequest) -> Result:
        nonce = request.payload.nonce
        try:
            record = self._guard(request)
            self.store.mark_verified(nonce, request.client_public_key)
        except FacilitatorError as exc:
            logger.info('x402 verification failed for nonce {}: {}', nonce, exc.message)
            return Err.from_exception(exc)

        logger.debug('x402 authorization verified: nonce={} payer={}', nonce, request.client_public_key)
        return Ok(Verified(
            nonce=nonce,
            payer=request.client_public_key,
            amount=record.amount,
            expiry=record.expiry_ms,
        ))

    # Settlement

    def _settlement_failed(
        self,
        nonce: str,
        exc: FacilitatorError,
        transaction_signature: Optional[str] = None,
    ) -> Err:
        logger.info('x402 settlement rejected for nonce {}: {}', nonce, exc.message)
        self.store.record_attempt(
            nonce=nonce,
            transaction_signature=transaction_signature,
            status=TransactionRecord.Status.FAILED,
            error_message=exc.message,
        )
        return Err.from_exception(exc)

    def _update_claim(self, action: Callable[[str, str], None], nonce: str, reason: str) -> None:
        try:
            action(nonce, reason)
        except StorageError:
            logger.error('could not update settlement claim for nonce {}', nonce)

    def settle(self, request: PaymentRequest) -> Result:
        nonce = request.payload.nonce
        try:
            record = self._guard(request)
            signed_transfer = decode_signed_transfer(request.signed_transaction)
            if signed_transfer is None and self.executor.requires_signed_transfer:
                raise ValidationError(
                    'Missing signed transaction. Sponsored settlement requires the client to sign the transfer.')
            self.store.claim(nonce)
        except FacilitatorError as exc:
            return self._settlement_failed(nonce, exc)

        # The nonce is claimed: a concurrent settle now sees AlreadySettled.
        try:
            transaction_signature = self.executor.settle(
                signed_transfer, expected_transfer(record, request.client_public_key))
        except (InsufficientFundsError, ValidationError) as exc:
            self._update_claim(self.store.release, nonce, exc.message)
            return self._settlement_failed(nonce, exc)
        except SubmissionFailureError as exc:
            if exc.submitted:
                self._update_claim(self.store.mark_failed, nonce, exc.message)
            else:
                self._update_claim(self.store.release, nonce, exc.message)
            return self._settlement_failed(nonce, exc)
        except ConfirmationTimeoutError as exc:
            self._update_claim(self.store.mark_failed, nonce, exc.message)
            return self._settlement_failed(nonce, exc, exc.transaction_signature)
        except Exception as exc:
            logger.exception('x402 settlement error for nonce {}', nonce)
            failure = SubmissionFailureError(str(exc) or exc.__class__.__name__)
            self._update_claim(self.store.mark_failed, nonce, failure.message)
            return self._settlement_failed(nonce, failure)

        try:
            self.store.mark_settled(nonce, transaction_signature)
        except FacilitatorError as exc:
            # The transfer is final on-chain; the confirmed audit row lets
            # reconcile_settlements() finish the nonce later.
            logger.error('transfer {} confirmed but nonce {} could not be marked settled: {}',
                         transaction_signature, nonce, exc.message)
            self.store.record_attempt(
                nonce=nonce,
                transaction_signature=transaction_signature,
                status=TransactionRecord.Status.CONFIRMED,
                error_message=f'Nonce update failed: {exc.message}',
            )
            return Err.from_exception(exc)

        self.store.record_attempt(
            nonce=nonce,
            transaction_signature=transaction_signature,
            status=TransactionRecord.Status.CONFIRMED,
        )
        logger.info('x402 settlement succeeded for nonce {} tx {}', nonce, transaction_signature)
        return Ok(Settled(nonce=nonce, transaction_signature=transaction_signature))

    # Administration

    def get_nonce(self, nonce: str) -> Result:
        try:
            return Ok(self.store.get(nonce))
        except FacilitatorError as exc:
            return Err.from_exception(exc)

    def stats(self) -> Result:
        try:
            return Ok(self.store.stats())
        except FacilitatorError as exc:
            return Err.from_exception(exc)

    def reconcile_settlements(self) -> Result:
        try:
            return Ok(self.store.reconcile_settlements())
        except FacilitatorError as exc:
            logger.error('settlement reconciliation failed: {}', exc.message)
            return Err.from_exception(exc)

    def sweep_expired(self) -> Result:
        try:
            return Ok(self.store.sweep_expired())
        except FacilitatorError as exc:
            logger.error('nonce cleanup failed: {}', exc.message)
            return Err.from_exception(exc)
