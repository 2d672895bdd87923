"""
Settlement executor: sponsored submission of payer-signed transfers.
"""
import base64
import binascii
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from x402pay.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    SubmissionFailureError,
    ValidationError,
)
from x402pay.ledger import ExpectedTransfer, LedgerClient


@dataclass(frozen=True)
class Settled:
    nonce: str
    transaction_signature: str


def decode_signed_transfer(signed_transaction: Optional[str]) -> Optional[bytes]:
    if not signed_transaction:
        return None
    try:
        return base64.b64decode(signed_transaction, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError('Signed transaction must be base64 encoded.') from exc


class SettlementExecutor:
    """
    Submits a client-signed transfer and waits for the ledger to confirm it.

    The executor never builds or alters the payer's transfer; it only adds
    the fee payer signature. Confirmation from the ledger is the authority,
    recipient balances are not re-checked afterwards.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        confirmation_timeout: float = 60,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    @property
    def simulated(self) -> bool:
        return self.ledger.simulated

    @property
    def requires_signed_transfer(self) -> bool:
        return not self.ledger.simulated

    def settle(self, signed_transfer: Optional[bytes], expected: ExpectedTransfer) -> str:
        if self.ledger.simulated:
            return self.ledger.submit(signed_transfer or b'')

        if not signed_transfer:
            raise ValidationError(
                'Missing signed transaction. Sponsored settlement requires the client to sign the transfer.')

        self.ledger.check_transfer(signed_transfer, expected)

        available = self.ledger.get_balance(expected.payer)
        if available < expected.total:
            raise InsufficientFundsError(required=expected.total, available=available)

        cosigned = self.ledger.cosign(signed_transfer)
        transaction_id = self.ledger.submit(cosigned)
        self._wait_for_confirmation(transaction_id)
        logger.info('settlement confirmed: {} {}', transaction_id,
                    self.ledger.get_explorer_url(transaction_id))
        return transaction_id

    def _wait_for_confirmation(self, transaction_id: str) -> None:
        deadline = self._clock() + self.confirmation_timeout
        while True:
            status = self.ledger.confirm(transaction_id)
            if status.error:
                raise SubmissionFailureError(f'Transaction {transaction_id} failed on-chain: {status.error}')
            if status.confirmed:
                return
            if self._clock() >= deadline:
                raise ConfirmationTimeoutError(transaction_id, self.confirmation_timeout)
            self._sleep(self.poll_interval)
