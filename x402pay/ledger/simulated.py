"""
Simulated ledger for integration testing; nothing touches a chain.
"""
import secrets
import time

from loguru import logger

from .base import ConfirmationStatus, ExpectedTransfer, LedgerClient


class SimulatedLedgerClient(LedgerClient):
    simulated = True

    def __init__(self, fee_payer: str = 'x402-simulated-facilitator'):
        self._fee_payer = fee_payer

    @property
    def fee_payer(self) -> str:
        return self._fee_payer

    def get_balance(self, address: str) -> int:
        return 0

    def check_transfer(self, signed_transfer: bytes, expected: ExpectedTransfer) -> None:
        pass

    def cosign(self, signed_transfer: bytes) -> bytes:
        return signed_transfer

    def submit(self, signed_transfer: bytes) -> str:
        signature = f'x402-demo-{int(time.time() * 1000)}-{secrets.token_hex(5)}'
        logger.debug('simulated transaction created: {}', signature)
        return signature

    def confirm(self, transaction_id: str) -> ConfirmationStatus:
        return ConfirmationStatus(confirmed=True)
