"""
Ledger client interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class ConfirmationStatus:
    """Result of polling the ledger for a submitted transaction."""
    confirmed: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ExpectedTransfer:
    """
    What a payer-signed transfer must move for one nonce.

    ``payments`` holds ``(recipient address, amount)`` pairs in minimal units:
    the nonce recipient, or every recipient of an enabled split.
    """
    payer: str
    payments: Tuple[Tuple[str, int], ...]

    @property
    def total(self) -> int:
        return sum(amount for _, amount in self.payments)


class LedgerClient(ABC):
    """
    Capabilities the settlement executor needs from a ledger.

    Production and simulation are two implementations of this interface,
    selected once at startup.
    """

    #: Simulated ledgers skip balance checks and do not need a signed transfer.
    simulated = False

    @property
    @abstractmethod
    def fee_payer(self) -> str:
        """Address that co-signs and pays network fees."""
        pass

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Return the spendable balance of ``address`` in minimal units."""
        pass

    @abstractmethod
    def check_transfer(self, signed_transfer: bytes, expected: ExpectedTransfer) -> None:
        """
        Raise ValidationError unless the transfer moves exactly ``expected``.

        Called before any balance lookup or submission.
        """
        pass

    @abstractmethod
    def cosign(self, signed_transfer: bytes) -> bytes:
        """
        Add the fee payer signature to a payer-signed transfer.

        The payer's instructions and signatures are left untouched.
        """
        pass

    @abstractmethod
    def submit(self, signed_transfer: bytes) -> str:
        """Send a fully signed transfer and return its transaction id."""
        pass

    @abstractmethod
    def confirm(self, transaction_id: str) -> ConfirmationStatus:
        """Poll once for the confirmation state of ``transaction_id``."""
        pass

    def get_explorer_url(self, transaction_id: str) -> str:
        return ''
