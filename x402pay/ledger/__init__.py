"""
Ledger clients used for settlement.
"""
from .base import ConfirmationStatus, ExpectedTransfer, LedgerClient
from .simulated import SimulatedLedgerClient
from .solana import SolanaLedgerClient
from .factory import LedgerClientFactory

__all__ = [
    'ConfirmationStatus',
    'ExpectedTransfer',
    'LedgerClient',
    'SimulatedLedgerClient',
    'SolanaLedgerClient',
    'LedgerClientFactory',
]
