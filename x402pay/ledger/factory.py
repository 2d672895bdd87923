"""
Factory for creating ledger clients.
"""
from typing import Callable, Dict

from x402pay.config import FacilitatorConfig

from .base import LedgerClient
from .simulated import SimulatedLedgerClient
from .solana import SolanaLedgerClient

SIMULATED = 'simulated'
SOLANA = 'solana'


def _solana(config: FacilitatorConfig) -> LedgerClient:
    return SolanaLedgerClient(config.rpc_url, config.signer_private_key, token_mint=config.token_mint)


def _simulated(config: FacilitatorConfig) -> LedgerClient:
    return SimulatedLedgerClient()


class LedgerClientFactory:
    """Selects the ledger implementation once, from configuration."""

    _builders: Dict[str, Callable[[FacilitatorConfig], LedgerClient]] = {
        SIMULATED: _simulated,
        SOLANA: _solana,
    }

    @classmethod
    def create(cls, config: FacilitatorConfig) -> LedgerClient:
        mode = SIMULATED if config.simulate_transactions else SOLANA
        return cls._builders[mode](config)

    @classmethod
    def register(cls, mode: str, builder: Callable[[FacilitatorConfig], LedgerClient]) -> None:
        cls._builders[mode.lower().strip()] = builder

    @classmethod
    def get_supported_modes(cls) -> list:
        return list(cls._builders.keys())
