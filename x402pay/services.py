"""
Composition root: builds the controller once per process.
"""
from functools import lru_cache
from typing import Optional

from django.conf import settings
from loguru import logger

from x402pay.config import FacilitatorConfig
from x402pay.controller import PaymentLifecycleController
from x402pay.ledger import LedgerClient, LedgerClientFactory
from x402pay.settlement import SettlementExecutor
from x402pay.signatures import SignatureVerifier
from x402pay.splits import SplitPaymentValidator
from x402pay.store import NonceStore


def build_controller(
    config: FacilitatorConfig,
    ledger: Optional[LedgerClient] = None,
) -> PaymentLifecycleController:
    ledger = ledger or LedgerClientFactory.create(config)
    return PaymentLifecycleController(
        store=NonceStore(retry_limit=config.nonce_retry_limit),
        verifier=SignatureVerifier(),
        split_validator=SplitPaymentValidator(config.fee_policy),
        executor=SettlementExecutor(ledger, confirmation_timeout=config.tx_timeout_seconds),
        config=config,
    )


@lru_cache(maxsize=1)
def get_config() -> FacilitatorConfig:
    return FacilitatorConfig.from_settings(settings)


@lru_cache(maxsize=1)
def get_controller() -> PaymentLifecycleController:
    config = get_config()
    controller = build_controller(config)
    logger.info('x402 facilitator ready: fee payer={} simulation={}',
                controller.executor.ledger.fee_payer, config.simulate_transactions)
    return controller


def reset() -> None:
    """Drop cached wiring, e.g. after settings change in tests."""
    get_config.cache_clear()
    get_controller.cache_clear()
