"""
Immutable facilitator configuration, built once from Django settings.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ImproperlyConfigured


class FeeMode:
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'

    choices = (PERCENTAGE, FIXED)


@dataclass(frozen=True)
class FeePolicy:
    mode: str = FeeMode.PERCENTAGE
    percentage: Decimal = Decimal('0')
    fixed_amount: int = 0
    fee_description: str = 'Platform fee'
    primary_description: str = ''
    platform_address: str = ''

    def __post_init__(self):
        if self.mode not in FeeMode.choices:
            raise ImproperlyConfigured(f'Unsupported fee mode: {self.mode}')
        if not Decimal('0') <= self.percentage <= Decimal('1'):
            raise ImproperlyConfigured('Fee percentage must be between 0 and 1.')
        if self.fixed_amount < 0:
            raise ImproperlyConfigured('Fixed fee amount must not be negative.')


@dataclass(frozen=True)
class FacilitatorConfig:
    fee_policy: FeePolicy
    simulate_transactions: bool = True
    rpc_url: str = 'https://api.mainnet-beta.solana.com'
    signer_private_key: str = ''
    token_mint: str = ''
    tx_timeout_seconds: float = 60
    nonce_ttl_seconds: int = 3600
    max_nonce_ttl_seconds: int = 86400
    nonce_retry_limit: int = 5
    max_payment_amount: int = 0
    cleanup_interval_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings) -> 'FacilitatorConfig':
        try:
            percentage = Decimal(str(getattr(settings, 'X402_FEE_PERCENTAGE', '0')))
        except InvalidOperation as exc:
            raise ImproperlyConfigured('X402_FEE_PERCENTAGE must be a decimal.') from exc

        fee_policy = FeePolicy(
            mode=getattr(settings, 'X402_FEE_MODE', FeeMode.PERCENTAGE),
            percentage=percentage,
            fixed_amount=int(getattr(settings, 'X402_FIXED_FEE_AMOUNT', 0)),
            fee_description=getattr(settings, 'X402_FEE_DESCRIPTION', 'Platform fee'),
            primary_description=getattr(settings, 'X402_PRIMARY_DESCRIPTION', ''),
            platform_address=getattr(settings, 'X402_PLATFORM_ADDRESS', ''),
        )
        return cls(
            fee_policy=fee_policy,
            simulate_transactions=bool(getattr(settings, 'X402_SIMULATE_TRANSACTIONS', True)),
            rpc_url=getattr(settings, 'X402_SOLANA_RPC_URL', cls.rpc_url),
            signer_private_key=getattr(settings, 'X402_SOLANA_SIGNER_PRIVATE_KEY', ''),
            token_mint=getattr(settings, 'X402_TOKEN_MINT', ''),
            tx_timeout_seconds=float(getattr(settings, 'X402_TX_TIMEOUT_SECONDS', 60)),
            nonce_ttl_seconds=int(getattr(settings, 'X402_NONCE_TTL_SECONDS', 3600)),
            max_nonce_ttl_seconds=int(getattr(settings, 'X402_MAX_NONCE_TTL_SECONDS', 86400)),
            nonce_retry_limit=int(getattr(settings, 'X402_NONCE_RETRY_LIMIT', 5)),
            max_payment_amount=int(getattr(settings, 'X402_MAX_PAYMENT_AMOUNT', 0)),
            cleanup_interval_seconds=int(getattr(settings, 'X402_CLEANUP_INTERVAL_SECONDS', 3600)),
        )
