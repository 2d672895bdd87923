"""
Helpers shared by the facilitator test modules.
"""
from decimal import Decimal
from typing import Optional
from unittest.mock import MagicMock

from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from x402pay.config import FacilitatorConfig, FeePolicy
from x402pay.controller import authorization_payload
from x402pay.ledger import ConfirmationStatus, LedgerClient
from x402pay.models import NonceRecord
from x402pay.types import PaymentRequest, SplitEnabled, SplitRecipient


def new_address() -> str:
    return str(Keypair().pubkey())


def sign_message(message: MessageV0, signer: Keypair) -> bytes:
    """Serialize ``message`` with only ``signer``'s signature filled in."""
    signatures = [Signature.default()] * message.header.num_required_signatures
    signatures[list(message.account_keys).index(signer.pubkey())] = signer.sign_message(
        to_bytes_versioned(message))
    return bytes(VersionedTransaction.populate(message, signatures))


def make_config(**overrides) -> FacilitatorConfig:
    fee_policy = overrides.pop('fee_policy', None) or FeePolicy(
        percentage=Decimal('0.4'),
        fee_description='platform fee',
        primary_description='merchant share',
    )
    overrides.setdefault('simulate_transactions', True)
    return FacilitatorConfig(fee_policy=fee_policy, **overrides)


def make_split(total: int, fee: int, primary: int) -> SplitEnabled:
    return SplitEnabled(
        total_amount=total,
        recipients=(
            SplitRecipient(new_address(), fee, Decimal('40'), 'platform fee'),
            SplitRecipient(new_address(), primary, Decimal('60'), 'merchant share'),
        ),
    )


def signed_request(
    keypair: Keypair,
    record: NonceRecord,
    signed_transaction: Optional[str] = None,
    **payload_overrides,
) -> PaymentRequest:
    payload = authorization_payload(record)
    if payload_overrides:
        payload = payload.model_copy(update=payload_overrides)
    signature = keypair.sign_message(payload.serialize())
    return PaymentRequest(
        payload=payload,
        signature=str(signature),
        client_public_key=str(keypair.pubkey()),
        signed_transaction=signed_transaction,
    )


def make_ledger(balance: int = 1_000_000, statuses=None) -> MagicMock:
    """A non-simulated ledger double that confirms on the first poll."""
    ledger = MagicMock(spec=LedgerClient)
    ledger.simulated = False
    ledger.fee_payer = 'facilitator'
    ledger.get_balance.return_value = balance
    ledger.cosign.side_effect = lambda raw: raw + b'+cosigned'
    ledger.submit.return_value = 'tx-1'
    ledger.confirm.side_effect = statuses or [ConfirmationStatus(confirmed=True)]
    ledger.get_explorer_url.return_value = 'https://solscan.io/tx/tx-1'
    return ledger
