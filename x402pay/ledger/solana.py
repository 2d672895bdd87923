"""
Solana ledger client for sponsored settlement.

The payer builds and signs the transfer; the facilitator only adds its
signature as fee payer and submits:
1. Deserialize the payer-signed transaction
2. Check every transfer instruction against the nonce being settled
3. Check the facilitator is the fee payer and appears in no instruction
4. Sign the message at the fee payer slot
5. Submit and poll for confirmation

Payments are native SOL system transfers, or SPL ``TransferChecked``
between associated token accounts when a token mint is configured.
"""
from collections import Counter
from typing import Optional, Tuple

import base58
from django.core.exceptions import ImproperlyConfigured
from loguru import logger
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature as SolSignature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from x402pay.errors import SubmissionFailureError, ValidationError

from .base import ConfirmationStatus, ExpectedTransfer, LedgerClient

CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)

SYSTEM_PROGRAM_ID = Pubkey.from_string('11111111111111111111111111111111')
TOKEN_PROGRAM_ID = Pubkey.from_string('TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA')
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string('ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA1knL')
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string('ComputeBudget111111111111111111111111111111')
MEMO_PROGRAM_IDS = (
    Pubkey.from_string('MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr'),
    Pubkey.from_string('Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo'),
)
# Instructions that move no value and may accompany the transfers.
PASSIVE_PROGRAM_IDS = (COMPUTE_BUDGET_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID) + MEMO_PROGRAM_IDS

SYSTEM_TRANSFER = 2
TOKEN_TRANSFER_CHECKED = 12


def load_keypair(private_key: str) -> Keypair:
    if not private_key:
        raise ImproperlyConfigured('X402_SOLANA_SIGNER_PRIVATE_KEY is not configured.')
    try:
        return Keypair.from_bytes(base58.b58decode(private_key))
    except Exception as exc:
        raise ImproperlyConfigured(f'Invalid signer private key: {exc}') from exc


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def _parse_pubkey(address: str, label: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as exc:
        raise ValidationError(f'Invalid {label} address: {address}') from exc


def _account(message, index: int) -> Pubkey:
    """Resolve an account index against the message's static keys."""
    keys = message.account_keys
    if not 0 <= index < len(keys):
        raise ValidationError(f'Instruction references unknown account index {index}')
    return keys[index]


def _require_static_accounts(message) -> None:
    if getattr(message, 'address_table_lookups', None):
        raise ValidationError('Address lookup tables are not supported')


class SolanaLedgerClient(LedgerClient):
    def __init__(
        self,
        rpc_url: str,
        signer_private_key: str,
        client: Client = None,
        token_mint: str = '',
    ):
        self.rpc_url = rpc_url
        self._keypair = load_keypair(signer_private_key)
        self._client = client or Client(rpc_url)
        self.token_mint = self._load_mint(token_mint)

    @staticmethod
    def _load_mint(token_mint: str) -> Optional[Pubkey]:
        if not token_mint:
            return None
        try:
            return Pubkey.from_string(token_mint)
        except ValueError as exc:
            raise ImproperlyConfigured(f'Invalid token mint: {token_mint}') from exc

    @property
    def fee_payer(self) -> str:
        return str(self._keypair.pubkey())

    def _destination(self, owner: Pubkey) -> Pubkey:
        """The account a payment to ``owner`` must credit."""
        if self.token_mint is None:
            return owner
        return associated_token_address(owner, self.token_mint)

    def get_balance(self, address: str) -> int:
        pubkey = _parse_pubkey(address, 'payer')
        try:
            if self.token_mint is not None:
                response = self._client.get_token_account_balance(
                    self._destination(pubkey), commitment=Confirmed)
                return int(response.value.amount)
            return int(self._client.get_balance(pubkey, commitment=Confirmed).value)
        except Exception as exc:
            logger.error('solana balance lookup failed for {}: {}', address, exc)
            raise SubmissionFailureError(f'Balance lookup failed: {exc}', submitted=False) from exc

    @staticmethod
    def _deserialize(signed_transfer: bytes) -> VersionedTransaction:
        try:
            return VersionedTransaction.from_bytes(signed_transfer)
        except Exception as exc:
            raise ValidationError(f'Failed to deserialize transaction: {exc}') from exc

    def _decode_transfer(self, message, instruction) -> Optional[Tuple[Pubkey, Pubkey, int]]:
        """
        Return ``(owner, destination, amount)`` for a transfer instruction.

        Passive instructions yield None; anything else is rejected.
        """
        program_id = _account(message, instruction.program_id_index)
        if program_id in PASSIVE_PROGRAM_IDS:
            return None

        data = bytes(instruction.data)
        accounts = [_account(message, index) for index in instruction.accounts]

        if program_id == SYSTEM_PROGRAM_ID and self.token_mint is None:
            # Transfer: [index: u32, lamports: u64]; accounts [from, to]
            if len(data) != 12 or int.from_bytes(data[:4], 'little') != SYSTEM_TRANSFER or len(accounts) < 2:
                raise ValidationError('Unsupported system program instruction')
            return accounts[0], accounts[1], int.from_bytes(data[4:12], 'little')

        if program_id == TOKEN_PROGRAM_ID and self.token_mint is not None:
            # TransferChecked: [12, amount: u64, decimals: u8]; accounts [source, mint, destination, authority]
            if len(data) < 10 or data[0] != TOKEN_TRANSFER_CHECKED or len(accounts) < 4:
                raise ValidationError('Only TransferChecked token instructions are supported')
            source, mint, destination, authority = accounts[:4]
            if mint != self.token_mint:
                raise ValidationError(f'Mint mismatch: {mint} != {self.token_mint}')
            if source != associated_token_address(authority, mint):
                raise ValidationError('Token transfer source is not the payer token account')
            return authority, destination, int.from_bytes(data[1:9], 'little')

        raise ValidationError(f'Unexpected instruction for program {program_id}')

    def check_transfer(self, signed_transfer: bytes, expected: ExpectedTransfer) -> None:
        tx = self._deserialize(signed_transfer)
        message = tx.message
        _require_static_accounts(message)
        payer = _parse_pubkey(expected.payer, 'payer')

        moved = Counter()
        for instruction in message.instructions:
            transfer = self._decode_transfer(message, instruction)
            if transfer is None:
                continue
            owner, destination, amount = transfer
            if owner != payer:
                raise ValidationError(f'Transfer source {owner} is not the payer {payer}')
            moved[destination] += amount

        wanted = Counter()
        for recipient, amount in expected.payments:
            wanted[self._destination(_parse_pubkey(recipient, 'recipient'))] += amount

        moved = {account: amount for account, amount in moved.items() if amount}
        wanted = {account: amount for account, amount in wanted.items() if amount}
        if moved != wanted:
            logger.info('transfer mismatch: expected {} got {}', wanted, moved)
            raise ValidationError('Signed transfer does not match the authorized payment.')

    def _verify_fee_payer_not_in_instructions(self, tx: VersionedTransaction) -> bool:
        facilitator = self._keypair.pubkey()
        message = tx.message
        for instruction in message.instructions:
            for account_idx in instruction.accounts:
                if _account(message, account_idx) == facilitator:
                    return False
        return True

    def cosign(self, signed_transfer: bytes) -> bytes:
        tx = self._deserialize(signed_transfer)
        message = tx.message
        _require_static_accounts(message)
        facilitator = self._keypair.pubkey()

        required = int(message.header.num_required_signatures)
        if required <= 0:
            raise ValidationError('Invalid signature header')

        # First account is always the fee payer.
        if message.account_keys[0] != facilitator:
            raise ValidationError(
                f'Fee payer mismatch: expected {facilitator}, got {message.account_keys[0]}')

        if not self._verify_fee_payer_not_in_instructions(tx):
            raise ValidationError('Fee payer must not appear in instruction accounts')

        signatures = list(tx.signatures)
        if len(signatures) < required:
            signatures.extend([SolSignature.default()] * (required - len(signatures)))
        signatures = signatures[:required]
        signatures[0] = self._keypair.sign_message(to_bytes_versioned(message))

        return bytes(VersionedTransaction.populate(message, signatures))

    def submit(self, signed_transfer: bytes) -> str:
        try:
            try:
                response = self._client.send_raw_transaction(
                    signed_transfer,
                    opts=TxOpts(
                        skip_preflight=False,
                        skip_confirmation=True,
                        max_retries=3,
                        preflight_commitment=Confirmed,
                    ),
                )
            except Exception as exc:
                # Public RPC nodes can lag; retry a fresh blockhash without preflight.
                msg = str(exc)
                if 'Blockhash not found' not in msg and 'BlockhashNotFound' not in msg:
                    raise
                response = self._client.send_raw_transaction(
                    signed_transfer,
                    opts=TxOpts(skip_preflight=True, skip_confirmation=True, max_retries=3),
                )
        except Exception as exc:
            logger.error('solana send transaction failed: {}', exc)
            raise SubmissionFailureError(f'Send transaction failed: {exc}') from exc

        tx_hash = str(getattr(response, 'value', response))
        logger.info('Solana settlement transaction submitted: {}', tx_hash)
        return tx_hash

    def confirm(self, transaction_id: str) -> ConfirmationStatus:
        try:
            response = self._client.get_signature_statuses([SolSignature.from_string(transaction_id)])
        except Exception as exc:
            logger.warning('signature status lookup failed for {}: {}', transaction_id, exc)
            return ConfirmationStatus(confirmed=False)

        status = response.value[0] if response.value else None
        if status is None:
            return ConfirmationStatus(confirmed=False)
        if status.err is not None:
            return ConfirmationStatus(confirmed=False, error=str(status.err))
        return ConfirmationStatus(confirmed=status.confirmation_status in CONFIRMED_STATUSES)

    def get_explorer_url(self, transaction_id: str) -> str:
        return f'https://solscan.io/tx/{transaction_id}'
