import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import base58
from django.core.exceptions import ImproperlyConfigured
from solders.hash import Hash
from solders.instruction import AccountMeta, CompiledInstruction, Instruction
from solders.keypair import Keypair
from solders.message import MessageAddressTableLookup, MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from x402pay.errors import SubmissionFailureError, ValidationError
from x402pay.ledger import ExpectedTransfer, SolanaLedgerClient
from x402pay.ledger.solana import TOKEN_PROGRAM_ID, associated_token_address, load_keypair
from x402pay.testutils import sign_message


def transfer_checked(owner: Pubkey, mint: Pubkey, recipient: Pubkey, amount: int) -> Instruction:
    data = bytes([12]) + amount.to_bytes(8, 'little') + bytes([6])
    return Instruction(TOKEN_PROGRAM_ID, data, [
        AccountMeta(associated_token_address(owner, mint), is_signer=False, is_writable=True),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(associated_token_address(recipient, mint), is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ])


class SolanaLedgerClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.facilitator = Keypair()
        self.payer = Keypair()
        self.rpc = MagicMock()
        self.ledger = SolanaLedgerClient(
            'http://localhost:8899',
            base58.b58encode(bytes(self.facilitator)).decode(),
            client=self.rpc,
        )

    def _payer_signed_transfer(self, fee_payer: Pubkey, source: Keypair = None) -> bytes:
        source = source or self.payer
        instruction = transfer(TransferParams(
            from_pubkey=source.pubkey(),
            to_pubkey=Pubkey.new_unique(),
            lamports=100000,
        ))
        return sign_message(MessageV0.try_compile(fee_payer, [instruction], [], Hash.default()), source)

    def test_fee_payer(self):
        self.assertEqual(self.ledger.fee_payer, str(self.facilitator.pubkey()))

    def test_cosign_adds_fee_payer_signature(self):
        signed = self._payer_signed_transfer(self.facilitator.pubkey())
        original = VersionedTransaction.from_bytes(signed)

        cosigned = VersionedTransaction.from_bytes(self.ledger.cosign(signed))
        message_bytes = to_bytes_versioned(cosigned.message)

        self.assertTrue(cosigned.signatures[0].verify(self.facilitator.pubkey(), message_bytes))
        self.assertEqual(cosigned.signatures[1], original.signatures[1])
        self.assertTrue(cosigned.signatures[1].verify(self.payer.pubkey(), message_bytes))

    def test_cosign_rejects_foreign_fee_payer(self):
        signed = self._payer_signed_transfer(self.payer.pubkey())
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.cosign(signed)
        self.assertIn('Fee payer mismatch', ctx.exception.message)

    def test_cosign_rejects_fee_payer_in_instructions(self):
        signed = self._payer_signed_transfer(self.facilitator.pubkey(), source=self.facilitator)
        with self.assertRaises(ValidationError):
            self.ledger.cosign(signed)

    def test_cosign_rejects_garbage(self):
        with self.assertRaises(ValidationError):
            self.ledger.cosign(b'not a transaction')

    def test_get_balance(self):
        self.rpc.get_balance.return_value = SimpleNamespace(value=5000)
        self.assertEqual(self.ledger.get_balance(str(self.payer.pubkey())), 5000)

    def test_get_balance_rpc_failure_is_not_submitted(self):
        self.rpc.get_balance.side_effect = ConnectionError('rpc down')
        with self.assertRaises(SubmissionFailureError) as ctx:
            self.ledger.get_balance(str(self.payer.pubkey()))
        self.assertFalse(ctx.exception.submitted)

    def test_submit_retries_stale_blockhash(self):
        self.rpc.send_raw_transaction.side_effect = [
            Exception('Blockhash not found'),
            SimpleNamespace(value='tx-sig'),
        ]
        self.assertEqual(self.ledger.submit(b'raw'), 'tx-sig')
        self.assertEqual(self.rpc.send_raw_transaction.call_count, 2)

    def test_submit_failure(self):
        self.rpc.send_raw_transaction.side_effect = Exception('node unhealthy')
        with self.assertRaises(SubmissionFailureError) as ctx:
            self.ledger.submit(b'raw')
        self.assertTrue(ctx.exception.submitted)

    def test_confirm(self):
        tx_id = str(Keypair().sign_message(b'x'))
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(value=[SimpleNamespace(
            err=None, confirmation_status=TransactionConfirmationStatus.Finalized)])
        self.assertTrue(self.ledger.confirm(tx_id).confirmed)

        self.rpc.get_signature_statuses.return_value = SimpleNamespace(value=[None])
        self.assertFalse(self.ledger.confirm(tx_id).confirmed)

        self.rpc.get_signature_statuses.return_value = SimpleNamespace(value=[SimpleNamespace(
            err='InsufficientFundsForFee', confirmation_status=None)])
        status = self.ledger.confirm(tx_id)
        self.assertFalse(status.confirmed)
        self.assertEqual(status.error, 'InsufficientFundsForFee')

    def test_load_keypair_requires_configuration(self):
        with self.assertRaises(ImproperlyConfigured):
            load_keypair('')
        with self.assertRaises(ImproperlyConfigured):
            load_keypair('not-a-key')


class CheckTransferTests(unittest.TestCase):
    def setUp(self) -> None:
        self.facilitator = Keypair()
        self.payer = Keypair()
        self.merchant = Pubkey.new_unique()
        self.platform = Pubkey.new_unique()
        self.ledger = self._ledger()

    def _ledger(self, token_mint=''):
        return SolanaLedgerClient(
            'http://localhost:8899',
            base58.b58encode(bytes(self.facilitator)).decode(),
            client=MagicMock(),
            token_mint=token_mint,
        )

    def _expected(self, *payments):
        return ExpectedTransfer(
            payer=str(self.payer.pubkey()),
            payments=tuple((str(address), amount) for address, amount in payments),
        )

    def _signed(self, *instructions, signer=None):
        signer = signer or self.payer
        message = MessageV0.try_compile(self.facilitator.pubkey(), list(instructions), [], Hash.default())
        return sign_message(message, signer)

    def _lamports(self, to_pubkey, amount, source=None):
        return transfer(TransferParams(
            from_pubkey=(source or self.payer).pubkey(), to_pubkey=to_pubkey, lamports=amount))

    def test_matching_transfer(self):
        signed = self._signed(self._lamports(self.merchant, 100000))
        self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))

    def test_split_transfers(self):
        signed = self._signed(
            self._lamports(self.merchant, 60000),
            self._lamports(self.platform, 40000),
        )
        self.ledger.check_transfer(
            signed, self._expected((self.merchant, 60000), (self.platform, 40000)))

    def test_self_transfer_is_rejected(self):
        signed = self._signed(self._lamports(self.payer.pubkey(), 1))
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))
        self.assertIn('does not match', ctx.exception.message)

    def test_short_amount_is_rejected(self):
        signed = self._signed(self._lamports(self.merchant, 99999))
        with self.assertRaises(ValidationError):
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))

    def test_missing_split_leg_is_rejected(self):
        signed = self._signed(self._lamports(self.merchant, 100000))
        with self.assertRaises(ValidationError):
            self.ledger.check_transfer(
                signed, self._expected((self.merchant, 60000), (self.platform, 40000)))

    def test_foreign_source_is_rejected(self):
        other = Keypair()
        signed = self._signed(self._lamports(self.merchant, 100000, source=other), signer=other)
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))
        self.assertIn('is not the payer', ctx.exception.message)

    def test_unknown_program_is_rejected(self):
        extra = Instruction(Pubkey.new_unique(), b'\x01', [
            AccountMeta(self.payer.pubkey(), is_signer=True, is_writable=True)])
        signed = self._signed(self._lamports(self.merchant, 100000), extra)
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))
        self.assertIn('Unexpected instruction', ctx.exception.message)

    def test_token_transfer(self):
        mint = Pubkey.new_unique()
        ledger = self._ledger(token_mint=str(mint))
        signed = self._signed(transfer_checked(self.payer.pubkey(), mint, self.merchant, 250))
        ledger.check_transfer(signed, self._expected((self.merchant, 250)))

    def test_token_transfer_wrong_mint(self):
        mint = Pubkey.new_unique()
        ledger = self._ledger(token_mint=str(mint))
        signed = self._signed(transfer_checked(self.payer.pubkey(), Pubkey.new_unique(), self.merchant, 250))
        with self.assertRaises(ValidationError) as ctx:
            ledger.check_transfer(signed, self._expected((self.merchant, 250)))
        self.assertIn('Mint mismatch', ctx.exception.message)

    def test_native_transfer_rejected_in_token_mode(self):
        ledger = self._ledger(token_mint=str(Pubkey.new_unique()))
        signed = self._signed(self._lamports(self.merchant, 250))
        with self.assertRaises(ValidationError):
            ledger.check_transfer(signed, self._expected((self.merchant, 250)))

    def test_invalid_token_mint(self):
        with self.assertRaises(ImproperlyConfigured):
            self._ledger(token_mint='not-a-mint')

    def _rebuild(self, signed, instructions=None, lookups=()):
        message = VersionedTransaction.from_bytes(signed).message
        rebuilt = MessageV0(
            message.header,
            list(message.account_keys),
            message.recent_blockhash,
            instructions if instructions is not None else list(message.instructions),
            list(lookups),
        )
        return sign_message(rebuilt, self.payer)

    def test_lookup_table_message_is_rejected(self):
        lookup = MessageAddressTableLookup(Pubkey.new_unique(), bytes([0]), bytes())
        signed = self._rebuild(self._signed(self._lamports(self.merchant, 100000)), lookups=[lookup])
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))
        self.assertIn('lookup tables', ctx.exception.message)
        with self.assertRaises(ValidationError):
            self.ledger.cosign(signed)

    def test_out_of_range_account_index_is_rejected(self):
        signed = self._signed(self._lamports(self.merchant, 100000))
        original = VersionedTransaction.from_bytes(signed).message.instructions[0]
        broken = CompiledInstruction(original.program_id_index, bytes(original.data), bytes([1, 42]))
        signed = self._rebuild(signed, instructions=[broken])
        with self.assertRaises(ValidationError) as ctx:
            self.ledger.check_transfer(signed, self._expected((self.merchant, 100000)))
        self.assertIn('unknown account index 42', ctx.exception.message)
        with self.assertRaises(ValidationError):
            self.ledger.cosign(signed)
