import unittest
from decimal import Decimal

from x402pay.config import FeeMode, FeePolicy
from x402pay.errors import SplitMismatchError
from x402pay.splits import SplitPaymentValidator, floor_share
from x402pay.testutils import make_split, new_address
from x402pay.types import SPLIT_DISABLED, SplitEnabled, SplitRecipient


class SplitPaymentValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = SplitPaymentValidator(FeePolicy(
            percentage=Decimal('0.4'),
            fee_description='platform fee',
            primary_description='merchant share',
        ))

    def _reason(self, split, total):
        with self.assertRaises(SplitMismatchError) as ctx:
            self.validator.validate(split, total)
        return ctx.exception.reason

    def test_accepts_exact_sixty_forty_split(self):
        self.validator.validate(make_split(100000, 40000, 60000), 100000)

    def test_rejects_underpaid_platform_fee(self):
        self.assertEqual(self._reason(make_split(100000, 39000, 60000), 100000), 'fee_amount_mismatch')

    def test_fee_rounding_tolerance_is_one_unit(self):
        # floor(99999 * 0.4) = 39999, floor(99999 * 0.6) = 59999
        self.validator.validate(make_split(99999, 40000, 59999), 99999)
        self.assertEqual(self._reason(make_split(99999, 40001, 59998), 99999), 'fee_amount_mismatch')

    def test_total_must_match_authoritative_amount(self):
        self.assertEqual(self._reason(make_split(100000, 40000, 60000), 200000), 'total_mismatch')

    def test_requires_fee_recipient(self):
        split = SplitEnabled(
            total_amount=100000,
            recipients=(SplitRecipient(new_address(), 100000, Decimal('100'), 'merchant share'),),
        )
        self.assertEqual(self._reason(split, 100000), 'missing_fee_recipient')

    def test_primary_share_is_enforced(self):
        self.assertEqual(self._reason(make_split(100000, 40000, 50000), 100000), 'primary_amount_mismatch')

    def test_recipient_amounts_must_sum_to_total(self):
        split = SplitEnabled(
            total_amount=100000,
            recipients=(
                SplitRecipient(new_address(), 40000, Decimal('40'), 'platform fee'),
                SplitRecipient(new_address(), 60000, Decimal('60'), 'merchant share'),
                SplitRecipient(new_address(), 5, Decimal('0'), 'tip'),
            ),
        )
        self.assertEqual(self._reason(split, 100000), 'recipient_sum_mismatch')

    def test_disabled_split_always_passes(self):
        self.validator.validate(SPLIT_DISABLED, 12345)

    def test_platform_address_must_match_when_configured(self):
        split = make_split(100000, 40000, 60000)
        validator = SplitPaymentValidator(FeePolicy(
            percentage=Decimal('0.4'),
            fee_description='platform fee',
            platform_address=new_address(),
        ))
        with self.assertRaises(SplitMismatchError) as ctx:
            validator.validate(split, 100000)
        self.assertEqual(ctx.exception.reason, 'missing_fee_recipient')

    def test_fixed_fee_policy(self):
        validator = SplitPaymentValidator(FeePolicy(
            mode=FeeMode.FIXED,
            fixed_amount=12500,
            fee_description='platform fee',
            primary_description='merchant share',
        ))
        validator.validate(make_split(25000, 12500, 12500), 25000)
        with self.assertRaises(SplitMismatchError) as ctx:
            validator.validate(make_split(25000, 12499, 12501), 25000)
        self.assertEqual(ctx.exception.reason, 'fee_amount_mismatch')

    def test_enabled_split_needs_recipients(self):
        with self.assertRaises(ValueError):
            SplitEnabled(total_amount=1, recipients=())

    def test_floor_share_avoids_float_rounding(self):
        self.assertEqual(floor_share(10, Decimal('0.7')), 7)
        self.assertEqual(floor_share(2 ** 64 - 1, Decimal('0.5')), (2 ** 64 - 1) // 2)
