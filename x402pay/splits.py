"""
Split payment enforcement against the configured fee policy.

The platform fee is always derived from the authoritative total, never from
the per-recipient figures a client supplies.
"""
from decimal import Decimal, ROUND_FLOOR

from loguru import logger

from x402pay.config import FeeMode, FeePolicy
from x402pay.errors import SplitMismatchError
from x402pay.types import SplitEnabled, SplitPaymentSpec

ROUNDING_TOLERANCE = 1


def floor_share(total: int, fraction: Decimal) -> int:
    return int((Decimal(total) * fraction).to_integral_value(rounding=ROUND_FLOOR))


class SplitPaymentValidator:
    def __init__(self, fee_policy: FeePolicy):
        self.fee_policy = fee_policy

    def expected_fee(self, total: int) -> int:
        if self.fee_policy.mode == FeeMode.FIXED:
            return self.fee_policy.fixed_amount
        return floor_share(total, self.fee_policy.percentage)

    def expected_primary(self, total: int) -> int:
        if self.fee_policy.mode == FeeMode.FIXED:
            return total - self.fee_policy.fixed_amount
        return floor_share(total, Decimal('1') - self.fee_policy.percentage)

    @property
    def tolerance(self) -> int:
        return ROUNDING_TOLERANCE if self.fee_policy.mode == FeeMode.PERCENTAGE else 0

    def validate(self, split: SplitPaymentSpec, expected_total: int) -> None:
        """
        Raise SplitMismatchError on the first failed check.

        Checks run in order: total, fee recipient present, fee amount,
        primary recipient amount (when configured), recipient sum.
        """
        if not isinstance(split, SplitEnabled):
            return

        policy = self.fee_policy

        if split.total_amount != expected_total:
            raise SplitMismatchError(
                'total_mismatch',
                f'Amount mismatch. Expected: {expected_total}, Received: {split.total_amount}',
            )

        fee_recipient = split.find(policy.fee_description, policy.platform_address)
        if fee_recipient is None:
            raise SplitMismatchError(
                'missing_fee_recipient',
                f'{policy.fee_description} is required',
            )

        expected_fee = self.expected_fee(expected_total)
        if abs(fee_recipient.amount - expected_fee) > self.tolerance:
            logger.info('split fee mismatch: expected {} got {}', expected_fee, fee_recipient.amount)
            raise SplitMismatchError(
                'fee_amount_mismatch',
                f'Invalid {policy.fee_description}. Expected: {expected_fee}, Received: {fee_recipient.amount}',
            )

        if policy.primary_description:
            primary = split.find(policy.primary_description)
            if primary is None:
                raise SplitMismatchError(
                    'missing_primary_recipient',
                    f'{policy.primary_description} is required',
                )
            expected_primary = self.expected_primary(expected_total)
            if abs(primary.amount - expected_primary) > self.tolerance:
                raise SplitMismatchError(
                    'primary_amount_mismatch',
                    f'Invalid {policy.primary_description}. Expected: {expected_primary}, Received: {primary.amount}',
                )

        allocated = sum(r.amount for r in split.recipients)
        if allocated != split.total_amount:
            raise SplitMismatchError(
                'recipient_sum_mismatch',
                f'Recipient amounts sum to {allocated}, expected {split.total_amount}',
            )
