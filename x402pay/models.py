from django.db import models
from django.utils import timezone

from x402pay.types import datetime_to_ms, parse_split_spec


class NonceRecord(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        VERIFIED = 'verified', 'Verified'
        SETTLING = 'settling', 'Settling'
        SETTLED = 'settled', 'Settled'
        FAILED = 'failed', 'Failed'
        EXPIRED = 'expired', 'Expired'

    nonce = models.CharField(max_length=66, unique=True)
    # uint64 amounts kept as decimal strings, like on-chain token values
    amount = models.CharField(max_length=20)
    recipient = models.CharField(max_length=128)
    resource_id = models.CharField(max_length=255, blank=True, default='')
    resource_url = models.CharField(max_length=1024, blank=True, default='')
    client_public_key = models.CharField(max_length=128, blank=True, default='')
    expiry = models.DateTimeField(db_index=True)
    split_payment = models.JSONField(blank=True, null=True)
    # Solana signature is base58 (~88 chars).
    transaction_signature = models.CharField(max_length=128, blank=True, null=True, unique=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    error_message = models.TextField(blank=True, default='')
    settled_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self) -> str:
        return f'{self.nonce} ({self.status})'

    @property
    def amount_value(self) -> int:
        return int(self.amount)

    @property
    def expiry_ms(self) -> int:
        return datetime_to_ms(self.expiry)

    @property
    def split_spec(self):
        return parse_split_spec(self.split_payment)

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) >= self.expiry

    def to_dict(self) -> dict:
        return {
            'nonce': self.nonce,
            'amount': self.amount,
            'recipient': self.recipient,
            'resourceId': self.resource_id,
            'resourceUrl': self.resource_url,
            'clientPublicKey': self.client_public_key or None,
            'expiry': self.expiry_ms,
            'splitPaymentData': self.split_payment,
            'transactionSignature': self.transaction_signature,
            'status': self.status,
            'errorMessage': self.error_message or None,
            'settledAt': self.settled_at.isoformat() if self.settled_at else None,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }


class TransactionRecord(models.Model):
    """Append-only audit row, one per settlement attempt."""

    class Status(models.TextChoices):
        CONFIRMED = 'confirmed', 'Confirmed'
        FAILED = 'failed', 'Failed'

    nonce = models.CharField(max_length=66, db_index=True)
    transaction_signature = models.CharField(max_length=128, blank=True, null=True)
    status = models.CharField(max_length=16, choices=Status.choices)
    error_message = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self) -> str:
        return f'{self.nonce} {self.status}'
