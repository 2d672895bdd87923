"""
Durable nonce state.

Every settlement transition is a conditional ``UPDATE ... WHERE`` so that two
requests racing on the same nonce cannot both win, without any lock shared
between unrelated nonces.
"""
import secrets
from datetime import timedelta
from functools import wraps
from typing import Callable, Dict, Optional

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone
from loguru import logger

from x402pay.errors import (
    AlreadySettledError,
    ExpiredError,
    FacilitatorError,
    NonceCollisionError,
    NonceNotFoundError,
    StorageError,
)
from x402pay.models import NonceRecord, TransactionRecord
from x402pay.types import SPLIT_DISABLED, SplitPaymentSpec, truncate_to_ms

Status = NonceRecord.Status

OPEN_STATUSES = (Status.PENDING, Status.VERIFIED)
SWEEPABLE_STATUSES = (Status.PENDING, Status.VERIFIED, Status.EXPIRED)


def generate_nonce() -> str:
    return secrets.token_hex(32)


def _storage_errors(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except FacilitatorError:
            raise
        except DatabaseError as exc:
            logger.error('nonce store failure in {}: {}', func.__name__, exc)
            raise StorageError() from exc
    return wrapper


class NonceStore:
    def __init__(self, retry_limit: int = 5, nonce_factory: Callable[[], str] = generate_nonce):
        self.retry_limit = retry_limit
        self.nonce_factory = nonce_factory

    @_storage_errors
    def create(
        self,
        amount: int,
        recipient: str,
        split: SplitPaymentSpec = SPLIT_DISABLED,
        ttl: timedelta = timedelta(hours=1),
        resource_id: str = '',
        resource_url: str = '',
    ) -> NonceRecord:
        expiry = truncate_to_ms(timezone.now() + ttl)
        for attempt in range(1, self.retry_limit + 1):
            record = NonceRecord(
                nonce=self.nonce_factory(),
                amount=str(amount),
                recipient=recipient,
                resource_id=resource_id,
                resource_url=resource_url,
                expiry=expiry,
                split_payment=split.to_dict(),
            )
            try:
                with transaction.atomic():
                    record.save(force_insert=True)
            except IntegrityError:
                logger.warning('nonce collision on attempt {}/{}', attempt, self.retry_limit)
                continue
            logger.debug('nonce issued: nonce={} amount={} recipient={}',
                         record.nonce, amount, recipient)
            return record
        raise NonceCollisionError(
            f'Unable to generate a unique nonce after {self.retry_limit} attempts.')

    @_storage_errors
    def get(self, nonce: str) -> NonceRecord:
        try:
            return NonceRecord.objects.get(nonce=nonce)
        except NonceRecord.DoesNotExist:
            raise NonceNotFoundError(f'Nonce not found: {nonce}') from None

    def ensure_open(self, record: NonceRecord, now=None) -> None:
        """Raise unless ``record`` can still be verified or settled."""
        if record.transaction_signature or record.status == Status.SETTLED:
            raise AlreadySettledError()
        if record.status == Status.SETTLING:
            raise AlreadySettledError('Settlement already in progress for this nonce.')
        if record.status == Status.FAILED:
            raise AlreadySettledError(
                'Nonce was consumed by a failed settlement; request a new nonce.')
        if record.status == Status.EXPIRED or record.is_expired(now):
            self.mark_expired(record.nonce)
            raise ExpiredError()

    def _raise_for_unavailable(self, nonce: str, now) -> None:
        """Explain why a conditional update matched no row."""
        self.ensure_open(self.get(nonce), now)
        raise AlreadySettledError('Nonce is not in a settleable state.')

    @_storage_errors
    def mark_verified(self, nonce: str, client_public_key: str) -> None:
        now = timezone.now()
        updated = NonceRecord.objects.filter(
            nonce=nonce,
            status__in=OPEN_STATUSES,
            transaction_signature__isnull=True,
            expiry__gt=now,
        ).update(status=Status.VERIFIED, client_public_key=client_public_key, updated_at=now)
        if not updated:
            self._raise_for_unavailable(nonce, now)

    @_storage_errors
    def claim(self, nonce: str) -> None:
        """Atomically take the single settlement slot of a nonce."""
        now = timezone.now()
        updated = NonceRecord.objects.filter(
            nonce=nonce,
            status__in=OPEN_STATUSES,
            transaction_signature__isnull=True,
            expiry__gt=now,
        ).update(status=Status.SETTLING, updated_at=now)
        if not updated:
            self._raise_for_unavailable(nonce, now)
        logger.debug('nonce claimed for settlement: {}', nonce)

    @_storage_errors
    def release(self, nonce: str, reason: str = '') -> None:
        """Hand a claimed nonce back when nothing reached the ledger."""
        updated = NonceRecord.objects.filter(
            nonce=nonce,
            status=Status.SETTLING,
            transaction_signature__isnull=True,
        ).update(status=Status.VERIFIED, error_message=reason, updated_at=timezone.now())
        if updated:
            logger.warning('settlement claim released for nonce {}: {}', nonce, reason)

    @_storage_errors
    def mark_settled(self, nonce: str, transaction_signature: str) -> None:
        """Set the transaction signature only if it is still null."""
        now = timezone.now()
        updated = NonceRecord.objects.filter(
            Q(status=Status.SETTLING) | Q(status__in=OPEN_STATUSES, expiry__gt=now),
            nonce=nonce,
            transaction_signature__isnull=True,
        ).update(
            transaction_signature=transaction_signature,
            status=Status.SETTLED,
            settled_at=now,
            error_message='',
            updated_at=now,
        )
        if not updated:
            self._raise_for_unavailable(nonce, now)

    @_storage_errors
    def mark_failed(self, nonce: str, reason: str) -> None:
        NonceRecord.objects.filter(
            nonce=nonce,
            status=Status.SETTLING,
            transaction_signature__isnull=True,
        ).update(status=Status.FAILED, error_message=reason, updated_at=timezone.now())

    @_storage_errors
    def mark_expired(self, nonce: str) -> None:
        now = timezone.now()
        NonceRecord.objects.filter(
            nonce=nonce,
            status__in=OPEN_STATUSES,
            transaction_signature__isnull=True,
            expiry__lte=now,
        ).update(status=Status.EXPIRED, updated_at=now)

    def record_attempt(
        self,
        nonce: str,
        transaction_signature: Optional[str],
        status: str,
        error_message: str = '',
    ) -> None:
        """Append an audit row; failures here never reach the caller."""
        try:
            with transaction.atomic():
                TransactionRecord.objects.create(
                    nonce=nonce[:66],
                    transaction_signature=transaction_signature,
                    status=status,
                    error_message=error_message,
                )
        except DatabaseError as exc:
            logger.warning('failed to store transaction record for nonce {}: {}', nonce, exc)

    @_storage_errors
    def reconcile_settlements(self) -> int:
        """Settle claimed nonces whose transfer already has a confirmed audit row."""
        confirmed = TransactionRecord.objects.filter(
            status=TransactionRecord.Status.CONFIRMED,
            transaction_signature__isnull=False,
        )
        reconciled = 0
        stuck = NonceRecord.objects.filter(status=Status.SETTLING, transaction_signature__isnull=True)
        for nonce in stuck.values_list('nonce', flat=True):
            audit = confirmed.filter(nonce=nonce).order_by('-created_at', '-id').first()
            if audit is None:
                continue
            updated = NonceRecord.objects.filter(
                nonce=nonce,
                status=Status.SETTLING,
                transaction_signature__isnull=True,
            ).update(
                transaction_signature=audit.transaction_signature,
                status=Status.SETTLED,
                settled_at=audit.created_at,
                error_message='',
                updated_at=timezone.now(),
            )
            if updated:
                logger.info('reconciled nonce {} with confirmed tx {}', nonce, audit.transaction_signature)
                reconciled += updated
        return reconciled

    @_storage_errors
    def sweep_expired(self) -> int:
        deleted, _ = NonceRecord.objects.filter(
            expiry__lte=timezone.now(),
            transaction_signature__isnull=True,
            status__in=SWEEPABLE_STATUSES,
        ).delete()
        if deleted:
            logger.info('swept {} expired nonces', deleted)
        return deleted

    @_storage_errors
    def stats(self) -> Dict[str, int]:
        now = timezone.now()
        counts = NonceRecord.objects.aggregate(
            total_issued=Count('id'),
            settled=Count('id', filter=Q(status=Status.SETTLED)),
            failed=Count('id', filter=Q(status=Status.FAILED)),
            pending=Count('id', filter=(
                Q(status=Status.SETTLING) | Q(status__in=OPEN_STATUSES, expiry__gt=now)
            )),
            expired=Count('id', filter=(
                Q(status=Status.EXPIRED) | Q(status__in=OPEN_STATUSES, expiry__lte=now)
            )),
        )
        return {
            'totalIssued': counts['total_issued'],
            'settled': counts['settled'],
            'failed': counts['failed'],
            'pending': counts['pending'],
            'expired': counts['expired'],
        }
