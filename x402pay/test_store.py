from datetime import timedelta
from unittest.mock import patch

from django.db import OperationalError
from django.test import TestCase
from django.utils import timezone

from x402pay.errors import (
    AlreadySettledError,
    ExpiredError,
    NonceCollisionError,
    NonceNotFoundError,
    StorageError,
)
from x402pay.models import NonceRecord, TransactionRecord
from x402pay.store import NonceStore
from x402pay.testutils import make_split, new_address

Status = NonceRecord.Status


class NonceStoreTests(TestCase):
    def setUp(self) -> None:
        self.store = NonceStore()
        self.recipient = new_address()

    def _create(self, ttl=timedelta(hours=1), **kwargs):
        return self.store.create(amount=100000, recipient=self.recipient, ttl=ttl, **kwargs)

    def test_create_issues_pending_nonce(self):
        record = self._create(resource_id='article-1')
        self.assertEqual(len(record.nonce), 64)
        self.assertEqual(record.status, Status.PENDING)
        self.assertIsNone(record.transaction_signature)
        self.assertEqual(record.expiry.microsecond % 1000, 0)
        self.assertEqual(self.store.get(record.nonce).resource_id, 'article-1')

    def test_create_persists_split(self):
        record = self._create(split=make_split(100000, 40000, 60000))
        stored = self.store.get(record.nonce)
        self.assertTrue(stored.split_payment['enabled'])
        self.assertEqual(stored.split_spec.total_amount, 100000)

    def test_collision_retries_then_fails(self):
        store = NonceStore(retry_limit=3, nonce_factory=lambda: 'fixed-nonce')
        store.create(amount=1, recipient=self.recipient)
        with self.assertRaises(NonceCollisionError):
            store.create(amount=1, recipient=self.recipient)
        self.assertEqual(NonceRecord.objects.filter(nonce='fixed-nonce').count(), 1)

    def test_collision_recovers_with_fresh_value(self):
        values = iter(['taken', 'taken', 'fresh'])
        store = NonceStore(nonce_factory=lambda: next(values))
        NonceRecord.objects.create(
            nonce='taken', amount='1', recipient=self.recipient, expiry=timezone.now())
        record = store.create(amount=1, recipient=self.recipient)
        self.assertEqual(record.nonce, 'fresh')

    def test_get_unknown_nonce(self):
        with self.assertRaises(NonceNotFoundError):
            self.store.get('missing')

    def test_storage_failure_is_reported(self):
        with patch.object(NonceRecord.objects, 'get', side_effect=OperationalError('disk I/O error')):
            with self.assertRaises(StorageError) as ctx:
                self.store.get('any')
        self.assertTrue(ctx.exception.retryable)

    def test_claim_is_single_winner(self):
        record = self._create()
        self.store.claim(record.nonce)
        with self.assertRaises(AlreadySettledError):
            self.store.claim(record.nonce)
        self.assertEqual(self.store.get(record.nonce).status, Status.SETTLING)

    def test_release_returns_nonce_to_verified(self):
        record = self._create()
        self.store.claim(record.nonce)
        self.store.release(record.nonce, 'insufficient funds')
        released = self.store.get(record.nonce)
        self.assertEqual(released.status, Status.VERIFIED)
        self.assertEqual(released.error_message, 'insufficient funds')
        self.store.claim(record.nonce)

    def test_mark_settled_only_once(self):
        record = self._create()
        self.store.claim(record.nonce)
        self.store.mark_settled(record.nonce, 'sig-1')
        with self.assertRaises(AlreadySettledError):
            self.store.mark_settled(record.nonce, 'sig-2')
        settled = self.store.get(record.nonce)
        self.assertEqual(settled.transaction_signature, 'sig-1')
        self.assertEqual(settled.status, Status.SETTLED)
        self.assertIsNotNone(settled.settled_at)

    def test_claimed_nonce_settles_after_expiry(self):
        record = self._create()
        self.store.claim(record.nonce)
        NonceRecord.objects.filter(nonce=record.nonce).update(
            expiry=timezone.now() - timedelta(seconds=5))
        self.store.mark_settled(record.nonce, 'late-sig')
        self.assertEqual(self.store.get(record.nonce).transaction_signature, 'late-sig')

    def test_reconcile_settles_only_confirmed_claims(self):
        confirmed = self._create()
        in_flight = self._create()
        failed_attempt = self._create()
        for record in (confirmed, in_flight, failed_attempt):
            self.store.claim(record.nonce)
        self.store.record_attempt(confirmed.nonce, 'sig-ok', TransactionRecord.Status.CONFIRMED)
        self.store.record_attempt(failed_attempt.nonce, 'sig-bad', TransactionRecord.Status.FAILED)

        self.assertEqual(self.store.reconcile_settlements(), 1)

        settled = self.store.get(confirmed.nonce)
        self.assertEqual(settled.status, Status.SETTLED)
        self.assertEqual(settled.transaction_signature, 'sig-ok')
        self.assertIsNotNone(settled.settled_at)
        self.assertEqual(self.store.get(in_flight.nonce).status, Status.SETTLING)
        self.assertEqual(self.store.get(failed_attempt.nonce).status, Status.SETTLING)
        self.assertEqual(self.store.reconcile_settlements(), 0)

    def test_mark_failed_is_terminal(self):
        record = self._create()
        self.store.claim(record.nonce)
        self.store.mark_failed(record.nonce, 'rpc down')
        failed = self.store.get(record.nonce)
        self.assertEqual(failed.status, Status.FAILED)
        with self.assertRaises(AlreadySettledError):
            self.store.ensure_open(failed)
        with self.assertRaises(AlreadySettledError):
            self.store.claim(record.nonce)

    def test_verify_and_claim_rejected_after_expiry(self):
        record = self._create(ttl=timedelta(seconds=-1))
        with self.assertRaises(ExpiredError):
            self.store.mark_verified(record.nonce, new_address())
        with self.assertRaises(ExpiredError):
            self.store.claim(record.nonce)
        self.assertEqual(self.store.get(record.nonce).status, Status.EXPIRED)

    def test_ensure_open_accepts_fresh_nonce(self):
        record = self._create()
        self.store.ensure_open(record)

    def test_sweep_removes_only_expired_unsigned_nonces(self):
        expired = self._create(ttl=timedelta(seconds=-1))
        live = self._create()
        settled = self._create()
        self.store.claim(settled.nonce)
        self.store.mark_settled(settled.nonce, 'sig-kept')
        claimed = self._create()
        self.store.claim(claimed.nonce)
        NonceRecord.objects.filter(nonce__in=[settled.nonce, claimed.nonce]).update(
            expiry=timezone.now() - timedelta(minutes=1))

        self.assertEqual(self.store.sweep_expired(), 1)

        remaining = set(NonceRecord.objects.values_list('nonce', flat=True))
        self.assertNotIn(expired.nonce, remaining)
        self.assertEqual(remaining, {live.nonce, settled.nonce, claimed.nonce})
        self.assertEqual(self.store.sweep_expired(), 0)

    def test_stats(self):
        self._create()
        self._create(ttl=timedelta(seconds=-1))
        settled = self._create()
        self.store.claim(settled.nonce)
        self.store.mark_settled(settled.nonce, 'sig-stats')
        failed = self._create()
        self.store.claim(failed.nonce)
        self.store.mark_failed(failed.nonce, 'boom')

        self.assertEqual(self.store.stats(), {
            'totalIssued': 4,
            'settled': 1,
            'failed': 1,
            'pending': 1,
            'expired': 1,
        })

    def test_record_attempt_appends_rows(self):
        self.store.record_attempt('n1', None, TransactionRecord.Status.FAILED, 'rejected')
        self.store.record_attempt('n1', 'sig', TransactionRecord.Status.CONFIRMED)
        rows = TransactionRecord.objects.filter(nonce='n1')
        self.assertEqual(rows.count(), 2)
        self.assertEqual(rows.filter(status=TransactionRecord.Status.FAILED).get().error_message, 'rejected')

    def test_record_attempt_failure_is_swallowed(self):
        with patch.object(TransactionRecord.objects, 'create', side_effect=OperationalError('locked')):
            self.store.record_attempt('n2', None, TransactionRecord.Status.FAILED, 'x')
        self.assertFalse(TransactionRecord.objects.filter(nonce='n2').exists())
