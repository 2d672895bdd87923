import json
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from solders.keypair import Keypair

from x402pay import services
from x402pay.errors import StorageError
from x402pay.models import NonceRecord, TransactionRecord
from x402pay.store import NonceStore
from x402pay.testutils import new_address, signed_request
from x402pay.types import AuthorizationPayload, PaymentRequest


class X402FacilitatorViewTests(TestCase):
    def setUp(self) -> None:
        overrides = override_settings(
            X402_FEE_MODE='percentage',
            X402_FEE_PERCENTAGE='0.4',
            X402_FEE_DESCRIPTION='platform fee',
            X402_PRIMARY_DESCRIPTION='merchant share',
            X402_PLATFORM_ADDRESS='',
            X402_SIMULATE_TRANSACTIONS=True,
            X402_MAX_PAYMENT_AMOUNT=0,
        )
        overrides.enable()
        self.addCleanup(overrides.disable)
        services.reset()
        self.addCleanup(services.reset)

        self.payer = Keypair()
        self.recipient = new_address()
        self.platform = new_address()

    def _post(self, name, body):
        return self.client.post(reverse(name), data=json.dumps(body), content_type='application/json')

    def _split(self, fee=40000, primary=60000):
        return {
            'enabled': True,
            'totalAmount': str(fee + primary),
            'recipients': [
                {'address': self.platform, 'amount': str(fee), 'percentage': '40', 'description': 'platform fee'},
                {'address': self.recipient, 'amount': str(primary), 'percentage': '60',
                 'description': 'merchant share'},
            ],
        }

    def _store_nonce(self, **extra):
        body = {'amount': '100000', 'recipient': self.recipient, 'resourceId': 'article-1'}
        body.update(extra)
        response = self._post('x402:store-nonce', body)
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()['data']

    def _payment_request(self, data) -> dict:
        payload = AuthorizationPayload.model_validate(data['payload'])
        request = PaymentRequest(
            payload=payload,
            signature=str(self.payer.sign_message(payload.serialize())),
            client_public_key=str(self.payer.pubkey()),
        )
        return request.model_dump(by_alias=True, exclude_none=True)

    def test_store_nonce_returns_payload(self):
        data = self._store_nonce(splitPayment=self._split())

        self.assertEqual(data['status'], 'pending')
        self.assertEqual(data['amount'], '100000')
        self.assertEqual(data['payload']['nonce'], data['nonce'])
        self.assertEqual(data['payload']['expiry'], data['expiry'])
        self.assertEqual(data['payload']['resourceId'], 'article-1')
        self.assertTrue(data['splitPaymentData']['enabled'])
        self.assertEqual(NonceRecord.objects.count(), 1)

    def test_store_nonce_rejects_invalid_amount(self):
        response = self._post('x402:store-nonce', {'amount': '0', 'recipient': self.recipient})
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['status'], 'error')
        self.assertEqual(body['code'], 'validation_error')

    def test_store_nonce_rejects_unbounded_lifetime(self):
        response = self._post('x402:store-nonce', {
            'amount': '100000',
            'recipient': self.recipient,
            'ttlSeconds': 10 ** 12,
        })
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response['Content-Type'], 'application/json')
        body = response.json()
        self.assertEqual(body['status'], 'error')
        self.assertEqual(body['code'], 'validation_error')
        self.assertFalse(NonceRecord.objects.exists())

    def test_store_nonce_rejects_underpaid_fee(self):
        response = self._post('x402:store-nonce', {
            'amount': '100000',
            'recipient': self.recipient,
            'splitPayment': self._split(fee=39000, primary=61000),
        })
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['code'], 'split_mismatch')
        self.assertEqual(body['reason'], 'fee_amount_mismatch')

    def test_verify_then_settle_once(self):
        data = self._store_nonce(splitPayment=self._split())
        payment_request = self._payment_request(data)

        verify_response = self._post('x402:verify', payment_request)
        self.assertEqual(verify_response.status_code, 200)
        verified = verify_response.json()
        self.assertEqual(verified['status'], 'verified')
        self.assertEqual(verified['payer'], str(self.payer.pubkey()))
        self.assertEqual(verified['nonce'], data['nonce'])

        settle_response = self._post('x402:settle', {'paymentRequest': payment_request})
        self.assertEqual(settle_response.status_code, 200)
        settled = settle_response.json()
        self.assertEqual(settled['status'], 'settled')
        self.assertTrue(settled['transactionSignature'].startswith('x402-demo-'))

        replay = self._post('x402:settle', {'paymentRequest': payment_request}).json()
        self.assertEqual(replay['status'], 'error')
        self.assertEqual(replay['code'], 'already_settled')

        record = NonceRecord.objects.get()
        self.assertEqual(record.status, NonceRecord.Status.SETTLED)
        self.assertEqual(record.transaction_signature, settled['transactionSignature'])
        self.assertEqual(TransactionRecord.objects.count(), 2)

    def test_settle_accepts_serialized_payment_request(self):
        data = self._store_nonce()
        payment_request = json.dumps(self._payment_request(data))
        body = self._post('x402:settle', {'paymentRequest': payment_request}).json()
        self.assertEqual(body['status'], 'settled')

    def test_settle_requires_payment_request(self):
        response = self._post('x402:settle', {})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['status'], 'error')
        self.assertEqual(body['error'], 'Payment request is required')
        self.assertEqual(body['code'], 'validation_error')

    def test_verify_rejects_malformed_request(self):
        body = self._post('x402:verify', {'payload': {'nonce': 'x'}}).json()
        self.assertEqual(body['code'], 'validation_error')

    def test_verify_rejects_bad_signature(self):
        data = self._store_nonce()
        payment_request = self._payment_request(data)
        payment_request['clientPublicKey'] = new_address()
        body = self._post('x402:verify', payment_request).json()
        self.assertEqual(body['code'], 'signature_invalid')
        self.assertFalse(body['retryable'])

    def test_verify_expired_nonce(self):
        record = NonceStore().create(amount=100000, recipient=self.recipient, ttl=timedelta(seconds=-1))
        request = signed_request(self.payer, record)
        body = self._post('x402:verify', request.model_dump(by_alias=True, exclude_none=True)).json()
        self.assertEqual(body['status'], 'error')
        self.assertEqual(body['code'], 'nonce_expired')

    def test_nonce_detail(self):
        data = self._store_nonce()
        response = self.client.get(reverse('x402:nonce', args=[data['nonce']]))
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['status'], 'ok')
        self.assertEqual(body['data']['nonce'], data['nonce'])
        self.assertIsNone(body['data']['transactionSignature'])

    def test_nonce_detail_not_found(self):
        response = self.client.get(reverse('x402:nonce', args=['missing']))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['code'], 'nonce_not_found')

    def test_stats(self):
        data = self._store_nonce()
        self._post('x402:settle', {'paymentRequest': self._payment_request(data)})
        self._store_nonce()

        body = self.client.get(reverse('x402:stats')).json()
        self.assertEqual(body['status'], 'ok')
        self.assertEqual(body['data']['totalIssued'], 2)
        self.assertEqual(body['data']['settled'], 1)
        self.assertEqual(body['data']['pending'], 1)

    @patch('x402pay.store.NonceStore.stats', side_effect=StorageError())
    def test_stats_storage_failure(self, stats_mock):
        response = self.client.get(reverse('x402:stats'))
        self.assertEqual(response.status_code, 500)
        body = response.json()
        self.assertEqual(body['code'], 'storage_error')
        self.assertTrue(body['retryable'])

    def test_cleanup(self):
        NonceStore().create(amount=1, recipient=self.recipient, ttl=timedelta(seconds=-1))
        self._store_nonce()
        body = self._post('x402:cleanup', {}).json()
        self.assertEqual(body, {'status': 'ok', 'data': {'cleaned': 1}})
        self.assertEqual(NonceRecord.objects.count(), 1)

    def test_health_and_index(self):
        health = self.client.get(reverse('health')).json()
        self.assertEqual(health['status'], 'ok')
        self.assertTrue(health['simulation'])

        index = self.client.get(reverse('home')).json()
        self.assertEqual(index['status'], 'running')
        self.assertIn('settle', index['endpoints'])


class SweepNoncesCommandTests(TestCase):
    def setUp(self) -> None:
        services.reset()
        self.addCleanup(services.reset)

    def test_single_sweep(self):
        store = NonceStore()
        store.create(amount=1, recipient=new_address(), ttl=timedelta(seconds=-1))
        store.create(amount=1, recipient=new_address())
        out = StringIO()

        call_command('sweep_nonces', '--once', stdout=out)

        self.assertIn('cleaned 1 expired nonces', out.getvalue())
        self.assertEqual(NonceRecord.objects.count(), 1)

    def test_sweep_reconciles_confirmed_settlements(self):
        store = NonceStore()
        record = store.create(amount=1, recipient=new_address())
        store.claim(record.nonce)
        store.record_attempt(record.nonce, 'tx-confirmed', TransactionRecord.Status.CONFIRMED)
        out = StringIO()

        call_command('sweep_nonces', '--once', stdout=out)

        self.assertIn('reconciled 1 confirmed settlements', out.getvalue())
        stored = store.get(record.nonce)
        self.assertEqual(stored.status, NonceRecord.Status.SETTLED)
        self.assertEqual(stored.transaction_signature, 'tx-confirmed')
