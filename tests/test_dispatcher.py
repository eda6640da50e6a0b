import asyncio
import json
import time

from nwcserver.backend import PaymentFailed
from nwcserver.connection import FULL_ACCESS_PERMISSIONS, READ_ONLY_PERMISSIONS
from nwcserver.dispatcher import RequestDispatcher, ErrorCode, msat_to_sat_ceil
from nwcserver.keystore import KeyStore
from nwcserver.registry import ConnectionRegistry, NWC_CONNECTIONS

from . import NWCTestCase
from .fakes import FakeBackend, FailingKeyValueStore


class DispatcherTestCase(NWCTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.config = self.make_config(nwc_relay='wss://relay.example.com')
        self.storage = FailingKeyValueStore()
        self.registry = ConnectionRegistry(self.config, self.storage, KeyStore(self.storage))
        await self.registry.load_all()
        self.backend = FakeBackend()
        self.dispatcher = RequestDispatcher(self.registry, self.backend, self.config)
        self.alice, _ = await self.registry.create('Alice', FULL_ACCESS_PERMISSIONS, max_amount_sats=600)

    async def request(self, method, params=None, *, connection_id=None) -> dict:
        return await self.dispatcher.handle_request(connection_id or self.alice, method, params)

    def assertError(self, code, response):
        self.assertIn('error', response, msg=response)
        self.assertEqual(code, response['error']['code'], msg=response)

    def spent(self, connection_id=None) -> int:
        return self.registry.get(connection_id or self.alice).total_spend_sats


class TestReadMethods(DispatcherTestCase):

    async def test_get_info(self):
        response = await self.request('get_info', {})
        self.assertEqual('get_info', response['result_type'])
        result = response['result']
        self.assertEqual('fakenode', result['alias'])
        self.assertEqual('regtest', result['network'])
        self.assertEqual(FULL_ACCESS_PERMISSIONS, result['methods'])
        self.assertEqual([], result['notifications'])

    async def test_get_balance_in_msat(self):
        response = await self.request('get_balance')
        self.assertEqual({'result_type': 'get_balance', 'result': {'balance': 100_000_000}}, response)

    async def test_make_invoice(self):
        response = await self.request('make_invoice', {'amount': 21_000, 'description': 'coffee'})
        result = response['result']
        self.assertEqual('incoming', result['type'])
        self.assertEqual(21_000, result['amount'])
        self.assertEqual('coffee', result['description'])
        self.assertEqual(self.config.NWC_DEFAULT_INVOICE_EXPIRY, result['expires_at'] - result['created_at'])
        self.assertIn(result['invoice'], self.backend.invoices)
        response = await self.request('make_invoice', {'amount': 21_000, 'expiry': 60})
        self.assertEqual(60, response['result']['expires_at'] - response['result']['created_at'])

    async def test_make_invoice_bad_params(self):
        self.assertError(ErrorCode.OTHER, await self.request('make_invoice', {}))
        self.assertError(ErrorCode.OTHER, await self.request('make_invoice', {'amount': -5}))
        self.assertError(ErrorCode.OTHER, await self.request('make_invoice', {'amount': 1000, 'description_hash': 'xyz'}))
        self.assertEqual([], self.backend.transactions)

    async def test_lookup_invoice(self):
        response = await self.request('make_invoice', {'amount': 1000})
        payment_hash = response['result']['payment_hash']
        response = await self.request('lookup_invoice', {'payment_hash': payment_hash})
        self.assertEqual(payment_hash, response['result']['payment_hash'])
        self.assertError(ErrorCode.NOT_FOUND, await self.request('lookup_invoice', {'payment_hash': '00' * 32}))
        self.assertError(ErrorCode.OTHER, await self.request('lookup_invoice', {}))

    async def test_sign_message(self):
        response = await self.request('sign_message', {'message': 'hi'})
        self.assertEqual({'message': 'hi', 'signature': 'd6869'}, response['result'])


class TestListTransactions(DispatcherTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.backend.transactions = [
            {'type': 'incoming', 'payment_hash': 'a', 'amount': 1000, 'created_at': 400, 'settled_at': None},
            {'type': 'outgoing', 'payment_hash': 'b', 'amount': 2000, 'created_at': 300, 'settled_at': 301},
            {'type': 'incoming', 'payment_hash': 'c', 'amount': 3000, 'created_at': 200, 'settled_at': 205},
            {'type': 'outgoing', 'payment_hash': 'd', 'amount': 4000, 'created_at': 100, 'state': 'pending'},
        ]

    async def list_hashes(self, params):
        response = await self.request('list_transactions', params)
        result = response['result']
        return [tx['payment_hash'] for tx in result['transactions']], result['total_count']

    async def test_no_filters(self):
        self.assertEqual((['a', 'b', 'c', 'd'], 4), await self.list_hashes({}))

    async def test_filters(self):
        self.assertEqual((['a', 'c'], 2), await self.list_hashes({'type': 'incoming'}))
        self.assertEqual((['b', 'c'], 2), await self.list_hashes({'from': 200, 'until': 300}))
        self.assertEqual((['a', 'd'], 2), await self.list_hashes({'unpaid': True}))
        self.assertEqual((['b', 'c'], 2), await self.list_hashes({'unpaid': False}))

    async def test_pagination_reports_total(self):
        self.assertEqual((['b', 'c'], 4), await self.list_hashes({'offset': 1, 'limit': 2}))
        self.assertEqual(([], 4), await self.list_hashes({'offset': 10}))

    async def test_invalid_params(self):
        self.assertError(ErrorCode.OTHER, await self.request('list_transactions', {'type': 'sideways'}))
        self.assertError(ErrorCode.OTHER, await self.request('list_transactions', {'limit': -1}))


class TestAuthorization(DispatcherTestCase):

    async def test_unknown_connection(self):
        self.assertError(ErrorCode.UNAUTHORIZED, await self.request('get_info', connection_id='nope'))

    async def test_unknown_method(self):
        response = await self.request('get_everything')
        self.assertError(ErrorCode.NOT_FOUND, response)
        self.assertEqual('get_everything', response['result_type'])

    async def test_missing_permission(self):
        bob, _ = await self.registry.create('Bob', READ_ONLY_PERMISSIONS)
        invoice = self.backend.add_invoice(1000)
        self.assertError(ErrorCode.NOT_FOUND, await self.request('pay_invoice', {'invoice': invoice}, connection_id=bob))
        self.assertError(ErrorCode.NOT_FOUND, await self.request('sign_message', {'message': 'x'}, connection_id=bob))
        self.assertEqual([], self.backend.payments)
        response = await self.request('get_balance', connection_id=bob)
        self.assertIn('result', response)

    async def test_expired_connection(self):
        await self.registry.update(self.alice, expires_at=int(time.time()) - 1)
        self.assertError(ErrorCode.UNAUTHORIZED, await self.request('get_balance'))
        invoice = self.backend.add_invoice(1000)
        self.assertError(ErrorCode.UNAUTHORIZED, await self.request('pay_invoice', {'invoice': invoice}))
        self.assertEqual([], self.backend.calls)

    async def test_requests_mark_connection_used(self):
        self.assertIsNone(self.registry.get(self.alice).last_used_at)
        await self.request('get_everything')
        self.assertIsNotNone(self.registry.get(self.alice).last_used_at)

    async def test_invalid_params(self):
        self.assertError(ErrorCode.OTHER, await self.request('get_info', ['not', 'a', 'dict']))


class TestPayInvoice(DispatcherTestCase):

    async def test_budget_is_enforced(self):
        invoice1 = self.backend.add_invoice(500_000)
        invoice2 = self.backend.add_invoice(500_000)
        response = await self.request('pay_invoice', {'invoice': invoice1})
        self.assertEqual('pay_invoice', response['result_type'])
        self.assertEqual(64, len(response['result']['preimage']))
        self.assertEqual(500, self.spent())
        response = await self.request('pay_invoice', {'invoice': invoice2})
        self.assertError(ErrorCode.QUOTA_EXCEEDED, response)
        self.assertEqual([(invoice1, 500_000)], self.backend.payments)
        self.assertEqual(500, self.spent())

    async def test_concurrent_payments_cannot_overspend(self):
        self.backend.pay_delay = 0.01
        invoices = [self.backend.add_invoice(400_000) for i in range(3)]
        responses = await asyncio.gather(*[self.request('pay_invoice', {'invoice': inv}) for inv in invoices])
        succeeded = [r for r in responses if 'result' in r]
        rejected = [r for r in responses if 'error' in r]
        self.assertEqual(1, len(succeeded))
        self.assertEqual(2, len(rejected))
        for r in rejected:
            self.assertError(ErrorCode.QUOTA_EXCEEDED, r)
        self.assertEqual(1, self.backend.max_payments_in_flight)
        self.assertEqual(400, self.spent())

    async def test_fees_are_not_counted(self):
        self.backend.fee_msat = 3_000
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(100_000)})
        self.assertEqual(3_000, response['result']['fees_paid'])
        self.assertEqual(100, self.spent())

    async def test_msat_are_rounded_up(self):
        self.assertEqual(2, msat_to_sat_ceil(1001))
        self.assertEqual(1, msat_to_sat_ceil(1000))
        self.assertEqual(0, msat_to_sat_ceil(0))
        await self.request('pay_invoice', {'invoice': self.backend.add_invoice(1001)})
        self.assertEqual(2, self.spent())

    async def test_zero_amount_invoice(self):
        invoice = self.backend.add_invoice(None)
        self.assertError(ErrorCode.OTHER, await self.request('pay_invoice', {'invoice': invoice}))
        response = await self.request('pay_invoice', {'invoice': invoice, 'amount': 50_000})
        self.assertIn('result', response)
        self.assertEqual([(invoice, 50_000)], self.backend.payments)
        self.assertEqual(50, self.spent())

    async def test_bad_invoices(self):
        self.assertError(ErrorCode.OTHER, await self.request('pay_invoice', {}))
        self.assertError(ErrorCode.OTHER, await self.request('pay_invoice', {'invoice': 'lnbc1garbage'}))
        expired = self.backend.add_invoice(1000, expiry=60, timestamp=int(time.time()) - 3600)
        self.assertError(ErrorCode.OTHER, await self.request('pay_invoice', {'invoice': expired}))
        self.assertEqual([], self.backend.payments)

    async def test_failed_payment_is_not_counted(self):
        self.backend.payment_error = PaymentFailed("no route found")
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(100_000)})
        self.assertError(ErrorCode.INTERNAL_ERROR, response)
        self.assertIn("no route found", response["error"]["message"])
        self.assertEqual("pay_invoice", response["result_type"])
        self.assertEqual(0, self.spent())

    async def test_unexpected_errors_are_opaque(self):
        self.backend.payment_error = RuntimeError("/home/user/.secret/wallet is locked")
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(100_000)})
        self.assertError(ErrorCode.INTERNAL_ERROR, response)
        self.assertNotIn('secret', response['error']['message'])
        self.assertEqual(0, self.spent())

    async def test_spend_counts_when_save_fails(self):
        self.storage.fail_writes_for.add(NWC_CONNECTIONS)
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(500_000)})
        self.assertIn('preimage', response['result'])
        self.assertEqual(500, self.spent())
        self.assertTrue(self.registry.error)
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(500_000)})
        self.assertError(ErrorCode.QUOTA_EXCEEDED, response)
        self.assertEqual(1, len(self.backend.payments))
        # written out with the next successful save
        self.storage.fail_writes_for.clear()
        await self.registry.update(self.alice, name='Alice2')
        stored = json.loads(await self.storage.get_item(NWC_CONNECTIONS))
        self.assertEqual(500, stored[0]['total_spend_sats'])

    async def test_invoice_amount_takes_precedence(self):
        invoice = self.backend.add_invoice(100_000)
        response = await self.request('pay_invoice', {'invoice': invoice, 'amount': 590_000_000})
        self.assertIn('result', response)
        self.assertEqual([None], self.backend.pay_invoice_amounts)
        self.assertEqual([(invoice, 100_000)], self.backend.payments)
        self.assertEqual(100, self.spent())

    async def test_unlimited_connection(self):
        bob, _ = await self.registry.create('Bob', FULL_ACCESS_PERMISSIONS)
        response = await self.request('pay_invoice', {'invoice': self.backend.add_invoice(10**9)}, connection_id=bob)
        self.assertIn('result', response)
        self.assertEqual(10**6, self.spent(bob))


class TestPayKeysend(DispatcherTestCase):

    async def test_keysend(self):
        destination = '02' + 'ab' * 32
        response = await self.request('pay_keysend', {'pubkey': destination, 'amount': 2_500})
        self.assertIn('preimage', response['result'])
        self.assertEqual([(destination, 2_500)], self.backend.payments)
        self.assertEqual(3, self.spent())

    async def test_keysend_budget(self):
        response = await self.request('pay_keysend', {'pubkey': 'ab' * 32, 'amount': 601_000})
        self.assertError(ErrorCode.QUOTA_EXCEEDED, response)
        self.assertEqual([], self.backend.payments)

    async def test_keysend_bad_params(self):
        self.assertError(ErrorCode.OTHER, await self.request('pay_keysend', {'pubkey': 'ab' * 32}))
        self.assertError(ErrorCode.OTHER, await self.request('pay_keysend', {'pubkey': 'ab' * 32, 'amount': 0}))
        self.assertError(ErrorCode.OTHER, await self.request('pay_keysend', {'pubkey': 'xyz', 'amount': 1000}))
        self.assertError(ErrorCode.OTHER, await self.request(
            'pay_keysend', {'pubkey': 'ab' * 32, 'amount': 1000, 'tlv_records': 'nope'}))
        self.assertEqual(0, self.spent())
