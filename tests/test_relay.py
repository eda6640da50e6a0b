import asyncio
import json
import time
from typing import Optional
from unittest import mock

import electrum_aionostr as aionostr
from electrum_aionostr.key import PrivateKey

from nwcserver.keystore import generate_keypair
from nwcserver.relay import (NostrRelaySessionFactory, NostrRelaySession, INFO_EVENT_KIND,
                             REQUEST_EVENT_KIND, RESPONSE_EVENT_KIND)

from . import NWCTestCase, fast_sleep
from .fakes import make_connection


class FakeEvent:

    def __init__(self, *, pubkey, content, kind=REQUEST_EVENT_KIND, created_at=None, expiration=None):
        self.id = PrivateKey().hex()  # any 32 byte hex
        self.pubkey = pubkey
        self.content = content
        self.kind = kind
        self.created_at = int(time.time()) if created_at is None else created_at
        self._expiration = expiration  # type: Optional[int]

    def expires_at(self):
        return self._expiration

    def is_expired(self):
        return self._expiration is not None and self._expiration < time.time()


class FakeRelayManager:

    def __init__(self):
        self.relays = ['wss://relay.example.com']
        self.connected = True
        self.queries = []
        self.incoming = asyncio.Queue()

    async def get_events(self, query, single_event=False, only_stored=False):
        self.queries.append(query)
        while True:
            yield await self.incoming.get()

    async def close(self):
        self.connected = False


class TestNostrRelaySession(NWCTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.published = []
        patcher = mock.patch.object(aionostr, '_add_event', new=self.fake_add_event)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.service_pubkey, self.service_privkey = generate_keypair()
        self.client_pubkey, client_privkey = generate_keypair()
        self.client_key = PrivateKey(raw_secret=bytes.fromhex(client_privkey))
        self.connection = make_connection(pubkey=self.client_pubkey, service_pubkey=self.service_pubkey)
        self.requests = []
        self.config = self.make_config(nwc_request_max_age=30)
        self.factory = NostrRelaySessionFactory(self.config)
        self.manager = FakeRelayManager()
        self.session = NostrRelaySession(
            factory=self.factory,
            manager=self.manager,
            connection=self.connection,
            private_key_hex=self.service_privkey,
            handler=self.handler,
        )

    async def asyncTearDown(self):
        await self.factory.close()
        await super().asyncTearDown()

    async def fake_add_event(self, manager, *, kind, tags, content, private_key):
        self.published.append(dict(kind=kind, tags=tags, content=content, private_key=private_key))
        return f"event{len(self.published)}"

    async def handler(self, method, params):
        self.requests.append((method, params))
        return {'result_type': method, 'result': {'ok': True}}

    def make_request(self, method, params=None, **kwargs) -> FakeEvent:
        msg = json.dumps({'method': method, 'params': params or {}})
        content = self.client_key.encrypt_message(msg, self.service_pubkey)
        kwargs.setdefault('pubkey', self.client_pubkey)
        return FakeEvent(content=content, **kwargs)

    def decrypt_response(self, published: dict) -> dict:
        return json.loads(self.client_key.decrypt_message(published['content'], self.service_pubkey))

    async def test_start_publishes_info_and_listens(self):
        await self.session.start()
        await fast_sleep()
        self.assertFalse(self.session.is_closed)
        info = self.published[0]
        self.assertEqual(INFO_EVENT_KIND, info['kind'])
        self.assertEqual('get_info get_balance pay_invoice', info['content'])
        self.assertEqual(self.service_privkey, info['private_key'])
        query = self.manager.queries[0]
        self.assertEqual([self.client_pubkey], query['authors'])
        self.assertEqual([REQUEST_EVENT_KIND], query['kinds'])

        request = self.make_request('get_balance')
        await self.manager.incoming.put(request)
        await fast_sleep()
        self.assertEqual([('get_balance', {})], self.requests)
        response = self.published[1]
        self.assertEqual(RESPONSE_EVENT_KIND, response['kind'])
        self.assertEqual([['p', self.client_pubkey], ['e', request.id]], response['tags'])
        self.assertEqual({'result_type': 'get_balance', 'result': {'ok': True}}, self.decrypt_response(response))

        await self.session.close()
        await fast_sleep()
        self.assertTrue(self.session.is_closed)

    async def test_request_params_are_passed(self):
        await self.session.handle_request_event(self.make_request('pay_invoice', {'invoice': 'lnbc1'}))
        await fast_sleep()
        self.assertEqual([('pay_invoice', {'invoice': 'lnbc1'})], self.requests)

    async def test_foreign_and_unknown_events_are_ignored(self):
        other_pubkey, _ = generate_keypair()
        await self.session.handle_request_event(self.make_request('get_info', pubkey=other_pubkey))
        await self.session.handle_request_event(self.make_request('get_info', kind=INFO_EVENT_KIND))
        await self.session.handle_request_event(FakeEvent(pubkey=self.client_pubkey, content='garbage'))
        await fast_sleep()
        self.assertEqual([], self.requests)
        self.assertEqual([], self.published)

    async def test_expired_request_is_ignored(self):
        now = int(time.time())
        await self.session.handle_request_event(self.make_request('get_info', expiration=now - 5))
        await fast_sleep()
        self.assertEqual([], self.requests)
        self.assertEqual([], self.published)
        # an expiration tag in the future overrides the max age
        await self.session.handle_request_event(
            self.make_request('get_info', created_at=now - 3600, expiration=now + 60))
        await fast_sleep()
        self.assertEqual([('get_info', {})], self.requests)

    async def test_old_request_gets_error(self):
        request = self.make_request('get_info', created_at=int(time.time()) - 60)
        await self.session.handle_request_event(request)
        await fast_sleep()
        self.assertEqual([], self.requests)
        response = self.decrypt_response(self.published[0])
        self.assertEqual('OTHER', response['error']['code'])

    async def test_close_does_not_cancel_running_requests(self):
        release = asyncio.Event()

        async def slow_handler(method, params):
            await release.wait()
            return {'result_type': method, 'result': {}}
        self.session.handler = slow_handler
        await self.session.start()
        await self.manager.incoming.put(self.make_request('get_info'))
        await fast_sleep()
        await self.session.close()
        release.set()
        await fast_sleep()
        self.assertTrue(self.session.is_closed)
        self.assertEqual(2, len(self.published))  # info + response


class TestNostrRelaySessionFactory(NWCTestCase):

    async def test_relays_include_nwc_relay(self):
        config = self.make_config(nostr_relays='wss://a.example.com,wss://b.example.com',
                                  nwc_relay='wss://nwc.example.com')
        factory = NostrRelaySessionFactory(config)
        self.assertEqual({'wss://a.example.com', 'wss://b.example.com', 'wss://nwc.example.com'},
                         factory.get_relays())

    async def test_open_session(self):
        published = []

        async def fake_add_event(manager, **kwargs):
            published.append(kwargs)
            return 'eventid'
        config = self.make_config()
        factory = NostrRelaySessionFactory(config)
        factory.manager = manager = FakeRelayManager()
        service_pubkey, service_privkey = generate_keypair()
        with mock.patch.object(aionostr, '_add_event', new=fake_add_event):
            session = await factory.open_session(
                connection=make_connection(service_pubkey=service_pubkey),
                private_key_hex=service_privkey,
                handler=None,
            )
            await fast_sleep()
        self.assertIs(manager, session.manager)
        self.assertEqual(1, len(published))
        self.assertFalse(session.is_closed)
        await factory.close()
        self.assertTrue(session.is_closed)
        self.assertFalse(manager.connected)
        self.assertIsNone(factory.manager)
