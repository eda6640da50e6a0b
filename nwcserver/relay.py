#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2025 The Electrum Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
import asyncio
import json
import logging
import ssl
import time
from typing import TYPE_CHECKING, Optional, Set

import electrum_aionostr as aionostr
from electrum_aionostr.event import Event as nEvent
from electrum_aionostr.key import PrivateKey

from .connection import NWCConnection
from .logging import Logger
from .subscriptions import RelaySession, RelaySessionFactory, RequestHandler
from .util import log_exceptions, ca_path, OldTaskGroup, make_aiohttp_proxy_connector

if TYPE_CHECKING:
    from aiohttp_socks import ProxyConnector

    from .simple_config import SimpleConfig


INFO_EVENT_KIND = 13194
REQUEST_EVENT_KIND = 23194
RESPONSE_EVENT_KIND = 23195
NOTIFICATION_EVENT_KIND = 23196


class RelayConnectionError(Exception):
    pass


class NostrRelaySessionFactory(RelaySessionFactory, Logger):
    """Shares one relay manager between the sessions of all connections."""

    def __init__(self, config: 'SimpleConfig'):
        Logger.__init__(self)
        self.config = config
        # request handlers are spawned here, so they outlive the listen task of their session
        self.taskgroup = OldTaskGroup()
        self.ssl_context = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH, cafile=ca_path)
        self.manager = None  # type: Optional[aionostr.Manager]
        self._manager_lock = asyncio.Lock()

    def get_relays(self) -> Set[str]:
        # ensure that we also connect to the NWC relay, even if it's not in the nostr relays
        return set(self.config.get_nostr_relays()) | {self.config.get_nwc_relay()}

    def get_relay_manager(self) -> aionostr.Manager:
        nostr_logger = self.logger.getChild('aionostr')
        nostr_logger.setLevel(logging.INFO)
        proxy_config = self.config.get_proxy()
        if proxy_config:
            proxy = make_aiohttp_proxy_connector(proxy_config, self.ssl_context)
        else:
            proxy = None  # type: Optional[ProxyConnector]
        return aionostr.Manager(
            relays=self.get_relays(),
            private_key=PrivateKey().hex(),  # use random private key
            log=nostr_logger,
            ssl_context=self.ssl_context,
            proxy=proxy,
        )

    async def get_manager(self) -> aionostr.Manager:
        """Returns a connected manager, recreating it if it lost all relays."""
        async with self._manager_lock:
            if self.manager is None:
                self.manager = self.get_relay_manager()
            if len(self.manager.relays) <= 0:
                # setup new manager so relays are populated again
                await self.manager.close()
                self.manager = self.get_relay_manager()
            if not self.manager.connected:
                await self.manager.connect()
            if len(self.manager.relays) <= 0:
                raise RelayConnectionError("Could not connect to any relays")
            return self.manager

    async def open_session(
            self,
            *,
            connection: NWCConnection,
            private_key_hex: str,
            handler: RequestHandler,
    ) -> 'NostrRelaySession':
        manager = await self.get_manager()
        session = NostrRelaySession(
            factory=self,
            manager=manager,
            connection=connection,
            private_key_hex=private_key_hex,
            handler=handler,
        )
        await session.start()
        return session

    async def close(self) -> None:
        await self.taskgroup.cancel_remaining()
        async with self._manager_lock:
            if self.manager:
                await self.manager.close()
                self.manager = None


class NostrRelaySession(RelaySession, Logger):

    def __init__(
            self,
            *,
            factory: NostrRelaySessionFactory,
            manager: aionostr.Manager,
            connection: NWCConnection,
            private_key_hex: str,
            handler: RequestHandler,
    ):
        self.connection_id = connection.id
        Logger.__init__(self)
        self.factory = factory
        self.manager = manager
        self.client_pubkey = connection.pubkey
        self.permissions = list(connection.permissions)
        self.private_key_hex = private_key_hex
        self.private_key = PrivateKey(raw_secret=bytes.fromhex(private_key_hex))
        self.handler = handler
        self.max_request_age = factory.config.NWC_REQUEST_MAX_AGE
        self.listen_task = None  # type: Optional[asyncio.Task]

    def diagnostic_name(self):
        return self.connection_id

    @property
    def taskgroup(self) -> OldTaskGroup:
        return self.factory.taskgroup

    @property
    def is_closed(self) -> bool:
        return self.listen_task is None or self.listen_task.done()

    async def start(self) -> None:
        await self.publish_info_event()
        self.listen_task = await self.taskgroup.spawn(self.handle_requests())

    async def close(self) -> None:
        # only the listen task; handler tasks live in the factory taskgroup
        if self.listen_task:
            self.listen_task.cancel()

    async def publish_info_event(self) -> None:
        """
        Publishes the info event announcing the methods this connection may use.
        https://github.com/nostr-protocol/nips/blob/75f246ed987c23c99d77bfa6aeeb1afb669e23f7/47.md#example-nip-47-info-event
        """
        event_id = await aionostr._add_event(
            self.manager,
            kind=INFO_EVENT_KIND,
            tags=None,  # only needed if we support notification events
            content=' '.join(self.permissions),
            private_key=self.private_key_hex,
        )
        self.logger.debug(f"Published info event {event_id} to {self.client_pubkey}")

    @log_exceptions
    async def handle_requests(self) -> None:
        query = {
            "authors": [self.client_pubkey],
            "kinds": [REQUEST_EVENT_KIND],
            "limit": 0,  # requests only new events after creating this subscription
            "since": int(time.time()),
        }
        async for event in self.manager.get_events(query, single_event=False, only_stored=False):
            await self.handle_request_event(event)

    async def handle_request_event(self, event: nEvent) -> None:
        if event.pubkey != self.client_pubkey:
            return
        if event.kind != REQUEST_EVENT_KIND:
            self.logger.debug(f"Unknown nwc request event kind: {event.kind}")
            return

        # if the request has an explicitly set expiration tag, ignore it if it is expired
        # otherwise ignore requests older than max_request_age to not handle requests
        # the user may already expect to have timed out
        if event.expires_at() is not None:
            if event.is_expired():
                self.logger.debug(f"expired nwc request event: {event.id}")
                return
        elif event.created_at < int(time.time()) - self.max_request_age:
            self.logger.debug(f"old nwc request event: {event.id}")
            content = {"error": {"code": "OTHER", "message": "not handling too old request"}}
            await self.send_encrypted_response(event, content)
            return

        try:
            content = json.loads(self.private_key.decrypt_message(event.content, event.pubkey))
            method = content['method']
            params = content.get('params') or {}
        except Exception:
            self.logger.debug(f"Invalid request event content: {event.id}", exc_info=True)
            return
        self.logger.debug(f"got request: {method=}")
        await self.taskgroup.spawn(self.run_request(event, method, params))

    @log_exceptions
    async def run_request(self, request_event: nEvent, method: str, params: dict) -> None:
        response = await self.handler(method, params)
        await self.send_encrypted_response(request_event, response)

    async def send_encrypted_response(self, request_event: nEvent, content: dict) -> None:
        """Encrypts content for the client and sends it as response to the given event"""
        tags = [['p', self.client_pubkey], ['e', request_event.id]]
        await aionostr._add_event(
            self.manager,
            kind=RESPONSE_EVENT_KIND,
            tags=tags,
            content=self.encrypt_to_client(json.dumps(content)),
            # use the private key we generated for this specific client
            private_key=self.private_key_hex,
        )

    def encrypt_to_client(self, msg: str) -> str:
        return self.private_key.encrypt_message(msg, self.client_pubkey)
