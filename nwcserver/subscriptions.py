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
import functools
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import TYPE_CHECKING, Optional, Dict, List, Callable, Awaitable, Iterable

from .budget import is_expired
from .connection import NWCConnection
from .keystore import KeyStore, KeyNotFound
from .logging import Logger

if TYPE_CHECKING:
    from .dispatcher import RequestDispatcher
    from .registry import ConnectionRegistry
    from .simple_config import SimpleConfig


# (method, params) -> response content
RequestHandler = Callable[[str, dict], Awaitable[dict]]


class SubscriptionState(Enum):
    UNSUBSCRIBED = 'unsubscribed'
    SUBSCRIBING = 'subscribing'
    SUBSCRIBED = 'subscribed'


class RelaySession(ABC):
    """A live relay subscription for a single connection."""

    @abstractmethod
    async def close(self) -> None:
        """Stops listening. Requests that are already being handled still get their response."""
        pass

    @property
    def is_closed(self) -> bool:
        return False


class RelaySessionFactory(ABC):

    @abstractmethod
    async def open_session(
            self,
            *,
            connection: NWCConnection,
            private_key_hex: str,
            handler: RequestHandler,
    ) -> RelaySession:
        pass

    async def close(self) -> None:
        pass


class SubscriptionManager(Logger):

    LOGGING_SHORTCUT = 'S'
    RETRY_DELAY_BASE = 2  # seconds, raised to the power of the attempt

    def __init__(
            self,
            registry: 'ConnectionRegistry',
            keystore: KeyStore,
            dispatcher: 'RequestDispatcher',
            session_factory: RelaySessionFactory,
            *,
            config: Optional['SimpleConfig'] = None,
    ):
        Logger.__init__(self)
        self.registry = registry
        self.keystore = keystore
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.config = config
        self._sessions = {}  # type: Dict[str, RelaySession]
        self._states = {}  # type: Dict[str, SubscriptionState]
        # orders teardown before re-establishment for the same connection
        self._locks = defaultdict(asyncio.Lock)  # type: Dict[str, asyncio.Lock]

    @staticmethod
    def is_eligible(conn: NWCConnection) -> bool:
        return not conn.isolated and not is_expired(conn)

    def get_state(self, connection_id: str) -> SubscriptionState:
        return self._states.get(connection_id, SubscriptionState.UNSUBSCRIBED)

    def is_subscribed(self, connection_id: str) -> bool:
        return self.get_state(connection_id) == SubscriptionState.SUBSCRIBED

    def subscribed_ids(self) -> List[str]:
        return list(self._sessions)

    async def subscribe(self, conn: NWCConnection) -> None:
        """Opens a relay session for conn, replacing an existing one.
        Raises KeyNotFound if the service key of the connection is missing.
        """
        async with self._locks[conn.id]:
            await self._close_session(conn.id)
            self._states[conn.id] = SubscriptionState.SUBSCRIBING
            try:
                private_key_hex = self.keystore.get(conn.service_pubkey)
                session = await self.session_factory.open_session(
                    connection=conn,
                    private_key_hex=private_key_hex,
                    handler=functools.partial(self.dispatcher.handle_request, conn.id),
                )
            except BaseException:
                self._states[conn.id] = SubscriptionState.UNSUBSCRIBED
                raise
            self._sessions[conn.id] = session
            self._states[conn.id] = SubscriptionState.SUBSCRIBED
        self.logger.info(f"subscribed connection {conn.id} ({conn.name})")

    async def unsubscribe(self, connection_id: str) -> None:
        async with self._locks[connection_id]:
            await self._close_session(connection_id)

    async def _close_session(self, connection_id: str) -> None:
        session = self._sessions.pop(connection_id, None)
        self._states.pop(connection_id, None)
        if session is None:
            return
        await session.close()
        self.logger.info(f"unsubscribed connection {connection_id}")

    def forget(self, connection_id: str) -> None:
        """Drops the lock of a deleted connection."""
        lock = self._locks.get(connection_id)
        if lock is not None and not lock.locked():
            del self._locks[connection_id]

    async def unsubscribe_all(self) -> None:
        for connection_id in list(self._sessions):
            await self.unsubscribe(connection_id)

    async def _subscribe_many(self, connections: Iterable[NWCConnection]) -> List[str]:
        failed = []
        for conn in connections:
            try:
                await self.subscribe(conn)
            except KeyNotFound:
                self.logger.warning(f"cannot subscribe connection {conn.id}: service key not found")
                failed.append(conn.id)
            except Exception as e:
                self.logger.warning(f"cannot subscribe connection {conn.id}: {e!r}")
                failed.append(conn.id)
        return failed

    async def subscribe_all(self) -> List[str]:
        """Subscribes every eligible connection. Returns the ids that failed."""
        connections = [conn for conn in self.registry.list() if self.is_eligible(conn)]
        failed = await self._subscribe_many(connections)
        self.logger.info(f"subscribed {len(connections) - len(failed)} of {len(connections)} connections")
        return failed

    def _retryable(self, connection_ids: Iterable[str]) -> List[NWCConnection]:
        connections = []
        for connection_id in connection_ids:
            conn = self.registry.get(connection_id)
            # deleted, expired or isolated in the meantime
            if conn is None or not self.is_eligible(conn):
                continue
            # retrying does not bring back a missing key
            if not self.keystore.has_key(conn.service_pubkey):
                continue
            connections.append(conn)
        return connections

    async def subscribe_all_with_retry(self, *, max_attempts: Optional[int] = None) -> List[str]:
        if max_attempts is None:
            max_attempts = self.config.NWC_SUBSCRIBE_MAX_ATTEMPTS if self.config else 10
        failed = await self.subscribe_all()
        attempt = 1
        while attempt < max_attempts:
            retry = self._retryable(failed)
            if not retry:
                break
            delay = self.RETRY_DELAY_BASE ** attempt
            self.logger.info(f"retrying {len(retry)} subscriptions in {delay}s (attempt {attempt + 1})")
            await asyncio.sleep(delay)
            failed = await self._subscribe_many(retry)
            attempt += 1
        if failed:
            self.logger.warning(f"giving up subscribing connections: {failed}")
        return failed

    async def sync(self) -> List[str]:
        """Drops sessions of connections that are gone or no longer eligible,
        and subscribes eligible connections without a live session.
        Returns the ids that failed to subscribe.
        """
        for connection_id, session in list(self._sessions.items()):
            conn = self.registry.get(connection_id)
            if conn is None or not self.is_eligible(conn) or session.is_closed:
                await self.unsubscribe(connection_id)
        missing = [conn.id for conn in self.registry.list()
                   if self.is_eligible(conn) and conn.id not in self._sessions]
        return await self._subscribe_many(self._retryable(missing))
