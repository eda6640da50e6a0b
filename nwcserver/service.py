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
from typing import TYPE_CHECKING, Optional, List, Tuple

from . import util
from .backend import WalletBackend
from .connection import NWCConnection
from .dispatcher import RequestDispatcher
from .keystore import KeyStore
from .logging import Logger
from .registry import ConnectionRegistry, PersistenceError
from .relay import NostrRelaySessionFactory
from .storage import KeyValueStore, FileKeyValueStore
from .subscriptions import SubscriptionManager, RelaySessionFactory
from .util import OldTaskGroup, log_exceptions

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


class NWCService(Logger):
    """Wires storage, registry, dispatcher and relay subscriptions together."""

    def __init__(
            self,
            config: 'SimpleConfig',
            backend: WalletBackend,
            *,
            storage: Optional[KeyValueStore] = None,
            session_factory: Optional[RelaySessionFactory] = None,
    ):
        Logger.__init__(self)
        self.config = config
        self.backend = backend
        if storage is None:
            storage = FileKeyValueStore(config.get_storage_dir())
        self.storage = storage
        self.keystore = KeyStore(storage)
        self.registry = ConnectionRegistry(config, storage, self.keystore)
        self.dispatcher = RequestDispatcher(self.registry, backend, config)
        if session_factory is None:
            session_factory = NostrRelaySessionFactory(config)
        self.session_factory = session_factory
        self.subscriptions = SubscriptionManager(
            self.registry, self.keystore, self.dispatcher, session_factory, config=config)
        self.taskgroup = OldTaskGroup()
        self.is_running = False

    async def load(self) -> None:
        """Loads connections without touching the relays, for offline use."""
        await self.registry.load_all()
        if self.registry.error:
            self.logger.error(self.registry.error_message)

    async def start(self) -> None:
        assert not self.is_running
        if util._asyncio_event_loop is None:
            util.set_asyncio_loop(asyncio.get_running_loop())
        await self.load()
        self.registry.set_subscription_manager(self.subscriptions)
        self.is_running = True
        await self.taskgroup.spawn(self.subscriptions.subscribe_all_with_retry())
        await self.taskgroup.spawn(self.housekeeping_loop())
        self.logger.info("started")

    async def stop(self) -> None:
        self.is_running = False
        await self.taskgroup.cancel_remaining()
        await self.subscriptions.unsubscribe_all()
        await self.session_factory.close()
        self.logger.info("stopped")

    @log_exceptions
    async def housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.NWC_HOUSEKEEPING_INTERVAL)
            await self.housekeeping()

    async def housekeeping(self) -> None:
        try:
            await self.registry.reset_due_budgets()
        except PersistenceError as e:
            self.logger.warning(f"budget renewal failed: {e}")
        if self.registry.subscriptions:
            await self.subscriptions.sync()

    async def create_connection(self, name: str, **kwargs) -> Tuple[str, str]:
        return await self.registry.create(name, **kwargs)

    async def update_connection(self, connection_id: str, **fields) -> bool:
        return await self.registry.update(connection_id, **fields)

    async def delete_connection(self, connection_id: str) -> bool:
        return await self.registry.delete(connection_id)

    async def reset_budget(self, connection_id: str) -> None:
        await self.registry.reset_budget(connection_id)

    def list_connections(self) -> List[NWCConnection]:
        return self.registry.list()

    def get_connection(self, connection_id: str) -> Optional[NWCConnection]:
        return self.registry.get(connection_id)

    async def wait_for_first_use(self, connection_id: str, *, timeout: Optional[float] = None) -> bool:
        return await self.registry.wait_for_first_use(connection_id, timeout=timeout)
