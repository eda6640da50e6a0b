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
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Optional, Dict, List, Tuple, Sequence, Any

from . import util
from .budget import (has_budget_limit, reset_budget, validate_spend, add_spending,
                     needs_budget_reset, is_expired)
from .connection import (NWCConnection, FULL_ACCESS_PERMISSIONS, generate_connection_id,
                         updatable_fields, coerce_budget_renewal)
from .keystore import KeyStore, generate_keypair
from .logging import Logger
from .storage import KeyValueStore
from .uri import serialize_connection_uri
from .util import MyEncoder, is_non_negative_integer

if TYPE_CHECKING:
    from .simple_config import SimpleConfig
    from .subscriptions import SubscriptionManager


NWC_CONNECTIONS = 'nwc-connections'


class RegistryError(Exception):
    pass


class ValidationError(RegistryError):
    pass


class EmptyName(ValidationError):
    pass


class DuplicateName(ValidationError):
    pass


class ConnectionNotFound(RegistryError):
    pass


class PersistenceError(RegistryError):
    pass


class ConnectionRegistry(Logger):
    """Owns the wallet connections and is the only writer of their persisted state.

    Every mutation copies the affected record, writes the complete new snapshot
    to storage and only then replaces the in-memory collection. A failed write
    therefore leaves memory at the last persisted state, except for spends of
    payments that already went out, see record_spend.
    """

    LOGGING_SHORTCUT = 'R'

    def __init__(self, config: 'SimpleConfig', storage: KeyValueStore, keystore: KeyStore):
        Logger.__init__(self)
        self.config = config
        self.storage = storage
        self.keystore = keystore
        self.subscriptions = None  # type: Optional[SubscriptionManager]
        self._connections = {}  # type: Dict[str, NWCConnection]
        # serializes read-modify-persist sequences
        self.lock = asyncio.Lock()
        # held across authorize -> pay -> commit by the dispatcher
        self._spend_locks = defaultdict(asyncio.Lock)  # type: Dict[str, asyncio.Lock]
        self._first_use_waiters = {}  # type: Dict[str, asyncio.Event]
        self.loaded = False
        self.error = False
        self.error_message = None  # type: Optional[str]

    def set_subscription_manager(self, subscriptions: 'SubscriptionManager') -> None:
        self.subscriptions = subscriptions

    # --- read access; returns copies, writes must go through the methods below

    def get(self, connection_id: str) -> Optional[NWCConnection]:
        conn = self._connections.get(connection_id)
        return conn.copy() if conn else None

    def get_by_name(self, name: str) -> Optional[NWCConnection]:
        key = name.strip().lower()
        for conn in self._connections.values():
            if conn.name.lower() == key:
                return conn.copy()
        return None

    def get_by_pubkey(self, pubkey: str) -> Optional[NWCConnection]:
        for conn in self._connections.values():
            if conn.pubkey == pubkey:
                return conn.copy()
        return None

    def list(self) -> List[NWCConnection]:
        return [conn.copy() for conn in self._connections.values()]

    def active(self, *, now: Optional[int] = None) -> List[NWCConnection]:
        return [conn for conn in self.list() if not is_expired(conn, now=now)]

    def expired(self, *, now: Optional[int] = None) -> List[NWCConnection]:
        return [conn for conn in self.list() if is_expired(conn, now=now)]

    def __len__(self):
        return len(self._connections)

    def spend_lock(self, connection_id: str) -> asyncio.Lock:
        return self._spend_locks[connection_id]

    # --- persistence

    @staticmethod
    def _deserialize(raw: Optional[str]) -> Dict[str, NWCConnection]:
        if raw is None:
            return {}
        items = json.loads(raw)
        if not isinstance(items, list):
            raise ValueError("stored connections are not a list")
        connections = {}
        for item in items:
            conn = NWCConnection.from_json(item)
            if conn.id in connections:
                raise ValueError(f"duplicate connection id {conn.id}")
            connections[conn.id] = conn
        return connections

    @staticmethod
    def _serialize(connections: Dict[str, NWCConnection]) -> str:
        return json.dumps([conn.to_json() for conn in connections.values()], cls=MyEncoder)

    async def _commit(self, connections: Dict[str, NWCConnection], *, notify: bool = True) -> None:
        assert self.lock.locked()
        try:
            await self.storage.set_item(NWC_CONNECTIONS, self._serialize(connections))
        except Exception as e:
            self.logger.warning(f"failed to save connections: {e!r}")
            raise PersistenceError(f"Failed to save connections: {e}") from e
        self._connections = connections
        if notify:
            util.trigger_callback('nwc_connections_changed')

    async def _replace(self, conn: NWCConnection, *, notify: bool = True) -> None:
        connections = dict(self._connections)
        connections[conn.id] = conn
        await self._commit(connections, notify=notify)

    async def load_all(self) -> None:
        """Loads connections and keys. Never raises; check self.error."""
        self.error = False
        self.error_message = None
        try:
            await self.keystore.load()
            connections = self._deserialize(await self.storage.get_item(NWC_CONNECTIONS))
        except Exception as e:
            self.logger.exception("failed to load connections")
            self.error = True
            self.error_message = f"Failed to load connections: {e}"
            connections = {}
        async with self.lock:
            self._connections = connections
        self.loaded = True
        for conn in connections.values():
            if not self.keystore.has_key(conn.service_pubkey):
                self.logger.warning(f"no key stored for connection {conn.id} ({conn.name})")
        self.logger.info(f"loaded {len(connections)} connections")
        if not self.error:
            try:
                await self.reset_due_budgets()
            except PersistenceError as e:
                self.error = True
                self.error_message = str(e)

    async def persist_all(self) -> None:
        async with self.lock:
            await self._commit(dict(self._connections), notify=False)

    # --- validation helpers

    @staticmethod
    def _clean_name(name: Any) -> str:
        if not isinstance(name, str):
            raise ValidationError(f"invalid connection name: {name!r}")
        name = name.strip()
        if not name:
            raise EmptyName("Connection name must not be empty")
        return name

    def _check_unique_name(self, name: str, *, exclude_id: Optional[str] = None) -> None:
        for conn in self._connections.values():
            if conn.id != exclude_id and conn.name.lower() == name.lower():
                raise DuplicateName(f"Connection name already exists: {name}")

    @staticmethod
    def _check_budget_and_expiry(max_amount_sats, expires_at) -> None:
        if max_amount_sats is not None and not is_non_negative_integer(max_amount_sats):
            raise ValidationError(f"budget must be a non-negative number of sats, got {max_amount_sats!r}")
        if expires_at is not None and not is_non_negative_integer(expires_at):
            raise ValidationError(f"invalid expiry timestamp: {expires_at!r}")

    # --- mutations

    async def create(
            self,
            name: str,
            permissions: Optional[Sequence[str]] = None,
            *,
            max_amount_sats: Optional[int] = None,
            budget_renewal=None,
            expires_at: Optional[int] = None,
            isolated: bool = False,
            metadata: Optional[dict] = None,
    ) -> Tuple[str, str]:
        """Creates a connection and returns (connection_id, connection_uri)."""
        name = self._clean_name(name)
        if permissions is None:
            permissions = FULL_ACCESS_PERMISSIONS
        self._check_budget_and_expiry(max_amount_sats, expires_at)
        try:
            renewal = coerce_budget_renewal(budget_renewal)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        async with self.lock:
            self._check_unique_name(name)
            service_pubkey, service_privkey = generate_keypair()
            client_pubkey, client_secret = generate_keypair()
            now = int(time.time())
            try:
                conn = NWCConnection(
                    id=generate_connection_id(),
                    name=name,
                    pubkey=client_pubkey,
                    service_pubkey=service_pubkey,
                    relay_url=self.config.get_nwc_relay(),
                    permissions=list(permissions),
                    created_at=now,
                    max_amount_sats=max_amount_sats,
                    budget_renewal=renewal,
                    expires_at=expires_at,
                    isolated=isolated,
                    metadata=dict(metadata or {}),
                )
            except (ValueError, TypeError) as e:
                raise ValidationError(str(e)) from e
            if has_budget_limit(conn):
                conn.last_budget_reset_at = now
            try:
                await self.keystore.put(service_pubkey, service_privkey)
            except Exception as e:
                raise PersistenceError(f"Failed to save connection key: {e}") from e
            try:
                await self._replace(conn)
            except PersistenceError:
                try:
                    await self.keystore.remove(service_pubkey)
                except Exception as e:
                    self.logger.warning(f"orphaned key {service_pubkey}: {e!r}")
                raise

        self.logger.info(f"created connection {conn.id}: {name=}, "
                         f"budget={max_amount_sats} ({renewal.value}), {expires_at=}")
        uri = serialize_connection_uri(
            service_pubkey,
            client_secret,
            relay=conn.relay_url,
            extra_relays=self.config.get_nostr_relays(),
        )
        await self._refresh_subscription(conn)
        return conn.id, uri

    async def update(self, connection_id: str, **fields) -> bool:
        unknown = set(fields) - set(updatable_fields())
        if unknown:
            raise ValidationError(f"cannot update fields: {sorted(unknown)}")
        if 'name' in fields:
            fields['name'] = self._clean_name(fields['name'])
        self._check_budget_and_expiry(fields.get('max_amount_sats'), fields.get('expires_at'))

        async with self.lock:
            old = self._connections.get(connection_id)
            if old is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            if 'name' in fields:
                self._check_unique_name(fields['name'], exclude_id=connection_id)
            conn = old.copy()
            try:
                for key, value in fields.items():
                    if key == 'budget_renewal':
                        value = coerce_budget_renewal(value)
                    elif key == 'metadata':
                        value = dict(value or {})
                    setattr(conn, key, value)
            except (ValueError, TypeError) as e:
                raise ValidationError(str(e)) from e

            now = int(time.time())
            had_budget, has_budget = has_budget_limit(old), has_budget_limit(conn)
            if not had_budget and has_budget:
                conn.last_budget_reset_at = now
            elif had_budget and not has_budget:
                conn.last_budget_reset_at = None
                conn.total_spend_sats = 0
            elif has_budget and old.budget_renewal != conn.budget_renewal:
                reset_budget(conn, now=now)
            await self._replace(conn)

        self.logger.info(f"updated connection {connection_id}: {sorted(fields)}")
        if {'permissions', 'expires_at', 'isolated'} & set(fields):
            await self._refresh_subscription(conn)
        return True

    async def delete(self, connection_id: str) -> bool:
        if connection_id not in self._connections:
            raise ConnectionNotFound(f"Connection not found: {connection_id}")
        # stop accepting new requests first. requests already being handled run to completion.
        if self.subscriptions:
            await self.subscriptions.unsubscribe(connection_id)
        async with self.lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            connections = dict(self._connections)
            del connections[connection_id]
            await self._commit(connections)
            spend_lock = self._spend_locks.get(connection_id)
            if spend_lock is not None and not spend_lock.locked():
                del self._spend_locks[connection_id]
            if self.subscriptions:
                self.subscriptions.forget(connection_id)
            try:
                await self.keystore.remove(conn.service_pubkey)
            except Exception as e:
                raise PersistenceError(f"Connection deleted, but failed to remove its key: {e}") from e
        self._first_use_waiters.pop(connection_id, None)
        self.logger.info(f"deleted connection {connection_id} ({conn.name})")
        return True

    async def mark_used(self, connection_id: str) -> bool:
        """Updates last_used_at. Returns True if this was the first use of the connection."""
        async with self.lock:
            old = self._connections.get(connection_id)
            if old is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            first_use = old.last_used_at is None
            conn = old.copy()
            conn.last_used_at = int(time.time())
            await self._replace(conn, notify=False)
        if first_use:
            self.logger.info(f"first use of connection {connection_id} ({conn.name})")
            if waiter := self._first_use_waiters.get(connection_id):
                waiter.set()
            util.trigger_callback('nwc_connection_first_use', connection_id)
        return first_use

    async def wait_for_first_use(self, connection_id: str, *, timeout: Optional[float] = None) -> bool:
        """Waits until the remote client sends its first request.
        Returns False on timeout.
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ConnectionNotFound(f"Connection not found: {connection_id}")
        if conn.last_used_at is not None:
            return True
        waiter = self._first_use_waiters.setdefault(connection_id, asyncio.Event())
        try:
            await asyncio.wait_for(waiter.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._first_use_waiters.pop(connection_id, None)

    async def authorize_spend(self, connection_id: str, amount_sat: int) -> None:
        """Raises budget.BudgetError if the connection may not spend amount_sat.

        A budget that is due for renewal is reset (and persisted) first.
        """
        async with self.lock:
            old = self._connections.get(connection_id)
            if old is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            conn = old.copy()
            try:
                validate_spend(conn, amount_sat)
            finally:
                if conn.last_budget_reset_at != old.last_budget_reset_at:
                    self.logger.info(f"budget of connection {connection_id} renewed")
                    await self._replace(conn)

    async def record_spend(self, connection_id: str, amount_sat: int) -> None:
        async with self.lock:
            old = self._connections.get(connection_id)
            if old is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            conn = old.copy()
            add_spending(conn, amount_sat)
            try:
                await self._replace(conn)
            except PersistenceError as e:
                # money that left the wallet is counted even when it could not be saved.
                # the next successful save writes it out.
                connections = dict(self._connections)
                connections[conn.id] = conn
                self._connections = connections
                self.error = True
                self.error_message = str(e)
                raise
        self.logger.debug(f"connection {connection_id} spent {amount_sat} sat, "
                          f"total {conn.total_spend_sats} sat")

    async def reset_budget(self, connection_id: str) -> None:
        async with self.lock:
            old = self._connections.get(connection_id)
            if old is None:
                raise ConnectionNotFound(f"Connection not found: {connection_id}")
            conn = old.copy()
            reset_budget(conn)
            await self._replace(conn)

    async def reset_due_budgets(self, *, now: Optional[int] = None) -> List[str]:
        """Housekeeping: renews every budget whose period has elapsed."""
        async with self.lock:
            due = [conn.copy() for conn in self._connections.values()
                   if needs_budget_reset(conn, now=now)]
            if not due:
                return []
            connections = dict(self._connections)
            for conn in due:
                reset_budget(conn, now=now)
                connections[conn.id] = conn
            await self._commit(connections)
        self.logger.info(f"renewed budgets of {len(due)} connections")
        return [conn.id for conn in due]

    async def _refresh_subscription(self, conn: NWCConnection) -> None:
        if not self.subscriptions:
            return
        if conn.isolated or is_expired(conn):
            await self.subscriptions.unsubscribe(conn.id)
            return
        try:
            await self.subscriptions.subscribe(conn)
        except Exception as e:
            # the housekeeping loop retries connections that are not subscribed
            self.logger.warning(f"could not subscribe connection {conn.id}: {e!r}")
