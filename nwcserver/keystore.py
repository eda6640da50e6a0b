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
from typing import Dict, Tuple

from electrum_aionostr.key import PrivateKey

from .logging import Logger
from .storage import KeyValueStore
from .util import is_hex_str, is_pubkey_hex


NWC_SERVICE_KEYS = 'nwc-service-keys'


class KeyNotFound(Exception):
    pass


class KeyStoreError(Exception):
    pass


def generate_keypair() -> Tuple[str, str]:
    """Returns (pubkey_hex, privkey_hex)"""
    privkey = PrivateKey()
    return privkey.public_key.hex(), privkey.hex()


class KeyStore(Logger):
    """Maps the service pubkey of a connection to its private key.

    Kept in its own storage entry, apart from the connection list, so that
    listing or exporting connections can never leak a secret.
    """

    def __init__(self, storage: KeyValueStore):
        Logger.__init__(self)
        self.storage = storage
        self._keys = {}  # type: Dict[str, str]
        self.lock = asyncio.Lock()

    async def load(self) -> None:
        raw = await self.storage.get_item(NWC_SERVICE_KEYS)
        if raw is None:
            self._keys = {}
            return
        try:
            keys = json.loads(raw)
            if not isinstance(keys, dict):
                raise ValueError("key map is not a dict")
            for pubkey, privkey in keys.items():
                if not is_pubkey_hex(pubkey) or not is_hex_str(privkey):
                    raise ValueError(f"malformed entry for {pubkey!r}")
        except ValueError as e:
            raise KeyStoreError(f"cannot parse stored keys: {e}") from e
        self._keys = keys
        self.logger.info(f"loaded {len(self._keys)} keys")

    async def _save(self, keys: Dict[str, str]) -> None:
        await self.storage.set_item(NWC_SERVICE_KEYS, json.dumps(keys))
        self._keys = keys

    async def put(self, pubkey: str, privkey: str) -> None:
        async with self.lock:
            keys = dict(self._keys)
            keys[pubkey] = privkey
            await self._save(keys)

    async def remove(self, pubkey: str) -> bool:
        async with self.lock:
            if pubkey not in self._keys:
                return False
            keys = dict(self._keys)
            del keys[pubkey]
            await self._save(keys)
            return True

    def get(self, pubkey: str) -> str:
        try:
            return self._keys[pubkey]
        except KeyError:
            raise KeyNotFound(f"no private key for {pubkey}") from None

    def has_key(self, pubkey: str) -> bool:
        return pubkey in self._keys
