import json

from nwcserver.keystore import KeyStore, KeyNotFound, KeyStoreError, generate_keypair, NWC_SERVICE_KEYS
from nwcserver.storage import InMemoryKeyValueStore, StorageError
from nwcserver.util import is_pubkey_hex, is_hex_str

from . import NWCTestCase
from .fakes import FailingKeyValueStore


class TestKeyStore(NWCTestCase):

    def test_generate_keypair(self):
        pubkey, privkey = generate_keypair()
        self.assertTrue(is_pubkey_hex(pubkey))
        self.assertTrue(is_hex_str(privkey))
        self.assertEqual(64, len(privkey))
        self.assertNotEqual((pubkey, privkey), generate_keypair())

    async def test_put_get_remove(self):
        storage = InMemoryKeyValueStore()
        keystore = KeyStore(storage)
        await keystore.load()
        pubkey, privkey = generate_keypair()
        await keystore.put(pubkey, privkey)
        self.assertEqual(privkey, keystore.get(pubkey))
        self.assertTrue(keystore.has_key(pubkey))
        # persisted
        keystore2 = KeyStore(storage)
        await keystore2.load()
        self.assertEqual(privkey, keystore2.get(pubkey))
        self.assertTrue(await keystore.remove(pubkey))
        self.assertFalse(await keystore.remove(pubkey))
        with self.assertRaises(KeyNotFound):
            keystore.get(pubkey)
        self.assertEqual({}, json.loads(storage.items[NWC_SERVICE_KEYS]))

    async def test_failed_write_keeps_old_state(self):
        storage = FailingKeyValueStore()
        keystore = KeyStore(storage)
        pubkey, privkey = generate_keypair()
        storage.fail_writes_for.add(NWC_SERVICE_KEYS)
        with self.assertRaises(StorageError):
            await keystore.put(pubkey, privkey)
        self.assertFalse(keystore.has_key(pubkey))

    async def test_load_garbage(self):
        for raw in ('[1, 2]', 'not json', json.dumps({'zz': 'yy'})):
            keystore = KeyStore(InMemoryKeyValueStore({NWC_SERVICE_KEYS: raw}))
            with self.assertRaises(KeyStoreError):
                await keystore.load()
