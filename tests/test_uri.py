from nwcserver.uri import serialize_connection_uri, parse_connection_uri, MAX_URI_RELAYS

from . import NWCTestCase
from .fakes import SERVICE_PUBKEY


SECRET = 'ab' * 32


class TestConnectionURI(NWCTestCase):

    def test_serialize(self):
        uri = serialize_connection_uri(SERVICE_PUBKEY, SECRET, relay='wss://relay.example.com')
        self.assertEqual(
            f"nostr+walletconnect://{SERVICE_PUBKEY}?relay=wss%3A//relay.example.com&secret={SECRET}",
            uri)

    def test_primary_relay_comes_first(self):
        uri = serialize_connection_uri(
            SERVICE_PUBKEY, SECRET, relay='wss://b.example.com',
            extra_relays=['wss://a.example.com', 'wss://b.example.com'])
        parsed = parse_connection_uri(uri)
        self.assertEqual(['wss://b.example.com', 'wss://a.example.com'], parsed.relays)
        self.assertEqual(SERVICE_PUBKEY, parsed.service_pubkey)
        self.assertEqual(SECRET, parsed.secret)

    def test_relay_count_is_capped(self):
        extra = [f'wss://r{i}.example.com' for i in range(10)]
        uri = serialize_connection_uri(SERVICE_PUBKEY, SECRET, relay='wss://main.example.com', extra_relays=extra)
        self.assertEqual(MAX_URI_RELAYS, len(parse_connection_uri(uri).relays))

    def test_parse_errors(self):
        good = serialize_connection_uri(SERVICE_PUBKEY, SECRET, relay='wss://relay.example.com')
        bad_uris = [
            good.replace('nostr+walletconnect', 'nostrwalletconnect'),
            good.replace(SERVICE_PUBKEY, 'zz' * 32),
            good.replace(f"&secret={SECRET}", ''),
            good.replace(SECRET, 'ab' * 16),
            f"nostr+walletconnect://{SERVICE_PUBKEY}?secret={SECRET}",
            None,
        ]
        for uri in bad_uris:
            with self.assertRaises(ValueError, msg=uri):
                parse_connection_uri(uri)
