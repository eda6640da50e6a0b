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
import urllib.parse
from typing import Sequence, NamedTuple, List

from .util import is_pubkey_hex, is_hex_str


URI_SCHEME = 'nostr+walletconnect://'
MAX_URI_RELAYS = 5


class ConnectionURI(NamedTuple):
    service_pubkey: str
    relays: List[str]
    secret: str


def serialize_connection_uri(
        service_pubkey_hex: str,
        client_secret_hex: str,
        *,
        relay: str,
        extra_relays: Sequence[str] = (),
) -> str:
    base_uri = f"{URI_SCHEME}{service_pubkey_hex}"

    # the primary relay is added first as this is the first relay parsed by clients
    query_params = [f"relay={urllib.parse.quote(relay)}"]
    relays = [relay]
    for extra in extra_relays:
        if len(relays) >= MAX_URI_RELAYS:
            break
        if extra not in relays:
            relays.append(extra)
            query_params.append(f"relay={urllib.parse.quote(extra)}")

    query_params.append(f"secret={client_secret_hex}")
    return f"{base_uri}?{'&'.join(query_params)}"


def parse_connection_uri(uri: str) -> ConnectionURI:
    if not isinstance(uri, str) or not uri.startswith(URI_SCHEME):
        raise ValueError(f"not a wallet connect uri, expected {URI_SCHEME!r} scheme")
    rest = uri[len(URI_SCHEME):]
    pubkey, _, query = rest.partition('?')
    pubkey = pubkey.rstrip('/')
    if not is_pubkey_hex(pubkey):
        raise ValueError(f"invalid pubkey in uri: {pubkey!r}")
    params = urllib.parse.parse_qs(query)
    relays = params.get('relay', [])
    if not relays:
        raise ValueError("uri lacks a relay")
    secrets = params.get('secret', [])
    if len(secrets) != 1 or not is_hex_str(secrets[0]) or len(secrets[0]) != 64:
        raise ValueError("uri lacks a valid secret")
    return ConnectionURI(service_pubkey=pubkey, relays=relays, secret=secrets[0])
