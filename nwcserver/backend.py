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
"""Capabilities the wallet service needs from the underlying Lightning wallet.

Amounts are millisatoshis unless the name says otherwise; timestamps are unix
seconds.
"""
import time
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional, List, Dict

from .util import UserFacingException


class BackendError(UserFacingException):
    """Raised by backends for failures whose message may be shown to the remote client."""


class PaymentFailed(BackendError):
    pass


class InvoiceNotFound(BackendError):
    pass


class NodeInfo(NamedTuple):
    alias: str
    color: str
    pubkey: str
    network: str  # mainnet, testnet, signet or regtest
    block_height: int
    block_hash: str


class DecodedInvoice(NamedTuple):
    payment_hash: str
    amount_msat: Optional[int]  # None for zero-amount invoices
    timestamp: int
    expiry: int
    description: str = ''

    def get_expiration_date(self) -> int:
        return self.timestamp + self.expiry

    def is_expired(self, *, now: Optional[int] = None) -> bool:
        if now is None:
            now = int(time.time())
        return self.expiry > 0 and now > self.get_expiration_date()


class PaymentResult(NamedTuple):
    preimage: str
    fee_msat: int = 0
    payment_hash: Optional[str] = None


class CreatedInvoice(NamedTuple):
    invoice: str
    payment_hash: str
    created_at: int
    expires_at: int
    preimage: Optional[str] = None
    description_hash: Optional[str] = None


class WalletBackend(ABC):
    """The wallet the service controls.

    Methods raise BackendError (or any other exception) on failure. The
    request dispatcher converts all of them into error responses.
    """

    @abstractmethod
    async def get_node_info(self) -> NodeInfo:
        pass

    @abstractmethod
    async def get_balance(self) -> int:
        """Spendable lightning balance, in satoshis."""
        pass

    @abstractmethod
    async def decode_invoice(self, invoice: str) -> DecodedInvoice:
        pass

    @abstractmethod
    async def pay_invoice(self, invoice: str, *, amount_msat: Optional[int] = None) -> PaymentResult:
        """amount_msat is only given for invoices without amount"""
        pass

    @abstractmethod
    async def create_invoice(
            self,
            *,
            amount_msat: int,
            description: str = '',
            description_hash: Optional[str] = None,
            expiry: int,
    ) -> CreatedInvoice:
        pass

    @abstractmethod
    async def list_transactions(self) -> List[Dict]:
        """Returns NIP-47 transaction dicts, newest first."""
        pass

    async def pay_keysend(
            self,
            *,
            destination: str,
            amount_msat: int,
            preimage: Optional[str] = None,
            tlv_records: Optional[List[Dict]] = None,
    ) -> PaymentResult:
        raise NotImplementedError()

    async def lookup_invoice(
            self,
            *,
            payment_hash: Optional[str] = None,
            invoice: Optional[str] = None,
    ) -> Dict:
        """Returns a NIP-47 transaction dict. Raises InvoiceNotFound."""
        raise NotImplementedError()

    async def sign_message(self, message: str) -> str:
        raise NotImplementedError()
