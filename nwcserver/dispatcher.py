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
"""
NIP-47 request dispatch: permission checks, budget enforcement and the
handlers that turn wallet backend results into response content.
https://github.com/nostr-protocol/nips/blob/master/47.md
"""

import asyncio
import math
import time
from typing import TYPE_CHECKING, Optional, NamedTuple, Callable, Awaitable, Dict, Any

from .backend import WalletBackend, BackendError
from .budget import BudgetExceeded, ConnectionExpired, is_expired
from .connection import NWCConnection, SPENDING_METHODS
from .logging import Logger
from .registry import ConnectionNotFound, PersistenceError
from .util import error_text_str_to_safe_str, is_non_negative_integer, is_pubkey_hex, is_hex_str

if TYPE_CHECKING:
    from .registry import ConnectionRegistry
    from .simple_config import SimpleConfig


class ErrorCode:
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'
    NOT_FOUND = 'NOT_FOUND'
    UNAUTHORIZED = 'UNAUTHORIZED'
    OTHER = 'OTHER'


class NWCError(Exception):
    """Raised by handlers to send a specific error code to the client."""

    def __init__(self, code: str, message: str = ''):
        Exception.__init__(self, message)
        self.code = code
        self.message = message


def get_error_response(method: Optional[str], code: str, message: str = '') -> dict:
    content = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if method:
        content['result_type'] = method
    return content


def get_result_response(method: str, result: dict) -> dict:
    return {
        "result_type": method,
        "result": result,
    }


class SpendQuote(NamedTuple):
    amount_sat: int  # charged to the budget
    amount_msat: Optional[int]  # passed to the backend, None for invoices that carry an amount


class HandlerContext(NamedTuple):
    connection: NWCConnection
    params: dict
    backend: WalletBackend
    config: 'SimpleConfig'
    quote: Optional[SpendQuote] = None


# --- param helpers

def _get_amount_msat(params: dict, key: str = 'amount', *, required: bool) -> Optional[int]:
    amount = params.get(key)
    if amount is None:
        if required:
            raise NWCError(ErrorCode.OTHER, f"Missing {key}")
        return None
    if not is_non_negative_integer(amount):
        raise NWCError(ErrorCode.OTHER, f"Invalid {key}: {amount!r}")
    return amount


def _get_optional_int(params: dict, key: str) -> Optional[int]:
    value = params.get(key)
    if value is None:
        return None
    if not is_non_negative_integer(value):
        raise NWCError(ErrorCode.OTHER, f"Invalid {key}: {value!r}")
    return value


def _get_str(params: dict, key: str, *, required: bool = False) -> Optional[str]:
    value = params.get(key)
    if value is None or value == '':
        if required:
            raise NWCError(ErrorCode.OTHER, f"Missing {key}")
        return None
    if not isinstance(value, str):
        raise NWCError(ErrorCode.OTHER, f"Invalid {key}")
    return value


def msat_to_sat_ceil(amount_msat: int) -> int:
    return math.ceil(amount_msat / 1000)


# --- handlers

async def handle_get_info(ctx: HandlerContext) -> dict:
    info = await ctx.backend.get_node_info()
    return {
        "alias": info.alias,
        "color": info.color,
        "pubkey": info.pubkey,
        "network": info.network,
        "block_height": info.block_height,
        "block_hash": info.block_hash,
        "methods": list(ctx.connection.permissions),
        "notifications": [],
    }


async def handle_get_balance(ctx: HandlerContext) -> dict:
    balance_sat = await ctx.backend.get_balance()
    return {
        "balance": int(balance_sat) * 1000,
    }


async def quote_pay_invoice(ctx: HandlerContext) -> SpendQuote:
    """Decodes the invoice. The amount of the invoice takes precedence over the amount param."""
    invoice = _get_str(ctx.params, 'invoice', required=True)
    amount_msat = _get_amount_msat(ctx.params, required=False)
    try:
        decoded = await ctx.backend.decode_invoice(invoice)
    except BackendError as e:
        raise NWCError(ErrorCode.OTHER, f"Invalid invoice: {e}") from e
    if decoded.is_expired():
        raise NWCError(ErrorCode.OTHER, "Invoice expired")
    if decoded.amount_msat:
        return SpendQuote(msat_to_sat_ceil(decoded.amount_msat), None)
    if not amount_msat:
        raise NWCError(ErrorCode.OTHER, "Missing amount")
    return SpendQuote(msat_to_sat_ceil(amount_msat), amount_msat)


async def handle_pay_invoice(ctx: HandlerContext) -> dict:
    invoice = _get_str(ctx.params, 'invoice', required=True)
    result = await ctx.backend.pay_invoice(invoice, amount_msat=ctx.quote.amount_msat)
    return {
        "preimage": result.preimage,
        "fees_paid": result.fee_msat,
    }


async def handle_make_invoice(ctx: HandlerContext) -> dict:
    amount_msat = _get_amount_msat(ctx.params, required=True)
    description = _get_str(ctx.params, 'description') or ''
    description_hash = _get_str(ctx.params, 'description_hash')
    if description_hash is not None and not (is_hex_str(description_hash) and len(description_hash) == 64):
        raise NWCError(ErrorCode.OTHER, "Invalid description_hash")
    expiry = _get_optional_int(ctx.params, 'expiry')
    if not expiry:
        expiry = ctx.config.NWC_DEFAULT_INVOICE_EXPIRY
    created = await ctx.backend.create_invoice(
        amount_msat=amount_msat,
        description=description,
        description_hash=description_hash,
        expiry=expiry,
    )
    return {
        "type": "incoming",
        "invoice": created.invoice,
        "description": description,
        "description_hash": created.description_hash or description_hash,
        "preimage": created.preimage,
        "payment_hash": created.payment_hash,
        "amount": amount_msat,
        "created_at": created.created_at,
        "expires_at": created.expires_at,
        "fees_paid": 0,
        "metadata": {},
    }


def _is_unpaid(tx: dict) -> bool:
    if 'state' in tx:
        return tx['state'] != 'settled'
    return tx.get('settled_at') is None


async def handle_list_transactions(ctx: HandlerContext) -> dict:
    """
    Filters are only applied for the params that were sent. Timestamps are
    seconds since epoch and compared against created_at.
    """
    params = ctx.params
    from_ts = _get_optional_int(params, 'from')
    until_ts = _get_optional_int(params, 'until')
    limit = _get_optional_int(params, 'limit')
    offset = _get_optional_int(params, 'offset')
    unpaid = params.get('unpaid')
    req_type = params.get('type')
    if req_type is not None and req_type not in ('incoming', 'outgoing'):
        raise NWCError(ErrorCode.OTHER, f"Invalid type: {req_type!r}")

    transactions = list(await ctx.backend.list_transactions())
    if req_type is not None:
        transactions = [tx for tx in transactions if tx.get('type') == req_type]
    if from_ts is not None:
        transactions = [tx for tx in transactions if tx.get('created_at', 0) >= from_ts]
    if until_ts is not None:
        transactions = [tx for tx in transactions if tx.get('created_at', 0) <= until_ts]
    if unpaid is not None:
        transactions = [tx for tx in transactions if _is_unpaid(tx) == bool(unpaid)]
    total_count = len(transactions)
    if offset:
        transactions = transactions[offset:]
    if limit:
        transactions = transactions[:limit]
    return {
        "transactions": transactions,
        "total_count": total_count,
    }


async def quote_pay_keysend(ctx: HandlerContext) -> SpendQuote:
    amount_msat = _get_amount_msat(ctx.params, required=True)
    if amount_msat == 0:
        raise NWCError(ErrorCode.OTHER, "Invalid amount: 0")
    if not is_pubkey_hex(ctx.params.get('pubkey')) and not _is_node_id(ctx.params.get('pubkey')):
        raise NWCError(ErrorCode.OTHER, "Invalid pubkey")
    return SpendQuote(msat_to_sat_ceil(amount_msat), amount_msat)


def _is_node_id(pubkey: Any) -> bool:
    # compressed secp256k1 pubkey, as used for lightning node ids
    return is_hex_str(pubkey) and len(pubkey) == 66


async def handle_pay_keysend(ctx: HandlerContext) -> dict:
    tlv_records = ctx.params.get('tlv_records')
    if tlv_records is not None and not isinstance(tlv_records, list):
        raise NWCError(ErrorCode.OTHER, "Invalid tlv_records")
    result = await ctx.backend.pay_keysend(
        destination=ctx.params['pubkey'],
        amount_msat=ctx.quote.amount_msat,
        preimage=_get_str(ctx.params, 'preimage'),
        tlv_records=tlv_records,
    )
    return {
        "preimage": result.preimage,
        "fees_paid": result.fee_msat,
    }


async def handle_lookup_invoice(ctx: HandlerContext) -> dict:
    payment_hash = _get_str(ctx.params, 'payment_hash')
    invoice = _get_str(ctx.params, 'invoice')
    if not payment_hash and not invoice:
        raise NWCError(ErrorCode.OTHER, "Missing invoice or payment_hash")
    try:
        tx = await ctx.backend.lookup_invoice(payment_hash=payment_hash, invoice=invoice)
    except (BackendError, NotImplementedError) as e:
        raise NWCError(ErrorCode.NOT_FOUND, "Invoice not found") from e
    if not tx:
        raise NWCError(ErrorCode.NOT_FOUND, "Invoice not found")
    return dict(tx)


async def handle_sign_message(ctx: HandlerContext) -> dict:
    message = _get_str(ctx.params, 'message', required=True)
    signature = await ctx.backend.sign_message(message)
    return {
        "message": message,
        "signature": signature,
    }


class RPCMethod(NamedTuple):
    handler: Callable[[HandlerContext], Awaitable[dict]]
    # resolves the amount a spending method has to fit into the budget
    quote: Optional[Callable[[HandlerContext], Awaitable[SpendQuote]]] = None


METHODS = {
    'get_info': RPCMethod(handle_get_info),
    'get_balance': RPCMethod(handle_get_balance),
    'pay_invoice': RPCMethod(handle_pay_invoice, quote_pay_invoice),
    'make_invoice': RPCMethod(handle_make_invoice),
    'list_transactions': RPCMethod(handle_list_transactions),
    'pay_keysend': RPCMethod(handle_pay_keysend, quote_pay_keysend),
    'lookup_invoice': RPCMethod(handle_lookup_invoice),
    'sign_message': RPCMethod(handle_sign_message),
}  # type: Dict[str, RPCMethod]

assert set(SPENDING_METHODS) == {name for name, m in METHODS.items() if m.quote is not None}


class RequestDispatcher(Logger):

    LOGGING_SHORTCUT = 'D'

    def __init__(self, registry: 'ConnectionRegistry', backend: WalletBackend, config: 'SimpleConfig'):
        Logger.__init__(self)
        self.registry = registry
        self.backend = backend
        self.config = config

    async def handle_request(self, connection_id: str, method: str, params: Optional[dict]) -> dict:
        """Returns the content of the response event. Only raises CancelledError."""
        t0 = time.monotonic()
        try:
            result = await self._handle_request(connection_id, method, params if params is not None else {})
        except NWCError as e:
            if e.code == ErrorCode.QUOTA_EXCEEDED:
                self.logger.info(f"{method} request of {connection_id} rejected: {e.message}")
            else:
                self.logger.debug(f"{method} request of {connection_id} failed: {e.code} {e.message}")
            return get_error_response(method, e.code, e.message)
        except asyncio.CancelledError:
            raise
        except BackendError as e:
            self.logger.warning(f"backend error handling {method} for {connection_id}: {e!r}")
            return get_error_response(method, ErrorCode.INTERNAL_ERROR, error_text_str_to_safe_str(str(e)))
        except Exception:
            self.logger.exception(f"error handling {method} for {connection_id}")
            return get_error_response(method, ErrorCode.INTERNAL_ERROR, f"Error handling {method} request")
        self.logger.debug(f"handled {method} for {connection_id} in {time.monotonic() - t0:.2f}s")
        return get_result_response(method, result)

    async def _handle_request(self, connection_id: str, method: str, params: dict) -> dict:
        if not isinstance(params, dict):
            raise NWCError(ErrorCode.OTHER, "Invalid params")
        conn = self.registry.get(connection_id)
        if conn is None:
            raise NWCError(ErrorCode.UNAUTHORIZED, "Unknown connection")
        try:
            await self.registry.mark_used(connection_id)
        except ConnectionNotFound:
            raise NWCError(ErrorCode.UNAUTHORIZED, "Unknown connection")
        except PersistenceError as e:
            self.logger.warning(f"could not save last use of {connection_id}: {e!r}")

        rpc = METHODS.get(method)
        if rpc is None:
            raise NWCError(ErrorCode.NOT_FOUND, f"{method} not supported")
        if not conn.has_permission(method):
            raise NWCError(ErrorCode.NOT_FOUND, f"{method} not permitted for this connection")
        if is_expired(conn):
            raise NWCError(ErrorCode.UNAUTHORIZED, "Connection expired")

        ctx = HandlerContext(connection=conn, params=params, backend=self.backend, config=self.config)
        if rpc.quote is None:
            return await rpc.handler(ctx)
        return await self._handle_spend(ctx, rpc, method)

    async def _handle_spend(self, ctx: HandlerContext, rpc: RPCMethod, method: str) -> dict:
        connection_id = ctx.connection.id
        # quote, budget check, payment and commit must not interleave with
        # another spend of the same connection
        async with self.registry.spend_lock(connection_id):
            quote = await rpc.quote(ctx)
            amount_sat = quote.amount_sat
            try:
                await self.registry.authorize_spend(connection_id, amount_sat)
            except BudgetExceeded as e:
                raise NWCError(ErrorCode.QUOTA_EXCEEDED, str(e)) from e
            except ConnectionExpired as e:
                raise NWCError(ErrorCode.UNAUTHORIZED, "Connection expired") from e
            except ConnectionNotFound as e:
                raise NWCError(ErrorCode.UNAUTHORIZED, "Unknown connection") from e
            result = await rpc.handler(ctx._replace(quote=quote))
            try:
                await self.registry.record_spend(connection_id, amount_sat)
            except ConnectionNotFound:
                self.logger.warning(f"connection {connection_id} was deleted during {method}, "
                                    f"spend of {amount_sat} sat not recorded")
            except PersistenceError:
                # the spend is still counted in memory, the client must get the preimage
                self.logger.exception(f"{method} of {connection_id} succeeded, but the spend "
                                      f"of {amount_sat} sat could not be saved")
            self.logger.info(f"{method} of {connection_id}: paid {amount_sat} sat")
        return result
