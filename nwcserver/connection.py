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
import math
import secrets
import time
from enum import Enum
from typing import Optional, Sequence, Iterable, Any

import attr

from .util import is_pubkey_hex


class BudgetRenewal(Enum):
    NEVER = 'never'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


DAY = 24 * 60 * 60

# fixed durations, not calendar months/years
RENEWAL_PERIODS = {
    BudgetRenewal.DAILY: DAY,
    BudgetRenewal.WEEKLY: 7 * DAY,
    BudgetRenewal.MONTHLY: 30 * DAY,
    BudgetRenewal.YEARLY: 365 * DAY,
}


RPC_METHODS = (
    'get_info',
    'get_balance',
    'pay_invoice',
    'make_invoice',
    'lookup_invoice',
    'list_transactions',
    'pay_keysend',
    'sign_message',
)
SPENDING_METHODS = frozenset({'pay_invoice', 'pay_keysend'})

FULL_ACCESS_PERMISSIONS = list(RPC_METHODS)
READ_ONLY_PERMISSIONS = [
    'get_info',
    'get_balance',
    'make_invoice',
    'lookup_invoice',
    'list_transactions',
]

PERMISSION_TYPE_FULL_ACCESS = 'full_access'
PERMISSION_TYPE_READ_ONLY = 'read_only'
PERMISSION_TYPE_CUSTOM = 'custom'


def permission_type(permissions: Iterable[str]) -> str:
    perms = sorted(set(permissions))
    if perms == sorted(FULL_ACCESS_PERMISSIONS):
        return PERMISSION_TYPE_FULL_ACCESS
    if perms == sorted(READ_ONLY_PERMISSIONS):
        return PERMISSION_TYPE_READ_ONLY
    return PERMISSION_TYPE_CUSTOM


def permissions_for_type(ptype: str, current: Sequence[str] = ()) -> list:
    if ptype == PERMISSION_TYPE_FULL_ACCESS:
        return list(FULL_ACCESS_PERMISSIONS)
    if ptype == PERMISSION_TYPE_READ_ONLY:
        return list(READ_ONLY_PERMISSIONS)
    if ptype == PERMISSION_TYPE_CUSTOM:
        return list(current)
    raise ValueError(f"unknown permission type: {ptype!r}")


def _to_base36(n: int) -> str:
    alphabet = '0123456789abcdefghijklmnopqrstuvwxyz'
    s = ''
    while True:
        n, r = divmod(n, 36)
        s = alphabet[r] + s
        if n == 0:
            return s


def generate_connection_id() -> str:
    """time-ordered prefix plus random suffix"""
    return _to_base36(int(time.time() * 1000)) + _to_base36(secrets.randbits(48))


def _validate_permissions(instance, attribute, value):
    if not isinstance(value, list) or not value:
        raise ValueError("a connection needs at least one permission")
    unknown = [m for m in value if m not in RPC_METHODS]
    if unknown:
        raise ValueError(f"unknown permissions: {unknown}")
    if len(set(value)) != len(value):
        raise ValueError(f"duplicate permissions: {value}")


def _validate_pubkey(instance, attribute, value):
    if not is_pubkey_hex(value):
        raise ValueError(f"{attribute.name} must be a 32 byte hex public key, got {value!r}")


def _validate_non_negative_int(instance, attribute, value):
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"{attribute.name} must be a non-negative integer, got {value!r}")


_optional_int = attr.validators.optional(attr.validators.instance_of(int))


@attr.s(on_setattr=[attr.setters.convert, attr.setters.validate])
class NWCConnection:
    """One remote application's grant to use the wallet.

    Timestamps are unix seconds. The private keys of a connection are never
    part of this record, see keystore.KeyStore.
    """

    id = attr.ib(type=str, kw_only=True, validator=attr.validators.instance_of(str))
    name = attr.ib(type=str, kw_only=True, validator=attr.validators.instance_of(str))
    pubkey = attr.ib(  # public key of the remote client; requests must be authored by it
        type=str, kw_only=True, validator=_validate_pubkey)
    service_pubkey = attr.ib(  # our public key for this connection, advertised in the URI
        type=str, kw_only=True, validator=_validate_pubkey)
    relay_url = attr.ib(type=str, kw_only=True, validator=attr.validators.instance_of(str))
    permissions = attr.ib(type=list, kw_only=True, converter=list, validator=_validate_permissions)
    created_at = attr.ib(type=int, kw_only=True, validator=attr.validators.instance_of(int))
    last_used_at = attr.ib(kw_only=True, default=None, validator=_optional_int)  # type: Optional[int]
    total_spend_sats = attr.ib(type=int, kw_only=True, default=0, validator=_validate_non_negative_int)
    max_amount_sats = attr.ib(  # None or <= 0 means unlimited
        kw_only=True, default=None, validator=_optional_int)  # type: Optional[int]
    budget_renewal = attr.ib(
        type=BudgetRenewal, kw_only=True, default=BudgetRenewal.NEVER, converter=BudgetRenewal)
    last_budget_reset_at = attr.ib(kw_only=True, default=None, validator=_optional_int)  # type: Optional[int]
    expires_at = attr.ib(kw_only=True, default=None, validator=_optional_int)  # type: Optional[int]
    isolated = attr.ib(type=bool, kw_only=True, default=False, validator=attr.validators.instance_of(bool))
    metadata = attr.ib(type=dict, kw_only=True, factory=dict, validator=attr.validators.instance_of(dict))

    def to_json(self) -> dict:
        d = attr.asdict(self, recurse=False)
        d['permissions'] = list(self.permissions)
        d['budget_renewal'] = self.budget_renewal.value
        d['metadata'] = dict(self.metadata)
        return d

    @classmethod
    def from_json(cls, d: dict) -> 'NWCConnection':
        if not isinstance(d, dict):
            raise ValueError(f"expected a dict, got {type(d)}")
        field_names = {f.name for f in attr.fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in field_names})

    def copy(self) -> 'NWCConnection':
        return NWCConnection.from_json(self.to_json())

    def has_permission(self, method: str) -> bool:
        return method in self.permissions

    @property
    def display_name(self) -> str:
        return self.name or f"Connection {self.id[:8]}"

    def days_until_expiry(self, *, now: Optional[int] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        if now is None:
            now = int(time.time())
        return max(0, math.ceil((self.expires_at - now) / DAY))

    def days_since_last_used(self, *, now: Optional[int] = None) -> Optional[int]:
        if self.last_used_at is None:
            return None
        if now is None:
            now = int(time.time())
        return (now - self.last_used_at) // DAY

    def has_recent_activity(self, *, now: Optional[int] = None) -> bool:
        days = self.days_since_last_used(now=now)
        return days is not None and days <= 7

    def __str__(self):
        return f"<NWCConnection {self.id} {self.name!r}>"


def updatable_fields() -> Sequence[str]:
    """fields a user is allowed to edit"""
    return ['name', 'permissions', 'max_amount_sats', 'budget_renewal', 'expires_at', 'isolated', 'metadata']


def coerce_budget_renewal(value: Any) -> BudgetRenewal:
    if value is None:
        return BudgetRenewal.NEVER
    if isinstance(value, BudgetRenewal):
        return value
    try:
        return BudgetRenewal(str(value).lower())
    except ValueError:
        raise ValueError(f"unknown budget renewal: {value!r}") from None
