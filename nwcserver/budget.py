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
"""Budget accounting of a connection.

Predicates are pure functions of the record (and the current time).
add_spending() and reset_budget() are the only mutators; callers that persist
the record are expected to go through registry.ConnectionRegistry.
"""
import math
import time
from typing import Optional, Union

from .connection import NWCConnection, BudgetRenewal, RENEWAL_PERIODS
from .util import is_non_negative_integer


class BudgetError(Exception):
    pass


class ConnectionExpired(BudgetError):
    pass


class BudgetExceeded(BudgetError):
    pass


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else now


def is_expired(conn: NWCConnection, *, now: Optional[int] = None) -> bool:
    return conn.expires_at is not None and conn.expires_at <= _now(now)


def has_budget_limit(conn: NWCConnection) -> bool:
    return conn.max_amount_sats is not None and conn.max_amount_sats > 0


def remaining_budget(conn: NWCConnection) -> Union[int, float]:
    """Returns math.inf for unlimited connections."""
    if not has_budget_limit(conn):
        return math.inf
    return max(0, conn.max_amount_sats - conn.total_spend_sats)


def budget_usage_percentage(conn: NWCConnection) -> float:
    if not has_budget_limit(conn):
        return 0
    return min(100, conn.total_spend_sats / conn.max_amount_sats * 100)


def budget_limit_reached(conn: NWCConnection) -> bool:
    return has_budget_limit(conn) and conn.total_spend_sats >= conn.max_amount_sats


def can_spend(conn: NWCConnection, amount_sat: int) -> bool:
    if not has_budget_limit(conn):
        return True
    return conn.total_spend_sats + amount_sat <= conn.max_amount_sats


def needs_budget_reset(conn: NWCConnection, *, now: Optional[int] = None) -> bool:
    if not has_budget_limit(conn) or conn.budget_renewal == BudgetRenewal.NEVER:
        return False
    if conn.last_budget_reset_at is None:
        return True
    period = RENEWAL_PERIODS[conn.budget_renewal]
    return _now(now) - conn.last_budget_reset_at >= period


def next_budget_reset_at(conn: NWCConnection) -> Optional[int]:
    if not has_budget_limit(conn) or conn.budget_renewal == BudgetRenewal.NEVER:
        return None
    if conn.last_budget_reset_at is None:
        return None
    return conn.last_budget_reset_at + RENEWAL_PERIODS[conn.budget_renewal]


def add_spending(conn: NWCConnection, amount_sat: int) -> None:
    # authorization (can_spend) is the caller's job
    if not is_non_negative_integer(amount_sat):
        raise ValueError(f"spent amount must be a non-negative integer, got {amount_sat!r}")
    conn.total_spend_sats += amount_sat


def reset_budget(conn: NWCConnection, *, now: Optional[int] = None) -> None:
    conn.total_spend_sats = 0
    conn.last_budget_reset_at = _now(now)


def check_and_reset_budget_if_needed(conn: NWCConnection, *, now: Optional[int] = None) -> bool:
    if needs_budget_reset(conn, now=now):
        reset_budget(conn, now=now)
        return True
    return False


def validate_spend(conn: NWCConnection, amount_sat: int, *, now: Optional[int] = None) -> None:
    """Raises if conn may not spend amount_sat. May reset a due budget."""
    if not is_non_negative_integer(amount_sat):
        raise ValueError(f"invalid amount: {amount_sat!r}")
    if is_expired(conn, now=now):
        raise ConnectionExpired("Connection expired")
    check_and_reset_budget_if_needed(conn, now=now)
    if not can_spend(conn, amount_sat):
        raise BudgetExceeded(
            f"Payment of {amount_sat} sat exceeds the remaining budget "
            f"of {remaining_budget(conn)} sat")
