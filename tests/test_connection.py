import json

from nwcserver.connection import (NWCConnection, BudgetRenewal, FULL_ACCESS_PERMISSIONS,
                                  READ_ONLY_PERMISSIONS, permission_type, permissions_for_type,
                                  generate_connection_id, coerce_budget_renewal, DAY)

from . import NWCTestCase
from .fakes import make_connection


class TestNWCConnection(NWCTestCase):

    def test_json_roundtrip_keeps_all_fields(self):
        conn = make_connection(max_amount_sats=5000, budget_renewal='monthly', last_budget_reset_at=1,
                               expires_at=2_000_000_000, metadata={'app': 'damus'}, total_spend_sats=12)
        d = json.loads(json.dumps(conn.to_json()))
        self.assertEqual('monthly', d['budget_renewal'])
        self.assertEqual(conn, NWCConnection.from_json(d))

    def test_from_json_ignores_unknown_fields(self):
        d = make_connection().to_json()
        d['some_future_field'] = 1
        self.assertEqual(make_connection(), NWCConnection.from_json(d))

    def test_copy_is_independent(self):
        conn = make_connection(metadata={'a': 1})
        conn2 = conn.copy()
        conn2.metadata['a'] = 2
        conn2.permissions.append('make_invoice')
        self.assertEqual({'a': 1}, conn.metadata)
        self.assertNotIn('make_invoice', conn.permissions)

    def test_validation(self):
        with self.assertRaises(ValueError):
            make_connection(permissions=[])
        with self.assertRaises(ValueError):
            make_connection(permissions=['get_info', 'steal_funds'])
        with self.assertRaises(ValueError):
            make_connection(permissions=['get_info', 'get_info'])
        with self.assertRaises(ValueError):
            make_connection(pubkey='abcd')
        with self.assertRaises(ValueError):
            make_connection(total_spend_sats=-1)
        with self.assertRaises(ValueError):
            make_connection(budget_renewal='fortnightly')

    def test_validation_on_setattr(self):
        conn = make_connection()
        with self.assertRaises(ValueError):
            conn.total_spend_sats = -5
        conn.budget_renewal = 'daily'
        self.assertEqual(BudgetRenewal.DAILY, conn.budget_renewal)

    def test_has_permission(self):
        conn = make_connection(permissions=['get_info'])
        self.assertTrue(conn.has_permission('get_info'))
        self.assertFalse(conn.has_permission('pay_invoice'))

    def test_activity(self):
        now = 1_700_000_000
        conn = make_connection(expires_at=now + 36 * 3600)
        self.assertEqual(2, conn.days_until_expiry(now=now))
        self.assertIsNone(conn.days_since_last_used(now=now))
        self.assertFalse(conn.has_recent_activity(now=now))
        conn.last_used_at = now - 3 * DAY
        self.assertEqual(3, conn.days_since_last_used(now=now))
        self.assertTrue(conn.has_recent_activity(now=now))

    def test_display_name(self):
        self.assertEqual('Alice', make_connection().display_name)
        self.assertEqual('Connection abcdefgh', make_connection(id='abcdefghij', name='').display_name)


class TestPermissions(NWCTestCase):

    def test_permission_type(self):
        self.assertEqual('full_access', permission_type(reversed(FULL_ACCESS_PERMISSIONS)))
        self.assertEqual('read_only', permission_type(READ_ONLY_PERMISSIONS))
        self.assertEqual('custom', permission_type(['get_info']))
        for perm in ('pay_invoice', 'pay_keysend'):
            self.assertNotIn(perm, READ_ONLY_PERMISSIONS)

    def test_permissions_for_type(self):
        self.assertEqual(FULL_ACCESS_PERMISSIONS, permissions_for_type('full_access'))
        self.assertEqual(['get_info'], permissions_for_type('custom', ['get_info']))
        with self.assertRaises(ValueError):
            permissions_for_type('admin')


class TestHelpers(NWCTestCase):

    def test_generate_connection_id(self):
        ids = {generate_connection_id() for _ in range(100)}
        self.assertEqual(100, len(ids))
        for connection_id in ids:
            self.assertRegex(connection_id, r'^[0-9a-z]+$')

    def test_coerce_budget_renewal(self):
        self.assertEqual(BudgetRenewal.NEVER, coerce_budget_renewal(None))
        self.assertEqual(BudgetRenewal.WEEKLY, coerce_budget_renewal('Weekly'))
        self.assertEqual(BudgetRenewal.YEARLY, coerce_budget_renewal(BudgetRenewal.YEARLY))
        with self.assertRaises(ValueError):
            coerce_budget_renewal('hourly')
