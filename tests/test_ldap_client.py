#!/usr/bin/env python3
"""
Unit tests for the LDAP client: connection handling and the flagged account query.
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from ldap3.core.exceptions import LDAPSocketOpenError, LDAPOperationResult

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from expiry_audit.ldap_client import (
    LDAPClient, LDAPConnectionError, LDAPQueryError, build_search_filter, convert_filetime
)
from expiry_audit.retry import ConnectRetryPolicy


def search_entry(upn=None, uac=66048, display_name='User', sam='user', last_logon=None, dn=None):
    attributes = {
        'displayName': display_name,
        'sAMAccountName': sam,
        'userAccountControl': uac,
        'lastLogonTimestamp': last_logon,
    }
    if upn is not None:
        attributes['userPrincipalName'] = upn
    return {
        'type': 'searchResEntry',
        'dn': dn or f'CN={display_name},OU=Users,DC=example,DC=com',
        'attributes': attributes
    }


class TestSearchFilter(unittest.TestCase):

    def test_flagged_filter(self):
        search_filter = build_search_filter()

        self.assertIn('(userAccountControl:1.2.840.113556.1.4.803:=65536)', search_filter)
        self.assertNotIn(':=2)', search_filter)
        self.assertTrue(search_filter.startswith('(&(&(objectCategory=person)(objectClass=user))'))

    def test_enabled_only_pushes_down_disabled_bit(self):
        search_filter = build_search_filter(enabled_only=True)
        self.assertIn('(!(userAccountControl:1.2.840.113556.1.4.803:=2))', search_filter)

    def test_custom_user_filter(self):
        search_filter = build_search_filter('(objectClass=person)')
        self.assertTrue(search_filter.startswith('(&(objectClass=person)'))


class TestConvertFiletime(unittest.TestCase):

    def test_zero_and_never_mean_no_logon(self):
        self.assertIsNone(convert_filetime(0))
        self.assertIsNone(convert_filetime('0'))
        self.assertIsNone(convert_filetime(0x7FFFFFFFFFFFFFFF))
        self.assertIsNone(convert_filetime(None))
        self.assertIsNone(convert_filetime([]))

    def test_filetime_integer(self):
        # 2019-01-01 00:00:00 UTC
        value = convert_filetime(131907744000000000)
        self.assertEqual(value, datetime(2019, 1, 1, tzinfo=timezone.utc))

    def test_decoded_datetime(self):
        decoded = datetime(2023, 6, 1, 8, 30, tzinfo=timezone.utc)
        self.assertEqual(convert_filetime(decoded), decoded)

    def test_decoded_epoch_means_never(self):
        self.assertIsNone(convert_filetime(datetime(1601, 1, 1, tzinfo=timezone.utc)))

    def test_garbage_ignored(self):
        self.assertIsNone(convert_filetime('not-a-time'))


class TestLDAPClient(unittest.TestCase):
    """Test cases for LDAPClient class."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldaps://dc01.example.com:636',
            'bind_dn': 'CN=svc-audit,OU=Service,DC=example,DC=com',
            'bind_password': 'password123',
            'search_base': 'OU=Users,DC=example,DC=com',
            'page_size': 500
        }

    def connected_client(self, response, result=None):
        client = LDAPClient(self.config)
        client._connected = True
        client.connection = Mock()
        client.connection.extend.standard.paged_search.return_value = response
        client.connection.result = result if result is not None else {'result': 0, 'description': 'success'}
        return client

    def test_initialization(self):
        client = LDAPClient(self.config)

        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)
        self.assertEqual(client.page_size, 500)
        self.assertEqual(client.retry_policy.max_attempts, 3)

    def test_retry_policy_passed_in(self):
        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=7, wait_seconds=1))

        self.assertEqual(client.retry_policy.max_attempts, 7)
        self.assertEqual(client.get_connection_stats()['max_attempts'], 7)

    def test_no_tls_config_for_plain_ldap(self):
        self.config['server_url'] = 'ldap://dc01.example.com:389'
        client = LDAPClient(self.config)
        self.assertIsNone(client._create_tls_config())

    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_successful_connection(self, mock_server, mock_connection):
        mock_conn = Mock()
        mock_conn.bind.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config)

        self.assertTrue(client.connect())
        self.assertTrue(client._connected)
        mock_conn.open.assert_called_once()
        mock_conn.bind.assert_called_once()

    @patch('expiry_audit.retry.time.sleep')
    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_rejected_bind_not_retried(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.bind.return_value = False
        mock_conn.result = {'result': 49, 'description': 'invalidCredentials'}
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=3, wait_seconds=1))

        with self.assertRaises(LDAPConnectionError) as cm:
            client.connect()

        self.assertIn('invalidCredentials', str(cm.exception))
        self.assertEqual(mock_conn.bind.call_count, 1)
        mock_sleep.assert_not_called()
        self.assertFalse(client._connected)
        self.assertIsNone(client.connection)

    @patch('expiry_audit.retry.time.sleep')
    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_busy_server_retried_then_raised(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.bind.return_value = False
        mock_conn.result = {'result': 51, 'description': 'busy'}
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=2, wait_seconds=1))

        with self.assertRaises(LDAPConnectionError) as cm:
            client.connect()

        self.assertIn('after 2 attempts', str(cm.exception))
        self.assertEqual(mock_conn.bind.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 1)
        self.assertFalse(client._connected)

    @patch('expiry_audit.retry.time.sleep')
    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_socket_error_then_success(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.side_effect = [LDAPSocketOpenError('unreachable'), None]
        mock_conn.bind.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=3, wait_seconds=0))

        self.assertTrue(client.connect())
        self.assertEqual(mock_conn.open.call_count, 2)

    @patch('expiry_audit.retry.time.sleep')
    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_connect_policy_override(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.side_effect = LDAPSocketOpenError('unreachable')
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=5, wait_seconds=0))

        with self.assertRaises(LDAPConnectionError):
            client.connect(ConnectRetryPolicy.single_attempt())
        self.assertEqual(mock_conn.open.call_count, 1)

    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_test_connection_success(self, mock_server, mock_connection):
        mock_conn = Mock()
        mock_conn.bind.return_value = True
        mock_conn.search.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config)

        self.assertTrue(client.test_connection())
        self.assertIsNone(client.last_error)
        self.assertEqual(mock_conn.search.call_args.kwargs['search_base'], '')

    @patch('expiry_audit.retry.time.sleep')
    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_test_connection_makes_single_attempt(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.side_effect = LDAPSocketOpenError('unreachable')
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config, ConnectRetryPolicy(max_attempts=5, wait_seconds=1))

        self.assertFalse(client.test_connection())
        self.assertIn('unreachable', client.last_error)
        self.assertEqual(mock_conn.open.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('expiry_audit.ldap_client.Connection')
    @patch('expiry_audit.ldap_client.Server')
    def test_context_manager_disconnects(self, mock_server, mock_connection):
        mock_conn = Mock()
        mock_conn.bind.return_value = True
        mock_conn.search.return_value = True
        mock_connection.return_value = mock_conn

        with LDAPClient(self.config) as client:
            self.assertTrue(client.test_connection())
            self.assertTrue(client._connected)

        mock_conn.unbind.assert_called_once()
        self.assertFalse(client._connected)
        self.assertIsNone(client.connection)

    def test_fetch_requires_connection(self):
        client = LDAPClient(self.config)
        with self.assertRaises(LDAPQueryError):
            client.fetch_flagged_accounts()

    def test_fetch_flagged_accounts(self):
        client = self.connected_client([
            search_entry('alice@example.com', display_name='Alice', sam='alice',
                         last_logon=131907744000000000),
            search_entry('bob@example.com', display_name='Bob', sam='bob', last_logon=0),
        ])

        accounts = client.fetch_flagged_accounts()

        self.assertEqual([a.user_principal_name for a in accounts], ['alice@example.com', 'bob@example.com'])
        alice = accounts[0]
        self.assertEqual(alice.display_name, 'Alice')
        self.assertEqual(alice.sam_account_name, 'alice')
        self.assertEqual(alice.last_logon, datetime(2019, 1, 1, tzinfo=timezone.utc))
        self.assertTrue(alice.enabled)
        self.assertIsNone(accounts[1].last_logon)

        kwargs = client.connection.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'OU=Users,DC=example,DC=com')
        self.assertEqual(kwargs['paged_size'], 500)
        self.assertIn('userPrincipalName', kwargs['attributes'])

    def test_entries_without_principal_name_skipped(self):
        client = self.connected_client([
            search_entry(None, sam='svc-legacy'),
            search_entry(''),
            search_entry([]),
            search_entry('carol@example.com'),
        ])

        accounts = client.fetch_flagged_accounts()

        self.assertEqual([a.user_principal_name for a in accounts], ['carol@example.com'])

    def test_referrals_ignored(self):
        client = self.connected_client([
            {'type': 'searchResRef', 'uri': ['ldap://other.example.com/DC=other']},
            search_entry('alice@example.com'),
        ])

        self.assertEqual(len(client.fetch_flagged_accounts()), 1)

    def test_enabled_only_filters_disabled_accounts(self):
        response = [
            search_entry('alice@example.com', uac=0x10200),
            search_entry('disabled@example.com', uac=0x10202),
        ]

        all_accounts = self.connected_client(response).fetch_flagged_accounts(enabled_only=False)
        client = self.connected_client(response)
        enabled = client.fetch_flagged_accounts(enabled_only=True)

        self.assertEqual(len(all_accounts), 2)
        self.assertFalse(all_accounts[1].enabled)
        self.assertEqual([a.user_principal_name for a in enabled], ['alice@example.com'])
        search_filter = client.connection.extend.standard.paged_search.call_args.kwargs['search_filter']
        self.assertIn('(!(userAccountControl:1.2.840.113556.1.4.803:=2))', search_filter)

    def test_search_exception_raises_query_error(self):
        client = self.connected_client([])
        client.connection.extend.standard.paged_search.side_effect = LDAPOperationResult(
            result=50, description='insufficientAccessRights'
        )

        with self.assertRaises(LDAPQueryError):
            client.fetch_flagged_accounts()

    def test_unsuccessful_result_raises_query_error(self):
        client = self.connected_client(
            [search_entry('alice@example.com')],
            result={'result': 4, 'description': 'sizeLimitExceeded'}
        )

        with self.assertRaises(LDAPQueryError) as cm:
            client.fetch_flagged_accounts()
        self.assertIn('sizeLimitExceeded', str(cm.exception))

    def test_malformed_entry_raises_query_error(self):
        client = self.connected_client([{'type': 'searchResEntry', 'dn': 'CN=x'}])

        with self.assertRaises(LDAPQueryError):
            client.fetch_flagged_accounts()

    def test_search_base_derived_from_bind_dn(self):
        del self.config['search_base']
        client = self.connected_client([])

        client.fetch_flagged_accounts()

        kwargs = client.connection.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'DC=example,DC=com')

    def test_disconnect(self):
        client = self.connected_client([])
        connection = client.connection

        client.disconnect()

        connection.unbind.assert_called_once()
        self.assertFalse(client._connected)
        self.assertIsNone(client.connection)

    def test_connection_stats(self):
        stats = LDAPClient(self.config).get_connection_stats()

        self.assertFalse(stats['connected'])
        self.assertEqual(stats['server_url'], 'ldaps://dc01.example.com:636')
        self.assertEqual(stats['page_size'], 500)


if __name__ == '__main__':
    unittest.main()
