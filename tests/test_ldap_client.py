#!/usr/bin/env python3
"""
Unit tests for the ldap3-backed directory store.

Covers configuration handling, connection retries, TLS settings and the
translation of ldap3 results into store errors.
"""

import os
import sys
import ssl
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_ADD, MODIFY_DELETE, BASE, SUBTREE, SASL, EXTERNAL
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSessionTerminatedByServerError

from ldap_identity.entry import Entry, Modification
from ldap_identity.ldap_client import LDAPClient
from ldap_identity.store import StaleValue, StoreRejected, StoreUnavailable


def search_entry(dn, **attributes):
    """Build an ldap3 search response item with raw (bytes) values."""
    raw = {name: [value.encode('utf-8') for value in values] for name, values in attributes.items()}
    return {'type': 'searchResEntry', 'dn': dn, 'raw_attributes': raw, 'attributes': attributes}


class TestLDAPClientConfiguration(unittest.TestCase):
    """Test cases for LDAPClient initialization."""

    def setUp(self):
        """Set up test fixtures."""
        self.basic_config = {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'cn=admin,dc=noname-ev,dc=de',
            'bind_password': 'password123',
        }

    def test_initialization_basic_config(self):
        """Test basic LDAP client initialization."""
        client = LDAPClient(self.basic_config)

        self.assertEqual(client.server_url, 'ldaps://ldap.example.com:636')
        self.assertEqual(client.auth_method, 'simple')
        self.assertTrue(client.use_ssl)  # Auto-detected from ldaps://
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)
        self.assertEqual(client.max_retries, 3)
        self.assertFalse(client.is_ldapi)

    def test_initialization_ldapi(self):
        """Test LDAPI with SASL EXTERNAL configuration."""
        client = LDAPClient({'server_url': 'ldapi:///var/run/slapd/ldapi', 'auth_method': 'external'})

        self.assertTrue(client.is_ldapi)
        self.assertFalse(client.use_ssl)
        self.assertIsNone(client._create_tls_config())
        self.assertEqual(client._bind_identity(), 'SASL/EXTERNAL (peer credentials)')

    def test_error_handling_settings(self):
        """Test retry settings come from error_handling."""
        config = dict(self.basic_config, error_handling={'max_retries': 5, 'retry_wait_seconds': 10})
        client = LDAPClient(config)
        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 10)

    def test_tls_config_not_needed(self):
        """Test no TLS object for plain LDAP."""
        client = LDAPClient(dict(self.basic_config, server_url='ldap://ldap.example.com:389'))
        self.assertIsNone(client._create_tls_config())

    @patch('ldap_identity.ldap_client.Tls')
    def test_tls_config_without_verification(self, mock_tls):
        """Test certificate verification can be disabled."""
        client = LDAPClient(dict(self.basic_config, verify_ssl=False))
        client._create_tls_config()
        mock_tls.assert_called_once_with(validate=ssl.CERT_NONE)

    @patch('ldap_identity.ldap_client.Tls')
    def test_tls_config_with_client_certificate(self, mock_tls):
        """Test CA file and client certificate are passed on."""
        client = LDAPClient(dict(self.basic_config, ca_cert_file='/etc/ssl/ca.pem',
                                 cert_file='/etc/ssl/client.pem', key_file='/etc/ssl/client.key'))
        client._create_tls_config()
        mock_tls.assert_called_once_with(
            validate=ssl.CERT_REQUIRED,
            ca_certs_file='/etc/ssl/ca.pem',
            local_certificate_file='/etc/ssl/client.pem',
            local_private_key_file='/etc/ssl/client.key'
        )

    def test_connection_stats(self):
        """Test connection statistics."""
        stats = LDAPClient(self.basic_config).get_connection_stats()
        self.assertFalse(stats['connected'])
        self.assertEqual(stats['auth_method'], 'simple')
        self.assertTrue(stats['use_ssl'])


class TestLDAPClientConnect(unittest.TestCase):
    """Test cases for connecting and binding."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=admin,dc=noname-ev,dc=de',
            'bind_password': 'password123',
        }

    @patch('ldap_identity.ldap_client.Connection')
    @patch('ldap_identity.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection):
        """Test successful simple bind."""
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient(self.config)
        self.assertTrue(client.connect())
        self.assertTrue(client._connected)
        self.assertEqual(mock_connection.call_args.kwargs['user'], 'cn=admin,dc=noname-ev,dc=de')

    @patch('ldap_identity.ldap_client.Connection')
    @patch('ldap_identity.ldap_client.Server')
    def test_connect_external(self, mock_server, mock_connection):
        """Test SASL EXTERNAL bind over ldapi."""
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient({'server_url': 'ldapi:///var/run/slapd/ldapi', 'auth_method': 'external'})
        client.connect()

        kwargs = mock_connection.call_args.kwargs
        self.assertEqual(kwargs['authentication'], SASL)
        self.assertEqual(kwargs['sasl_mechanism'], EXTERNAL)
        conn.start_tls.assert_not_called()

    @patch('ldap_identity.ldap_client.time.sleep')
    @patch('ldap_identity.ldap_client.Connection')
    @patch('ldap_identity.ldap_client.Server')
    def test_connect_retries_then_fails(self, mock_server, mock_connection, mock_sleep):
        """Test connection failures are retried and then reported."""
        conn = Mock()
        conn.open.side_effect = LDAPSocketOpenError('unable to open socket')
        mock_connection.return_value = conn

        client = LDAPClient(self.config)
        with self.assertRaises(StoreUnavailable) as ctx:
            client.connect(max_retries=3, retry_wait=1)

        self.assertIn('Failed to connect to LDAP after 3 attempts', str(ctx.exception))
        self.assertEqual(conn.open.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch('ldap_identity.ldap_client.time.sleep')
    @patch('ldap_identity.ldap_client.Connection')
    @patch('ldap_identity.ldap_client.Server')
    def test_bind_failure(self, mock_server, mock_connection, mock_sleep):
        """Test a rejected bind is reported as unavailable."""
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = False
        conn.result = {'result': 49, 'description': 'invalidCredentials'}
        mock_connection.return_value = conn

        client = LDAPClient(self.config)
        with self.assertRaises(StoreUnavailable):
            client.connect(max_retries=2, retry_wait=0)
        self.assertFalse(client._connected)

    def test_connect_without_url(self):
        """Test a missing server URL fails fast."""
        with self.assertRaises(StoreUnavailable):
            LDAPClient({}).connect()

    def test_operations_require_connection(self):
        """Test store calls fail when not connected."""
        client = LDAPClient(self.config)
        with self.assertRaises(StoreUnavailable):
            client.search('dc=noname-ev,dc=de', '(objectClass=*)')


class TestLDAPClientOperations(unittest.TestCase):
    """Test cases for the store operations on a mocked connection."""

    def setUp(self):
        """Set up test fixtures."""
        self.conn = Mock()
        self.conn.result = {'result': 0, 'description': 'success', 'message': ''}
        self.client = LDAPClient({'server_url': 'ldap://ldap.example.com'}, connection=self.conn)

    def test_add_splits_object_class(self):
        """Test objectClass is passed separately to ldap3."""
        self.conn.add.return_value = True
        self.client.add('cn=team,ou=groups,dc=noname-ev,dc=de', {
            'objectClass': ('top', 'posixGroup'),
            'cn': ('team',),
            'gidNumber': ('2001',),
        })
        self.conn.add.assert_called_once_with(
            'cn=team,ou=groups,dc=noname-ev,dc=de',
            ['top', 'posixGroup'],
            {'cn': ['team'], 'gidNumber': ['2001']}
        )

    def test_add_rejected(self):
        """Test a failed add raises StoreRejected with the result code."""
        self.conn.add.return_value = False
        self.conn.result = {'result': 68, 'description': 'entryAlreadyExists', 'message': ''}

        with self.assertRaises(StoreRejected) as ctx:
            self.client.add('cn=team,ou=groups,dc=noname-ev,dc=de', {'cn': ['team']})
        self.assertEqual(ctx.exception.result_code, 68)
        self.assertEqual(ctx.exception.description, 'entryAlreadyExists')

    def test_modify_sends_single_request(self):
        """Test modifications of one attribute travel in one modify call."""
        self.conn.modify.return_value = True
        self.client.modify('cn=Next POSIX UID,ou=administration,dc=noname-ev,dc=de', [
            Modification.delete('uidNumber', '2000'),
            Modification.add('uidNumber', '2001'),
        ])
        self.conn.modify.assert_called_once_with(
            'cn=Next POSIX UID,ou=administration,dc=noname-ev,dc=de',
            {'uidNumber': [(MODIFY_DELETE, ['2000']), (MODIFY_ADD, ['2001'])]}
        )

    def test_modify_no_such_attribute(self):
        """Test a missing value to delete is reported with its result code."""
        self.conn.modify.return_value = False
        self.conn.result = {'result': 16, 'description': 'noSuchAttribute', 'message': 'value not found'}

        with self.assertRaises(StaleValue) as ctx:
            self.client.modify('cn=x,dc=noname-ev,dc=de', [Modification.delete('uidNumber', '2000')])
        self.assertEqual(ctx.exception.result_code, 16)
        self.assertEqual(ctx.exception.server_message, 'value not found')

    def test_modify_delete_value_not_found(self):
        """Test the in-memory server's operationsError for a missing value is StaleValue."""
        self.conn.modify.return_value = False
        self.conn.result = {'result': 1, 'description': 'operationsError', 'message': 'value to delete not found'}

        with self.assertRaises(StaleValue):
            self.client.modify('cn=x,dc=noname-ev,dc=de', [Modification.delete('uidNumber', '2000')])

    def test_modify_other_operations_error(self):
        """Test other operationsErrors stay plain rejections."""
        self.conn.modify.return_value = False
        self.conn.result = {'result': 1, 'description': 'operationsError', 'message': 'backend failure'}

        with self.assertRaises(StoreRejected) as ctx:
            self.client.modify('cn=x,dc=noname-ev,dc=de', [Modification.add('member', 'uid=a')])
        self.assertNotIsInstance(ctx.exception, StaleValue)

    def test_modify_server_busy(self):
        """Test busy/unavailable results map to StoreUnavailable."""
        self.conn.modify.return_value = False
        self.conn.result = {'result': 52, 'description': 'unavailable', 'message': ''}

        with self.assertRaises(StoreUnavailable):
            self.client.modify('cn=x,dc=noname-ev,dc=de', [Modification.add('member', 'uid=a')])

    def test_transport_error(self):
        """Test ldap3 communication errors map to StoreUnavailable."""
        self.conn.search.side_effect = LDAPSessionTerminatedByServerError('session terminated')
        with self.assertRaises(StoreUnavailable):
            self.client.search('dc=noname-ev,dc=de', '(uid=a)')

    def test_search_returns_entries(self):
        """Test search results become Entry snapshots."""
        self.conn.search.return_value = True
        self.conn.response = [
            search_entry('uid=user1,ou=users,dc=noname-ev,dc=de', uid=['user1'], uidNumber=['2000']),
            {'type': 'searchResRef', 'uri': ['ldap://other/']},
        ]

        entries = self.client.search('ou=users,dc=noname-ev,dc=de', '(uid=user1)')

        self.assertEqual(len(entries), 1)
        self.assertIsInstance(entries[0], Entry)
        self.assertEqual(entries[0].get_value('uidNumber'), '2000')
        self.assertEqual(self.conn.search.call_args.kwargs['search_scope'], SUBTREE)

    def test_search_without_matches(self):
        """Test an empty successful search returns an empty list."""
        self.conn.search.return_value = False
        self.conn.response = []
        self.assertEqual(self.client.search('ou=users,dc=noname-ev,dc=de', '(uid=nobody)'), [])

    def test_search_missing_base(self):
        """Test a missing search base returns an empty list."""
        self.conn.search.return_value = False
        self.conn.result = {'result': 32, 'description': 'noSuchObject', 'message': ''}
        self.conn.response = []
        self.assertEqual(self.client.search('ou=nowhere,dc=noname-ev,dc=de', '(uid=a)'), [])

    def test_search_rejected(self):
        """Test other search failures raise StoreRejected."""
        self.conn.search.return_value = False
        self.conn.result = {'result': 50, 'description': 'insufficientAccessRights', 'message': ''}
        self.conn.response = []
        with self.assertRaises(StoreRejected):
            self.client.search('ou=users,dc=noname-ev,dc=de', '(uid=a)')

    def test_read_attribute(self):
        """Test reading one attribute with a base search."""
        self.conn.search.return_value = True
        self.conn.response = [search_entry('cn=Next POSIX GID,ou=administration,dc=noname-ev,dc=de',
                                           gidNumber=['2005'])]

        values = self.client.read_attribute('cn=Next POSIX GID,ou=administration,dc=noname-ev,dc=de', 'gidNumber')

        self.assertEqual(values, ('2005',))
        kwargs = self.conn.search.call_args.kwargs
        self.assertEqual(kwargs['search_scope'], BASE)
        self.assertEqual(kwargs['attributes'], ['gidNumber'])

    def test_read_attribute_missing(self):
        """Test a missing attribute reads as None."""
        self.conn.search.return_value = True
        self.conn.response = [search_entry('cn=x,dc=noname-ev,dc=de', cn=['x'])]
        self.assertIsNone(self.client.read_attribute('cn=x,dc=noname-ev,dc=de', 'gidNumber'))

    def test_context_manager_disconnects(self):
        """Test leaving the context unbinds the connection."""
        with self.client:
            pass
        self.conn.unbind.assert_called_once()
        self.assertIsNone(self.client.connection)


if __name__ == '__main__':
    unittest.main()
