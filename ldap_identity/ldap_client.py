"""
LDAP client implementing the directory store on top of ldap3.

This module provides functionality to connect to LDAP servers (TCP, LDAPS,
StartTLS or the local ldapi socket) and to add, modify and search entries,
translating ldap3 results into the store error types.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional, Sequence, Tuple
from ldap3 import (Server, Connection, Tls, ALL, SASL, EXTERNAL, BASE, LEVEL, SUBTREE,
                   ALL_ATTRIBUTES, MODIFY_ADD, MODIFY_DELETE)
from ldap3.core.exceptions import LDAPException, LDAPCommunicationError, LDAPBindError
from ldap3.core.results import (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT, RESULT_BUSY, RESULT_OPERATIONS_ERROR,
                                RESULT_NO_SUCH_ATTRIBUTE, RESULT_UNAVAILABLE)

from ldap_identity.entry import Entry, Modification, MODIFY_ADD as ENTRY_ADD, MODIFY_DELETE as ENTRY_DELETE
from ldap_identity.logging_setup import audit_logger
from ldap_identity.store import DirectoryStore, StaleValue, StoreRejected, StoreUnavailable

logger = logging.getLogger(__name__)

SCOPES = {
    'BASE': BASE,
    'LEVEL': LEVEL,
    'SUBTREE': SUBTREE,
}

OPERATIONS = {
    ENTRY_ADD: MODIFY_ADD,
    ENTRY_DELETE: MODIFY_DELETE,
}

# Result codes meaning the server could not serve the request right now
UNAVAILABLE_RESULTS = (RESULT_BUSY, RESULT_UNAVAILABLE)

# ldap3 MOCK_SYNC reports a missing delete value as operationsError with this message
MOCK_STALE_VALUE_MESSAGE = 'value to delete not found'


def is_stale_value_result(result: Optional[Dict[str, Any]]) -> bool:
    """True if a failed modify result means a delete named an absent value."""
    result = result or {}
    code = result.get('result')
    if code == RESULT_NO_SUCH_ATTRIBUTE:
        return True
    return code == RESULT_OPERATIONS_ERROR and MOCK_STALE_VALUE_MESSAGE in str(result.get('message', '')).lower()


class LDAPClient(DirectoryStore):
    """
    Directory store backed by an ldap3 connection.

    Either connects itself from configuration (connect()) or wraps an
    already-bound connection passed in by the caller.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, connection: Optional[Connection] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
            connection: Existing bound ldap3 connection to use instead of connecting
        """
        self.config = config or {}
        self.server_url = self.config.get('server_url', '')
        self.auth_method = self.config.get('auth_method', 'simple')
        self.bind_dn = self.config.get('bind_dn')
        self.bind_password = self.config.get('bind_password')
        self.authz_id = self.config.get('authz_id')

        # SSL/TLS configuration
        self.use_ssl = self.config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = self.config.get('start_tls', False)
        self.verify_ssl = self.config.get('verify_ssl', True)
        self.ca_cert_file = self.config.get('ca_cert_file')
        self.cert_file = self.config.get('cert_file')
        self.key_file = self.config.get('key_file')

        # Connection settings
        self.connection_timeout = self.config.get('connection_timeout', 10)
        self.receive_timeout = self.config.get('receive_timeout', 10)

        # Retry settings from error_handling config
        error_config = self.config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = connection
        self._connected = connection is not None

    @property
    def is_ldapi(self) -> bool:
        return self.server_url.lower().startswith('ldapi://')

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            StoreUnavailable: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        if not self.server_url:
            raise StoreUnavailable("No LDAP server_url configured")

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise StoreUnavailable(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = self._create_connection()

                if not self.connection.open():
                    raise StoreUnavailable(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl and not self.is_ldapi:
                    if not self.connection.start_tls():
                        raise StoreUnavailable(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                audit_logger.log_bind_attempt(self.server_url, self._bind_identity(), True)
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, StoreUnavailable) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        audit_logger.log_bind_attempt(self.server_url, self._bind_identity(), False)
        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise StoreUnavailable(error_msg)

    def _create_connection(self) -> Connection:
        if self.auth_method == 'external':
            kwargs = {}
            if self.authz_id:
                kwargs['sasl_credentials'] = (self.authz_id,)
            return Connection(
                self.server,
                authentication=SASL,
                sasl_mechanism=EXTERNAL,
                auto_bind=False,
                receive_timeout=self.receive_timeout,
                **kwargs
            )
        return Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,  # Manual bind for better error handling
            receive_timeout=self.receive_timeout
        )

    def _bind_identity(self) -> str:
        if self.auth_method == 'external':
            return f"SASL/EXTERNAL {self.authz_id or '(peer credentials)'}"
        return self.bind_dn or '(anonymous)'

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if self.is_ldapi or not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise StoreUnavailable(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    # Store operations

    def _require_connection(self):
        if not self._connected or self.connection is None:
            raise StoreUnavailable("Not connected to LDAP server")

    def _call(self, operation: str, func, *args, **kwargs) -> bool:
        """Run one ldap3 call and map transport failures to StoreUnavailable."""
        self._require_connection()
        try:
            return func(*args, **kwargs)
        except LDAPCommunicationError as e:
            raise StoreUnavailable(f"LDAP {operation} failed, server unreachable: {e}")
        except LDAPException as e:
            raise StoreRejected(f"LDAP {operation} failed: {e}")

    def _raise_for_result(self, operation: str, dn: str, rejected_class=StoreRejected):
        result = self.connection.result or {}
        code = result.get('result')
        description = result.get('description', '')
        message = result.get('message', '')
        if code in UNAVAILABLE_RESULTS:
            raise StoreUnavailable(f"LDAP {operation} on {dn} failed: {description} {message}".strip())
        raise rejected_class(
            f"LDAP {operation} on {dn} rejected: {description}" + (f" ({message})" if message else ''),
            result_code=code,
            description=description,
            server_message=message
        )

    def add(self, dn: str, attributes: Dict[str, Sequence[str]]) -> None:
        attributes = {name: list(values) for name, values in attributes.items()}
        object_class = attributes.pop('objectClass', None)
        logger.debug(f"Adding entry {dn}")
        if not self._call('add', self.connection.add, dn, object_class, attributes):
            self._raise_for_result('add', dn)

    def modify(self, dn: str, modifications: List[Modification]) -> None:
        changes = {}
        for modification in modifications:
            changes.setdefault(modification.attribute, []).append(
                (OPERATIONS[modification.operation], list(modification.values))
            )
        logger.debug(f"Modifying entry {dn}: {len(modifications)} modification(s)")
        if not self._call('modify', self.connection.modify, dn, changes):
            stale = is_stale_value_result(self.connection.result)
            self._raise_for_result('modify', dn, StaleValue if stale else StoreRejected)

    def search(self, base: str, search_filter: str, scope: str = 'SUBTREE') -> List[Entry]:
        return self._search(base, search_filter, scope, ALL_ATTRIBUTES)

    def _search(self, base: str, search_filter: str, scope: str, attributes) -> List[Entry]:
        success = self._call(
            'search',
            self.connection.search,
            search_base=base,
            search_filter=search_filter,
            search_scope=SCOPES[scope.upper()],
            attributes=attributes
        )
        if not success:
            if (self.connection.result or {}).get('result') == RESULT_NO_SUCH_OBJECT:
                logger.debug(f"Search base does not exist: {base}")
                return []
            if (self.connection.result or {}).get('result') != RESULT_SUCCESS:
                self._raise_for_result('search', base)

        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            entries.append(Entry(item['dn'], item.get('raw_attributes', {})))
        logger.debug(f"Search under {base} returned {len(entries)} entries")
        return entries

    def read_attribute(self, dn: str, attribute: str) -> Optional[Tuple[str, ...]]:
        entries = self._search(dn, '(objectClass=*)', 'BASE', [attribute])
        if not entries:
            return None
        values = entries[0].get_values(attribute)
        return values or None

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'auth_method': self.auth_method,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
        }

        if self.connection:
            stats.update({
                'server_host': getattr(self.connection.server, 'host', None),
                'server_port': getattr(self.connection.server, 'port', None),
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
