"""
In-memory directory for local runs and tests.

Builds an ldap3 MOCK_SYNC connection seeded with the standard tree (suffix,
administration, users, groups, the two sequence counters and the configured
default groups) and wraps it in an LDAPClient, so the identity manager runs
unchanged against it.
"""

import logging
from typing import Dict, Any, Optional

from ldap3 import Server, Connection, MOCK_SYNC, SUBTREE, ALL_ATTRIBUTES
from ldap3.core.exceptions import LDAPException

from ldap_identity.config import DirectoryLayout
from ldap_identity.ldap_client import LDAPClient

logger = logging.getLogger(__name__)

ADMIN_CN = 'admin'
ADMIN_PASSWORD = 'in-memory'
DEFAULT_GROUP_GID_BASE = 1000


class InMemoryDirectory:
    """
    Seeded in-memory LDAP directory.

    Usage:
        with InMemoryDirectory() as client:
            manager = IdentityManager(client)
    """

    def __init__(self, layout: Optional[DirectoryLayout] = None, uid_start: int = 2000,
                 gid_start: int = 2000, seed_file: Optional[str] = None,
                 dump_file: Optional[str] = None):
        """
        Initialize the in-memory directory.

        Args:
            layout: Directory layout to create (defaults to DirectoryLayout())
            uid_start: First value of the uid counter
            gid_start: First value of the gid counter
            seed_file: ldap3 JSON export of extra entries to load after the base tree
            dump_file: Where stop() writes the directory content as LDIF (None disables)
        """
        self.layout = layout or DirectoryLayout()
        self.uid_start = uid_start
        self.gid_start = gid_start
        self.seed_file = seed_file
        self.dump_file = dump_file
        self.connection = None
        self.client = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'InMemoryDirectory':
        test_config = config.get('test_directory') or {}
        return cls(
            layout=DirectoryLayout.from_config(config.get('directory')),
            uid_start=test_config.get('uid_start', 2000),
            gid_start=test_config.get('gid_start', 2000),
            seed_file=test_config.get('seed_file'),
            dump_file=test_config.get('dump_file')
        )

    @property
    def admin_dn(self) -> str:
        return f"cn={ADMIN_CN},{self.layout.suffix}"

    def start(self) -> LDAPClient:
        """
        Create and seed the directory.

        Returns:
            Connected LDAPClient for the directory
        """
        server = Server('in-memory-directory')
        self.connection = Connection(server, user=self.admin_dn, password=ADMIN_PASSWORD,
                                     client_strategy=MOCK_SYNC)
        self._seed()
        self.connection.bind()

        self.client = LDAPClient({'server_url': 'mock://in-memory-directory'}, connection=self.connection)
        logger.info(f"In-memory directory started for {self.layout.suffix}")
        return self.client

    def _seed(self):
        layout = self.layout
        suffix_rdn = layout.suffix.split(',')[0]
        rdn_attribute, rdn_value = suffix_rdn.split('=', 1)
        self.add_entry(layout.suffix, {
            'objectClass': ['top', 'dcObject', 'organization'],
            rdn_attribute: rdn_value,
            'o': rdn_value,
        })
        self.add_entry(self.admin_dn, {
            'objectClass': ['top', 'person'],
            'cn': ADMIN_CN,
            'sn': ADMIN_CN,
            'userPassword': ADMIN_PASSWORD,
        })
        for ou in (layout.administration_ou, layout.users_ou, layout.groups_ou):
            self.add_entry(f"ou={ou},{layout.suffix}", {'objectClass': ['top', 'organizationalUnit'], 'ou': ou})

        self.add_entry(layout.uid_counter_dn, {
            'objectClass': ['top', 'uidNext'],
            'cn': layout.uid_counter_cn,
            'uidNumber': str(self.uid_start),
        })
        self.add_entry(layout.gid_counter_dn, {
            'objectClass': ['top', 'GidNext'],
            'cn': layout.gid_counter_cn,
            'gidNumber': str(self.gid_start),
        })

        # Default groups exist from the start, numbered below the gid counter
        for offset, group in enumerate(layout.default_groups):
            self.add_entry(layout.group_dn(group), {
                'objectClass': list(layout.group_object_classes),
                'cn': group,
                'gidNumber': str(DEFAULT_GROUP_GID_BASE + offset),
            })

        if self.seed_file:
            logger.info(f"Loading seed entries from {self.seed_file}")
            self.connection.strategy.entries_from_json(self.seed_file)

    def add_entry(self, dn: str, attributes: Dict[str, Any]):
        """Add an entry directly, bypassing the identity checks."""
        self.connection.strategy.add_entry(dn, attributes)

    def dump_ldif(self) -> str:
        """Return the whole directory below the suffix as LDIF."""
        self.connection.search(self.layout.suffix, '(objectClass=*)', SUBTREE, attributes=ALL_ATTRIBUTES)
        return self.connection.response_to_ldif()

    def stop(self):
        """Dump the directory (if configured) and close it."""
        if self.connection is None:
            return
        if self.dump_file:
            try:
                with open(self.dump_file, 'w', encoding='utf-8') as f:
                    f.write(self.dump_ldif())
                logger.info(f"In-memory directory dumped to {self.dump_file}")
            except (OSError, LDAPException) as e:
                logger.warning(f"Could not dump in-memory directory to {self.dump_file}: {e}")
        self.client.disconnect()
        self.connection = None
        self.client = None

    def __enter__(self) -> LDAPClient:
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
