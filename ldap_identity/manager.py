"""
Directory identity manager.

This module contains the identity logic: POSIX name rules, uniqueness checks,
uid/gid allocation from sequence counters held in the directory, and minimal
attribute edits for group membership and SSH public keys.

Concurrency notes:
    Allocation is a compare-and-swap. One modify request deletes the counter's
    current value and adds the incremented one; the store rejects it when the
    current value is already gone, which surfaces as AllocationConflict.
    Membership and key edits read the entry and send only the changed value,
    without such a guard. Two processes adding or removing the same value at
    once race at the server and the slower one gets StoreRejected.
"""

import re
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ldap3.utils.conv import escape_filter_chars

from ldap_identity.config import DirectoryLayout
from ldap_identity.entry import Entry, Modification, diff_entries
from ldap_identity.store import DirectoryError, DirectoryStore, StaleValue

logger = logging.getLogger(__name__)

POSIX_NAME_PATTERN = re.compile(r'^[a-z_][a-z0-9_-]{0,31}$')

MEMBER_ATTRIBUTE = 'member'
SSH_KEY_ATTRIBUTE = 'sshPublicKey'


class NamingViolation(DirectoryError):
    """Raised when a user or group name is not a valid POSIX name."""
    pass


class DuplicateName(DirectoryError):
    """Raised when a name is already taken by an existing entry."""
    pass


class NotFound(DirectoryError):
    """Raised when a required entry does not exist."""
    pass


class AmbiguousEntry(DirectoryError):
    """Raised when a lookup expected to be unique matches several entries."""
    pass


class AllocationConflict(DirectoryError):
    """Raised when another allocation changed a sequence counter first."""

    def __init__(self, counter_dn: str, attribute: str, value: int):
        self.counter_dn = counter_dn
        self.attribute = attribute
        self.value = value
        super().__init__(f"Sequence counter {counter_dn} changed concurrently "
                         f"({attribute} was {value}); retry the allocation")


def validate_posix_name(name: str) -> bool:
    """
    Check a login or group name against the POSIX portable name rule.

    Args:
        name: Candidate name

    Returns:
        True if the name starts with [a-z_] and has at most 31 more
        characters from [a-z0-9_-]
    """
    return isinstance(name, str) and POSIX_NAME_PATTERN.fullmatch(name) is not None


def _direct_call(func: Callable, *args):
    """Default retry policy: a single attempt."""
    return func(*args)


class IdentityManager:
    """
    Manages POSIX users and groups stored in a directory.

    The manager never retries. ID allocation goes through retry_policy, a
    callable invoked as retry_policy(func, *args) that the caller may use to
    re-run a conflicting allocation a bounded number of times.
    """

    COUNTER_KINDS = ('uid', 'gid')

    def __init__(self, store: DirectoryStore, layout: Optional[DirectoryLayout] = None,
                 retry_policy: Optional[Callable[..., Any]] = None):
        """
        Initialize identity manager.

        Args:
            store: Directory store to read from and write to
            layout: Directory layout (defaults to DirectoryLayout())
            retry_policy: Wrapper used for ID allocation (defaults to a single attempt)
        """
        self.store = store
        self.layout = layout or DirectoryLayout()
        self.retry_policy = retry_policy or _direct_call

    # Naming

    validate_posix_name = staticmethod(validate_posix_name)

    def _check_posix_name(self, name: str, kind: str):
        if not validate_posix_name(name):
            raise NamingViolation(f"Invalid {kind} name: {name!r}")

    # Lookups

    @staticmethod
    def _build_filter(object_classes: Sequence[str], attribute: str, value: str) -> str:
        parts = [f"(objectClass={escape_filter_chars(oc)})" for oc in object_classes]
        parts.append(f"({attribute}={escape_filter_chars(value)})")
        return f"(&{''.join(parts)})"

    def _search(self, base: str, object_classes: Sequence[str], attribute: str, value: str) -> List[Entry]:
        search_filter = self._build_filter(object_classes, attribute, value)
        logger.debug(f"Searching {base} with filter {search_filter}")
        return self.store.search(base, search_filter, 'SUBTREE')

    def is_name_in_use(self, base: str, object_classes: Sequence[str], attribute: str, value: str) -> bool:
        """
        Check whether any entry below base carries the given name.

        Args:
            base: Search base DN
            object_classes: Object classes the entry must have
            attribute: Naming attribute (e.g. 'uid' or 'cn')
            value: Name to look for

        Returns:
            True if at least one entry matches
        """
        return len(self._search(base, object_classes, attribute, value)) > 0

    def is_user_name_in_use(self, uid: str) -> bool:
        return self.is_name_in_use(self.layout.users_base, DirectoryLayout.USER_SEARCH_CLASSES, 'uid', uid)

    def is_group_name_in_use(self, name: str) -> bool:
        return self.is_name_in_use(self.layout.groups_base, DirectoryLayout.GROUP_SEARCH_CLASSES, 'cn', name)

    def _find_unique(self, base: str, object_classes: Sequence[str], attribute: str,
                     value: str, kind: str) -> Entry:
        entries = self._search(base, object_classes, attribute, value)
        if not entries:
            raise NotFound(f"{kind.capitalize()} not found: {value}")
        if len(entries) > 1:
            dns = ', '.join(entry.dn for entry in entries)
            raise AmbiguousEntry(f"{kind.capitalize()} {value} is not unique ({len(entries)} entries: {dns})")
        return entries[0]

    def find_user(self, uid: str) -> Entry:
        """
        Look up exactly one user entry by uid.

        Raises:
            NotFound: No user has this uid
            AmbiguousEntry: More than one entry has this uid
        """
        return self._find_unique(self.layout.users_base, DirectoryLayout.USER_SEARCH_CLASSES,
                                 'uid', uid, 'user')

    def find_group(self, name: str) -> Entry:
        """Look up exactly one group entry by cn (see find_user for errors)."""
        return self._find_unique(self.layout.groups_base, DirectoryLayout.GROUP_SEARCH_CLASSES,
                                 'cn', name, 'group')

    def get_gid_number(self, group: str) -> int:
        return int(self.find_group(group).get_value('gidNumber'))

    def list_keys(self, uid: str) -> Tuple[str, ...]:
        return self.find_user(uid).get_values(SSH_KEY_ATTRIBUTE)

    # Allocation

    def allocate_id(self, counter_dn: str, attribute: str) -> int:
        """
        Take the next number from a sequence counter.

        Reads the counter, then swaps value for value + 1 in one modify request.

        Args:
            counter_dn: DN of the counter entry
            attribute: Integer attribute holding the next free number

        Returns:
            The number read, now reserved for the caller

        Raises:
            NotFound: Counter entry or attribute is missing
            AllocationConflict: Counter changed between read and swap
        """
        values = self.store.read_attribute(counter_dn, attribute)
        if not values:
            raise NotFound(f"Sequence counter not found: {counter_dn} ({attribute})")
        if len(values) > 1:
            raise AmbiguousEntry(f"Sequence counter {counter_dn} holds several {attribute} values")

        current = int(values[0])
        try:
            self.store.modify(counter_dn, [
                Modification.delete(attribute, str(current)),
                Modification.add(attribute, str(current + 1)),
            ])
        except StaleValue as e:
            logger.info(f"Allocation conflict on {counter_dn}: {attribute}={current} already taken")
            raise AllocationConflict(counter_dn, attribute, current) from e

        logger.debug(f"Allocated {attribute} {current} from {counter_dn}")
        return current

    def allocate_next_id(self, kind: str) -> int:
        """
        Allocate a uid or gid number.

        Args:
            kind: 'uid' or 'gid'
        """
        if kind == 'uid':
            return self.retry_policy(self.allocate_id, self.layout.uid_counter_dn, 'uidNumber')
        if kind == 'gid':
            return self.retry_policy(self.allocate_id, self.layout.gid_counter_dn, 'gidNumber')
        raise ValueError(f"Unknown counter kind {kind!r} (expected one of: {', '.join(self.COUNTER_KINDS)})")

    # Creation

    def create_group(self, name: str) -> int:
        """
        Create an empty POSIX group.

        Returns:
            The gidNumber of the new group

        Raises:
            NamingViolation, DuplicateName, AllocationConflict, StoreRejected
        """
        self._check_posix_name(name, 'group')
        if self.is_group_name_in_use(name):
            raise DuplicateName(f"Already in use as group name: {name}")

        gid_number = self.allocate_next_id('gid')
        self.store.add(self.layout.group_dn(name), {
            'objectClass': list(self.layout.group_object_classes),
            'cn': [name],
            'gidNumber': [str(gid_number)],
        })

        logger.info(f"Created group {name} with gidNumber {gid_number}")
        return gid_number

    def create_user(self, uid: str, display_name: str, gid_number: int, shell: str,
                    home: Optional[str] = None) -> int:
        """
        Create a POSIX user whose primary group already exists.

        Returns:
            The uidNumber of the new user
        """
        self._check_posix_name(uid, 'user')
        if self.is_user_name_in_use(uid):
            raise DuplicateName(f"Already in use as user name: {uid}")

        uid_number = self.allocate_next_id('uid')
        attributes: Dict[str, List[str]] = {
            'objectClass': list(self.layout.user_object_classes),
            'cn': [display_name],
            'uid': [uid],
            'uidNumber': [str(uid_number)],
            'gidNumber': [str(gid_number)],
            'loginShell': [shell],
            'homeDirectory': [home or self.layout.home_directory(uid)],
        }
        self.store.add(self.layout.user_dn(uid), attributes)

        logger.info(f"Created user {uid} with uidNumber {uid_number} and gidNumber {gid_number}")
        return uid_number

    def create_user_with_own_group(self, uid: str, display_name: str, shell: str) -> int:
        """
        Create a user together with a personal group of the same name.

        The group and the user are two separate writes. If the user cannot
        be created after the group was, the group is left behind and the
        original error is raised unchanged.

        Returns:
            The uidNumber of the new user
        """
        self._check_posix_name(uid, 'user')
        if self.is_user_name_in_use(uid):
            raise DuplicateName(f"Already in use as user name: {uid}")

        gid_number = self.create_group(uid)
        try:
            return self.create_user(uid, display_name, gid_number, shell, self.layout.home_directory(uid))
        except DirectoryError as e:
            logger.error(f"User {uid} was not created after its group {uid} (gidNumber {gid_number}) "
                         f"was; the group is now orphaned: {e}")
            raise

    # Attribute edits

    def _apply_delta(self, before: Entry, after: Entry) -> bool:
        modifications = diff_entries(before, after)
        if not modifications:
            logger.debug(f"No changes needed for {before.dn}")
            return False
        self.store.modify(before.dn, modifications)
        return True

    def add_member(self, uid: str, group: str) -> bool:
        """
        Add a user's DN to a group's member attribute.

        Returns:
            True if the directory was modified, False if the user already was a member
        """
        user = self.find_user(uid)
        group_entry = self.find_group(group)
        changed = self._apply_delta(group_entry, group_entry.with_value(MEMBER_ATTRIBUTE, user.dn))
        if changed:
            logger.info(f"Added {uid} to group {group}")
        return changed

    def remove_member(self, uid: str, group: str) -> bool:
        """
        Remove a user's DN from a group's member attribute.

        Returns:
            True if the directory was modified, False if the user was not a member
        """
        user = self.find_user(uid)
        group_entry = self.find_group(group)
        changed = self._apply_delta(group_entry, group_entry.without_value(MEMBER_ATTRIBUTE, user.dn))
        if changed:
            logger.info(f"Removed {uid} from group {group}")
        return changed

    def add_key(self, uid: str, key: str) -> bool:
        """Add one SSH public key line to a user. Returns False if it was already present."""
        user = self.find_user(uid)
        changed = self._apply_delta(user, user.with_value(SSH_KEY_ATTRIBUTE, key))
        if changed:
            logger.info(f"Added SSH key to user {uid}")
        return changed

    def remove_key(self, uid: str, key: str) -> bool:
        """Remove one SSH public key line from a user. Returns False if it was absent."""
        user = self.find_user(uid)
        changed = self._apply_delta(user, user.without_value(SSH_KEY_ATTRIBUTE, key))
        if changed:
            logger.info(f"Removed SSH key from user {uid}")
        return changed
