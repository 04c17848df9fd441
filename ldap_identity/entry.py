"""
Immutable directory entry snapshots and attribute diffing.

Membership and key edits are computed here without touching a directory:
take a snapshot, derive the wanted snapshot, and diff the two into the
smallest list of modifications.
"""

from collections import namedtuple
from typing import Dict, Iterable, List, Optional, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import safe_dn

MODIFY_ADD = 'add'
MODIFY_DELETE = 'delete'

# Attributes holding DNs; their values compare like DNs, not like strings
DN_ATTRIBUTES = frozenset(['member', 'uniquemember', 'owner', 'memberof', 'seealso'])


def value_key(attribute: str, value: str) -> str:
    """
    Return the key two values of attribute are compared by.

    DN-valued attributes ignore case and spacing around separators, so
    'UID=alice, OU=users,...' and 'uid=alice,ou=users,...' are the same
    member. Other values compare exactly.
    """
    if attribute.lower() not in DN_ATTRIBUTES:
        return value
    try:
        return safe_dn(value).lower()
    except LDAPInvalidDnError:
        return value.strip().lower()


def _contains(attribute: str, values: Iterable[str], value: str) -> bool:
    key = value_key(attribute, value)
    return any(value_key(attribute, v) == key for v in values)


class Modification(namedtuple('Modification', ['operation', 'attribute', 'values'])):
    """One add or delete of specific attribute values."""
    __slots__ = ()

    @classmethod
    def add(cls, attribute: str, *values: str) -> 'Modification':
        return cls(MODIFY_ADD, attribute, tuple(values))

    @classmethod
    def delete(cls, attribute: str, *values: str) -> 'Modification':
        return cls(MODIFY_DELETE, attribute, tuple(values))


class Entry:
    """
    Read-only snapshot of a directory entry.

    Attribute names are matched case-insensitively, as in LDAP. Values keep
    their order and duplicates are dropped; values of DN attributes such as
    member are compared as DNs (see value_key). An attribute without values is
    the same as an absent attribute.
    """

    __slots__ = ('_dn', '_attributes')

    def __init__(self, dn: str, attributes: Optional[Dict[str, Iterable[str]]] = None):
        self._dn = dn
        merged = {}
        for name, values in (attributes or {}).items():
            if isinstance(values, (str, bytes)):
                values = [values]
            key = name.lower()
            original_name, existing = merged.get(key, (name, ()))
            combined = list(existing)
            for value in values:
                if isinstance(value, bytes):
                    value = value.decode('utf-8')
                value = str(value)
                if not _contains(name, combined, value):
                    combined.append(value)
            merged[key] = (original_name, tuple(combined))
        self._attributes = {key: item for key, item in merged.items() if item[1]}

    @property
    def dn(self) -> str:
        return self._dn

    @property
    def attribute_names(self) -> List[str]:
        return [name for name, _ in self._attributes.values()]

    def get_values(self, attribute: str) -> Tuple[str, ...]:
        """Return all values of an attribute (empty tuple if absent)."""
        item = self._attributes.get(attribute.lower())
        return item[1] if item else ()

    def get_value(self, attribute: str) -> Optional[str]:
        """Return the first value of an attribute, or None."""
        values = self.get_values(attribute)
        return values[0] if values else None

    def get_int(self, attribute: str) -> Optional[int]:
        value = self.get_value(attribute)
        return int(value) if value is not None else None

    def has_value(self, attribute: str, value: str) -> bool:
        return _contains(attribute, self.get_values(attribute), value)

    def as_dict(self) -> Dict[str, Tuple[str, ...]]:
        return {name: values for name, values in self._attributes.values()}

    def with_value(self, attribute: str, value: str) -> 'Entry':
        """Return a copy with value added to attribute."""
        attributes = self.as_dict()
        name = self._attribute_name(attribute)
        attributes[name] = attributes.get(name, ()) + (value,)
        return Entry(self._dn, attributes)

    def without_value(self, attribute: str, value: str) -> 'Entry':
        """Return a copy with value removed from attribute."""
        attributes = self.as_dict()
        name = self._attribute_name(attribute)
        key = value_key(attribute, value)
        attributes[name] = tuple(v for v in attributes.get(name, ()) if value_key(attribute, v) != key)
        return Entry(self._dn, attributes)

    def _attribute_name(self, attribute: str) -> str:
        item = self._attributes.get(attribute.lower())
        return item[0] if item else attribute

    def __eq__(self, other):
        if not isinstance(other, Entry):
            return NotImplemented
        return self._dn == other._dn and self._normalized() == other._normalized()

    def __hash__(self):
        return hash((self._dn, frozenset(self._normalized().items())))

    def _normalized(self) -> Dict[str, frozenset]:
        return {key: frozenset(value_key(key, v) for v in values) for key, (_, values) in self._attributes.items()}

    def __repr__(self):
        return f"Entry({self._dn!r}, {self.as_dict()!r})"


def diff_entries(before: Entry, after: Entry) -> List[Modification]:
    """
    Compute the modifications that turn before into after.

    Only the values that differ are listed, compared with value_key. For
    each attribute the delete (if any) comes before the add. Entry DNs are
    not compared.

    Args:
        before: Current snapshot
        after: Wanted snapshot

    Returns:
        List of modifications, empty when the snapshots match
    """
    modifications = []
    seen = []
    for name in before.attribute_names + after.attribute_names:
        if name.lower() not in [s.lower() for s in seen]:
            seen.append(name)

    for name in seen:
        old_values = before.get_values(name)
        new_values = after.get_values(name)
        removed = tuple(v for v in old_values if not _contains(name, new_values, v))
        added = tuple(v for v in new_values if not _contains(name, old_values, v))
        if removed:
            modifications.append(Modification.delete(name, *removed))
        if added:
            modifications.append(Modification.add(name, *added))

    return modifications

