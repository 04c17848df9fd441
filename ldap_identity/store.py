"""
Directory store interface and common error types.

This module defines the abstract collaborator the identity manager talks to.
Implementations translate the four primitive operations onto a concrete
directory (see ldap_identity.ldap_client) and raise the errors below.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from ldap_identity.entry import Entry, Modification

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Base exception for all directory and identity errors."""
    pass


class StoreUnavailable(DirectoryError):
    """Raised when the directory cannot be reached or the connection fails."""
    pass


class StoreRejected(DirectoryError):
    """Raised when the directory refuses an otherwise well-formed request."""

    def __init__(self, message: str, result_code: Optional[int] = None,
                 description: str = '', server_message: str = ''):
        self.result_code = result_code
        self.description = description
        self.server_message = server_message
        super().__init__(message)


class StaleValue(StoreRejected):
    """Raised when a modify deletes a value the entry no longer holds."""
    pass


class DirectoryStore(ABC):
    """
    Abstract directory store.

    Every call either completes or raises StoreUnavailable/StoreRejected.
    Timeouts are a property of the underlying connection, not of the store API.
    """

    @abstractmethod
    def add(self, dn: str, attributes: Dict[str, Sequence[str]]) -> None:
        """
        Add a new entry.

        Args:
            dn: Distinguished name of the new entry
            attributes: Attribute name to values, including objectClass
        """
        pass

    @abstractmethod
    def modify(self, dn: str, modifications: List[Modification]) -> None:
        """
        Apply all modifications to one entry as a single request.

        The request must fail as a whole, raising StaleValue, when any
        delete-by-value does not match a current value.
        """
        pass

    @abstractmethod
    def search(self, base: str, search_filter: str, scope: str = 'SUBTREE') -> List[Entry]:
        """
        Search for entries.

        Args:
            base: Search base DN
            search_filter: RFC 4515 filter string
            scope: 'BASE', 'LEVEL' or 'SUBTREE'

        Returns:
            Matching entries; an empty list when the base does not exist
        """
        pass

    @abstractmethod
    def read_attribute(self, dn: str, attribute: str) -> Optional[Tuple[str, ...]]:
        """
        Read the values of one attribute of one entry.

        Returns:
            The attribute values, or None if the entry or attribute is absent
        """
        pass
