"""
LDAP Identity Manager - Provision POSIX users and groups in an LDAP directory.

This package allocates unique uid/gid numbers from directory-held counters,
enforces POSIX naming and uniqueness rules, and applies minimal attribute
changes for group membership and SSH public keys.
"""

__version__ = "1.0.0"
__author__ = "LDAP Identity Team"
