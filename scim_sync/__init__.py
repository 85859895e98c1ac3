"""
SCIM Directory Sync - Mirror LDAP users, groups and group memberships into a SCIM identity store.

This package reconciles an upstream directory with a downstream SCIM provisioning
target, optionally tracking group membership in a secondary cache.
"""

__version__ = "1.0.0"
__author__ = "SCIM Sync Team"
