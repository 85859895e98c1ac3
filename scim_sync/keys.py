"""
Identity key functions.

Users and groups are matched across the directory and the SCIM store by a
shared identifier. The diff and reconcile routines never compare entity fields
themselves; they receive a KeyPolicy and call its functions, so switching the
matching rule (e.g. group name vs. group email) happens here only.

Keys are compared by exact, case-sensitive string equality.
"""

from typing import Callable, NamedTuple

from scim_sync.models import DirectoryGroup, DirectoryUser, Group, User

GROUP_KEY_NAME = 'name'
GROUP_KEY_EMAIL = 'email'
GROUP_KEY_POLICIES = (GROUP_KEY_NAME, GROUP_KEY_EMAIL)


def upstream_user_key(user: DirectoryUser) -> str:
    return user.primary_email


def downstream_user_key(user: User) -> str:
    return user.username


def upstream_group_name_key(group: DirectoryGroup) -> str:
    return group.name


def upstream_group_email_key(group: DirectoryGroup) -> str:
    return group.email


def downstream_group_key(group: Group) -> str:
    return group.display_name


class KeyPolicy(NamedTuple):
    """The four key functions used by one reconciliation run."""
    upstream_user: Callable[[DirectoryUser], str] = upstream_user_key
    downstream_user: Callable[[User], str] = downstream_user_key
    upstream_group: Callable[[DirectoryGroup], str] = upstream_group_name_key
    downstream_group: Callable[[Group], str] = downstream_group_key


def key_policy_for(group_key: str = GROUP_KEY_NAME) -> KeyPolicy:
    """
    Build the key policy for the configured group matching rule.

    Args:
        group_key: 'name' to match SCIM display names against directory group
            names, 'email' to match them against directory group addresses

    Returns:
        KeyPolicy instance

    Raises:
        ValueError: If the group key rule is unknown
    """
    if group_key == GROUP_KEY_NAME:
        return KeyPolicy()
    if group_key == GROUP_KEY_EMAIL:
        return KeyPolicy(upstream_group=upstream_group_email_key)
    raise ValueError(f"Unknown group key policy '{group_key}', expected one of {GROUP_KEY_POLICIES}")
