"""
Set-difference computation between directory and SCIM snapshots.

All functions here are pure: they read the snapshots they are given, classify
each entity by key and return new collections. Nothing is written to either
back end and no input collection is modified.
"""

import logging
from typing import Dict, List, Mapping, NamedTuple, Sequence

from scim_sync.keys import KeyPolicy
from scim_sync.models import DirectoryGroup, DirectoryUser, Group, User

logger = logging.getLogger(__name__)


class UserOperations(NamedTuple):
    to_add: List[User]
    to_delete: List[User]
    to_update: List[User]
    unchanged: List[User]


class GroupOperations(NamedTuple):
    to_add: List[Group]
    to_delete: List[Group]
    equal: List[Group]


class MembershipOperations(NamedTuple):
    delete: Dict[str, List[User]]
    equal: Dict[str, List[User]]


def user_needs_update(downstream: User, upstream: DirectoryUser) -> bool:
    """Compare names and the translated active flag (downstream active == not suspended)."""
    return (
        downstream.active != (not upstream.suspended)
        or downstream.given_name != upstream.given_name
        or downstream.family_name != upstream.family_name
    )


def get_user_operations(
    downstream_users: Sequence[User],
    upstream_users: Sequence[DirectoryUser],
    keys: KeyPolicy
) -> UserOperations:
    """
    Classify users into add, delete, update and unchanged lists.

    Args:
        downstream_users: Users currently in the SCIM store
        upstream_users: Users read from the directory (already filtered)
        keys: Key functions used to match the two sides

    Returns:
        UserOperations with four disjoint lists. Update records are built from
        upstream values and keep the downstream id.
    """
    downstream_by_key = {keys.downstream_user(user): user for user in downstream_users}
    upstream_keys = {keys.upstream_user(user) for user in upstream_users}

    to_add, to_delete, to_update, unchanged = [], [], [], []

    for upstream_user in upstream_users:
        key = keys.upstream_user(upstream_user)
        downstream_user = downstream_by_key.get(key)

        if downstream_user is None:
            logger.debug(f"User {key}: add")
            to_add.append(User.from_directory(upstream_user))
        elif user_needs_update(downstream_user, upstream_user):
            logger.debug(f"User {key}: update")
            to_update.append(User.from_directory(upstream_user, user_id=downstream_user.id))
        else:
            logger.debug(f"User {key}: no changes")
            unchanged.append(downstream_user)

    for downstream_user in downstream_users:
        key = keys.downstream_user(downstream_user)
        if key not in upstream_keys:
            logger.debug(f"User {key}: delete")
            to_delete.append(downstream_user)

    return UserOperations(to_add, to_delete, to_update, unchanged)


def get_group_operations(
    downstream_groups: Sequence[Group],
    upstream_groups: Sequence[DirectoryGroup],
    keys: KeyPolicy
) -> GroupOperations:
    """
    Classify groups into add, delete and equal lists.

    A group found on both sides is always "equal": groups have no attributes of
    their own to update, only membership, which is evaluated separately.
    """
    downstream_by_key = {keys.downstream_group(group): group for group in downstream_groups}
    upstream_keys = {keys.upstream_group(group) for group in upstream_groups}

    to_add, to_delete, equal = [], [], []

    for upstream_group in upstream_groups:
        key = keys.upstream_group(upstream_group)
        if key in downstream_by_key:
            logger.debug(f"Group {key}: no changes")
            equal.append(downstream_by_key[key])
        else:
            logger.debug(f"Group {key}: add")
            to_add.append(Group(display_name=key))

    for downstream_group in downstream_groups:
        key = keys.downstream_group(downstream_group)
        if key not in upstream_keys:
            logger.debug(f"Group {key}: delete")
            to_delete.append(downstream_group)

    return GroupOperations(to_add, to_delete, equal)


def get_group_member_operations(
    upstream_members: Mapping[str, Sequence[DirectoryUser]],
    downstream_members: Mapping[str, Sequence[User]],
    keys: KeyPolicy
) -> MembershipOperations:
    """
    Split each downstream group's members into those to remove and those to keep.

    Additions are not computed here: new groups are filled unconditionally and
    existing groups are checked against the live store while applying.

    Args:
        upstream_members: Group key -> directory members
        downstream_members: Group key -> SCIM members
        keys: Key functions used to match users

    Returns:
        MembershipOperations mapping group key -> users, for delete and equal
    """
    upstream_lookup = {
        group_key: {keys.upstream_user(user) for user in users}
        for group_key, users in upstream_members.items()
    }

    delete: Dict[str, List[User]] = {}
    equal: Dict[str, List[User]] = {}

    for group_key, users in downstream_members.items():
        wanted = upstream_lookup.get(group_key, set())
        for user in users:
            if keys.downstream_user(user) in wanted:
                equal.setdefault(group_key, []).append(user)
            else:
                delete.setdefault(group_key, []).append(user)

    return MembershipOperations(delete, equal)
