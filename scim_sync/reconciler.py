"""
Reconciliation of directory state into the SCIM store.

A run reads a fresh upstream snapshot from the directory and a fresh downstream
snapshot from the provisioning API (membership from the membership cache when
one is configured), computes the differences and applies them in a fixed order:

    1. delete users no longer in the directory
    2. update users whose attributes changed
    3. create users new in the directory
    4. create groups new in the directory
    5. add every member to the groups created in step 4
    6. add missing / remove extraneous members of groups present on both sides
    7. delete groups no longer in the directory

The first failing operation aborts the run. Nothing is rolled back; the next
run recomputes the differences from live state and continues from there.
"""

import logging
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional, Sequence, Set

from scim_sync.cache.base import MembershipCache
from scim_sync.diff import (
    GroupOperations,
    MembershipOperations,
    UserOperations,
    get_group_member_operations,
    get_group_operations,
    get_user_operations,
)
from scim_sync.directory.base import DirectoryReader
from scim_sync.errors import ConflictError, InvariantViolation, NotFoundError
from scim_sync.keys import GROUP_KEY_NAME, KeyPolicy, key_policy_for
from scim_sync.models import MEMBER_TYPE_GROUP, DirectoryGroup, DirectoryUser, Group, SyncReport, User
from scim_sync.provisioning.base import ProvisioningClient

logger = logging.getLogger(__name__)

SYNC_METHOD_GROUPS = 'groups'
SYNC_METHOD_USERS_GROUPS = 'users_groups'
SYNC_METHODS = (SYNC_METHOD_GROUPS, SYNC_METHOD_USERS_GROUPS)

DELETION_POLICY_ABSENT = 'absent'
DELETION_POLICY_DELETED_ONLY = 'deleted_only'
DELETION_POLICIES = (DELETION_POLICY_ABSENT, DELETION_POLICY_DELETED_ONLY)


def as_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return [str(item) for item in value]


class SyncSettings(NamedTuple):
    """Reconciliation settings (the 'sync' configuration section)."""
    method: str = SYNC_METHOD_GROUPS
    user_query: str = ''
    group_query: str = ''
    ignore_users: frozenset = frozenset()
    ignore_groups: frozenset = frozenset()
    include_groups: frozenset = frozenset()
    group_key: str = GROUP_KEY_NAME
    deletion_policy: str = DELETION_POLICY_ABSENT
    dry_run: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SyncSettings':
        return cls(
            method=config.get('method', SYNC_METHOD_GROUPS),
            user_query=config.get('user_query') or '',
            group_query=config.get('group_query') or '',
            ignore_users=frozenset(as_list(config.get('ignore_users'))),
            ignore_groups=frozenset(as_list(config.get('ignore_groups'))),
            include_groups=frozenset(as_list(config.get('include_groups'))),
            group_key=config.get('group_key', GROUP_KEY_NAME),
            deletion_policy=config.get('deletion_policy', DELETION_POLICY_ABSENT),
            dry_run=bool(config.get('dry_run', False)),
        )


class UpstreamSnapshot(NamedTuple):
    users: List[DirectoryUser]
    groups: List[DirectoryGroup]
    members: Dict[str, List[DirectoryUser]]
    deleted_user_keys: Optional[Set[str]] = None
    # Keys of directory groups dropped by ignore_groups / include_groups
    excluded_group_keys: FrozenSet[str] = frozenset()


class DownstreamSnapshot(NamedTuple):
    users: List[User]
    groups: List[Group]
    members: Dict[str, List[User]]
    orphaned_cache_groups: Sequence[str] = ()


class SyncPlan(NamedTuple):
    users: UserOperations
    groups: GroupOperations
    memberships: MembershipOperations
    orphaned_cache_groups: Sequence[str] = ()


class UserIndex:
    """
    Downstream users of one run, by key.

    Built from the downstream user list at the start of a run and kept current
    as users are created, updated and deleted. Lookups that miss fall back to
    the provisioning API.
    """

    def __init__(self, provisioning: ProvisioningClient, users: Sequence[User], keys: KeyPolicy):
        self.provisioning = provisioning
        self.keys = keys
        self._users: Dict[str, User] = {keys.downstream_user(user): user for user in users}
        self._deleted: Set[str] = set()

    def users(self) -> List[User]:
        return list(self._users.values())

    def add(self, user: User):
        key = self.keys.downstream_user(user)
        self._users[key] = user
        self._deleted.discard(key)

    def discard(self, key: str):
        self._users.pop(key, None)
        self._deleted.add(key)

    def was_deleted(self, key: str) -> bool:
        return key in self._deleted

    def resolve(self, key: str) -> User:
        """
        Return the downstream user for a key.

        Raises:
            InvariantViolation: If the user does not exist downstream
        """
        user = self._users.get(key)
        if user is not None:
            return user

        try:
            user = self.provisioning.find_user_by_key(key)
        except NotFoundError:
            raise InvariantViolation(f"User {key} cannot be resolved in the provisioning store")

        self._users[key] = user
        return user


class Reconciler:
    """
    Drives one reconciliation run between a directory and a SCIM store.

    The provisioning client and the membership cache are separate collaborators;
    every membership change is written to both, in the order fixed by
    _add_member and _remove_member.
    """

    def __init__(
        self,
        directory: DirectoryReader,
        provisioning: ProvisioningClient,
        cache: Optional[MembershipCache] = None,
        settings: Optional[SyncSettings] = None,
        keys: Optional[KeyPolicy] = None
    ):
        self.directory = directory
        self.provisioning = provisioning
        self.cache = cache
        self.settings = settings or SyncSettings()
        self.keys = keys or key_policy_for(self.settings.group_key)

        if self.settings.method not in SYNC_METHODS:
            raise ValueError(f"Unknown sync method '{self.settings.method}'")
        if self.settings.deletion_policy not in DELETION_POLICIES:
            raise ValueError(f"Unknown deletion policy '{self.settings.deletion_policy}'")

    def run(self) -> SyncReport:
        """
        Run a full reconciliation: read both sides, diff, and apply unless dry-run.

        Returns:
            SyncReport with the applied (or, in dry-run, planned) counts

        Raises:
            TransientIOError: If a back end call fails
            InvariantViolation: If the stores are inconsistent
        """
        upstream = self.read_upstream()

        logger.debug("Reading users and groups from the provisioning store")
        downstream_users = [
            user for user in self.provisioning.list_users()
            if not self._user_ignored(self.keys.downstream_user(user))
        ]
        index = UserIndex(self.provisioning, downstream_users, self.keys)
        downstream = self.read_downstream(index, upstream)

        plan = self.plan(upstream, downstream)
        report = self._planned_report(plan)

        if self.settings.dry_run:
            logger.info("Running in dry run mode, skipping apply")
            self._log_plan(plan)
            return report

        logger.info("Syncing changes")
        self.apply(plan, upstream, index, report)
        logger.info("Sync completed")
        return report

    # Snapshots

    def read_upstream(self) -> UpstreamSnapshot:
        """Read groups, members and users from the directory, applying the filters."""
        settings = self.settings

        logger.info(f"Getting directory groups (query: '{settings.group_query}')")
        groups = []
        excluded_group_keys = set()
        for group in self.directory.list_groups(settings.group_query):
            key = self.keys.upstream_group(group)
            if not key:
                logger.warning(f"Group {group.name} has no value for the configured group key, skipping")
            elif self._group_selected(group, key):
                groups.append(group)
            else:
                excluded_group_keys.add(key)

        users_by_key: Dict[str, Optional[DirectoryUser]] = {}
        if settings.method == SYNC_METHOD_USERS_GROUPS:
            logger.info(f"Getting directory users (query: '{settings.user_query}')")
            for user in self.directory.list_users(settings.user_query):
                key = self.keys.upstream_user(user)
                if self._user_ignored(key):
                    logger.debug(f"Ignoring user {key}")
                    continue
                users_by_key[key] = user

        members: Dict[str, List[DirectoryUser]] = {}
        for group in groups:
            group_key = self.keys.upstream_group(group)
            logger.debug(f"Getting members of group {group_key}")

            group_users: Dict[str, DirectoryUser] = {}
            for member in self.directory.list_group_members(group):
                if self._user_ignored(member.email):
                    logger.debug(f"Ignoring user {member.email}")
                    continue
                if member.kind == MEMBER_TYPE_GROUP:
                    logger.debug(f"Ignoring group address {member.email}")
                    continue

                user = self._upstream_user(member.email, users_by_key)
                if user is None:
                    logger.debug(f"Ignoring unknown user {member.email}")
                    continue
                group_users[self.keys.upstream_user(user)] = user

            members[group_key] = list(group_users.values())

        users = [user for user in users_by_key.values() if user is not None]

        deleted_user_keys = None
        if settings.deletion_policy == DELETION_POLICY_DELETED_ONLY:
            deleted_user_keys = {self.keys.upstream_user(user) for user in self.directory.list_deleted_users()}

        logger.info(f"Directory snapshot: {len(users)} users, {len(groups)} groups")
        return UpstreamSnapshot(users, groups, members, deleted_user_keys, frozenset(excluded_group_keys))

    def _upstream_user(self, email: str, users_by_key: Dict[str, Optional[DirectoryUser]]) -> Optional[DirectoryUser]:
        if email in users_by_key or self.settings.method == SYNC_METHOD_USERS_GROUPS:
            return users_by_key.get(email)

        found = self.directory.list_users(self.directory.user_query_for(email))
        user = found[0] if found else None
        users_by_key[email] = user
        return user

    def read_downstream(self, index: UserIndex, upstream: UpstreamSnapshot) -> DownstreamSnapshot:
        """
        Read groups and their members from the provisioning side.

        Groups are selected to match the upstream snapshot: the keys of selected
        directory groups are always kept and the keys of excluded ones always
        dropped, whatever name the filter matched them by. Membership comes from
        the cache when one is configured; otherwise every (user, group) pair is
        checked against the provisioning API.
        """
        selected_keys = {self.keys.upstream_group(group) for group in upstream.groups}
        all_groups = self.provisioning.list_groups()
        groups = [
            group for group in all_groups
            if self._downstream_group_selected(self.keys.downstream_group(group), selected_keys, upstream)
        ]
        users = index.users()

        members: Dict[str, List[User]] = {}
        for group in groups:
            group_key = self.keys.downstream_group(group)
            if self.cache is not None:
                member_keys = [key for key in self.cache.get_group_members(group_key) if not self._user_ignored(key)]
                members[group_key] = [index.resolve(key) for key in member_keys]
            else:
                members[group_key] = [user for user in users if self.provisioning.is_member(user, group)]

        orphaned = []
        if self.cache is not None:
            known = {self.keys.downstream_group(group) for group in all_groups}
            orphaned = [key for key in self.cache.list_groups() if key not in known]

        logger.info(f"Provisioning snapshot: {len(users)} users, {len(groups)} groups")
        return DownstreamSnapshot(users, groups, members, orphaned)

    # Planning

    def plan(self, upstream: UpstreamSnapshot, downstream: DownstreamSnapshot) -> SyncPlan:
        """Compute every operation needed to make downstream match upstream."""
        users = get_user_operations(downstream.users, upstream.users, self.keys)

        if upstream.deleted_user_keys is not None:
            to_delete = []
            for user in users.to_delete:
                key = self.keys.downstream_user(user)
                if key in upstream.deleted_user_keys:
                    to_delete.append(user)
                else:
                    logger.info(f"User {key} is not deleted in the directory, keeping it")
            users = users._replace(to_delete=to_delete)

        groups = get_group_operations(downstream.groups, upstream.groups, self.keys)
        memberships = get_group_member_operations(upstream.members, downstream.members, self.keys)

        # Rows of a group about to be created are reused by step 5, not purged
        created = {self.keys.downstream_group(group) for group in groups.to_add}
        orphaned = [key for key in downstream.orphaned_cache_groups if key not in created]
        return SyncPlan(users, groups, memberships, orphaned)

    # Apply

    def apply(self, plan: SyncPlan, upstream: UpstreamSnapshot, index: UserIndex, report: SyncReport):
        """Apply a plan in the fixed order; the first failure propagates."""
        report.users_deleted = self._delete_users(plan.users.to_delete, index)
        report.users_updated = self._update_users(plan.users.to_update, index)
        report.users_added = self._create_users(plan.users.to_add, index)

        new_groups = self._create_groups(plan.groups.to_add)
        report.groups_added = len(new_groups)

        report.members_added = self._populate_groups(new_groups, upstream.members, index)
        added, removed = self._reconcile_groups(plan.groups.equal, upstream.members, plan.memberships.delete, index)
        report.members_added += added
        report.members_removed = removed

        report.groups_deleted = self._delete_groups(plan.groups.to_delete, plan.orphaned_cache_groups)

    def _delete_users(self, users: Sequence[User], index: UserIndex) -> int:
        logger.debug("Deleting users removed from the directory")
        deleted = 0
        for user in users:
            key = self.keys.downstream_user(user)
            try:
                current = self.provisioning.find_user_by_key(key)
                logger.warning(f"Deleting user {key}")
                self.provisioning.delete_user(current)
                deleted += 1
            except NotFoundError:
                logger.info(f"User {key} already deleted")

            if self.cache is not None:
                self.cache.remove_user(key)
            index.discard(key)
        return deleted

    def _update_users(self, users: Sequence[User], index: UserIndex) -> int:
        logger.debug("Updating users changed in the directory")
        for user in users:
            logger.warning(f"Updating user {self.keys.downstream_user(user)}")
            index.add(self.provisioning.update_user(user))
        return len(users)

    def _create_users(self, users: Sequence[User], index: UserIndex) -> int:
        logger.debug("Creating users added in the directory")
        for user in users:
            logger.info(f"Creating user {self.keys.downstream_user(user)}")
            index.add(self.provisioning.create_user(user))
        return len(users)

    def _create_groups(self, groups: Sequence[Group]) -> List[Group]:
        """Create groups; a group that already exists downstream is looked up and returned instead."""
        logger.debug("Creating groups added in the directory")
        created = []
        for group in groups:
            key = self.keys.downstream_group(group)
            logger.info(f"Creating group {key}")
            try:
                created.append(self.provisioning.create_group(group))
            except ConflictError:
                logger.warning(f"Group {key} already exists in the provisioning store, populating it")
                created.append(self.provisioning.find_group_by_key(key))
        return created

    def _populate_groups(self, groups: Sequence[Group], upstream_members: Dict[str, List[DirectoryUser]],
                         index: UserIndex) -> int:
        """Add every directory member to newly created groups, without checking current membership."""
        added = 0
        for group in groups:
            group_key = self.keys.downstream_group(group)
            for directory_user in upstream_members.get(group_key, []):
                user = index.resolve(self.keys.upstream_user(directory_user))
                logger.info(f"Adding user {self.keys.downstream_user(user)} to group {group_key}")
                self._add_member(user, group)
                added += 1
        return added

    def _reconcile_groups(self, groups: Sequence[Group], upstream_members: Dict[str, List[DirectoryUser]],
                          to_remove: Dict[str, List[User]], index: UserIndex) -> tuple:
        """
        Bring existing groups in line with the directory.

        Additions are checked against the live provisioning store, removals come
        from the membership diff. Within a group all additions happen before any
        removal.

        Returns:
            Tuple of (members_added, members_removed)
        """
        logger.debug("Validating members of groups present on both sides")
        added = removed = 0
        for group in groups:
            group_key = self.keys.downstream_group(group)

            for directory_user in upstream_members.get(group_key, []):
                user = index.resolve(self.keys.upstream_user(directory_user))
                user_key = self.keys.downstream_user(user)
                logger.debug(f"Checking user {user_key} is in group {group_key} already")
                if not self.provisioning.is_member(user, group):
                    logger.info(f"Adding user {user_key} to group {group_key}")
                    self._add_member(user, group)
                    added += 1

            for user in to_remove.get(group_key, []):
                user_key = self.keys.downstream_user(user)
                if index.was_deleted(user_key):
                    logger.debug(f"User {user_key} was deleted, membership in {group_key} is gone with it")
                    continue
                logger.warning(f"Removing user {user_key} from group {group_key}")
                self._remove_member(user, group)
                removed += 1

        return added, removed

    def _delete_groups(self, groups: Sequence[Group], orphaned_cache_groups: Sequence[str]) -> int:
        logger.debug("Deleting groups removed from the directory")
        for group in groups:
            group_key = self.keys.downstream_group(group)
            logger.warning(f"Deleting group {group_key}")
            self.provisioning.delete_group(group)
            if self.cache is not None:
                self.cache.remove_group(group_key)

        if self.cache is not None:
            for group_key in orphaned_cache_groups:
                logger.warning(f"Purging membership cache rows of missing group {group_key}")
                self.cache.remove_group(group_key)

        return len(groups)

    # Dual-store membership writes

    def _add_member(self, user: User, group: Group):
        """Record the membership in the cache if absent, then in the provisioning store."""
        if self.cache is not None:
            user_key = self.keys.downstream_user(user)
            group_key = self.keys.downstream_group(group)
            if not self.cache.is_member(user_key, group_key):
                self.cache.add_member(user_key, group_key)
        self.provisioning.add_member(user, group)

    def _remove_member(self, user: User, group: Group):
        """Remove the membership from the provisioning store, then from the cache."""
        self.provisioning.remove_member(user, group)
        if self.cache is not None:
            self.cache.remove_member(self.keys.downstream_user(user), self.keys.downstream_group(group))

    # Filters

    def _user_ignored(self, key: str) -> bool:
        return key in self.settings.ignore_users

    def _group_selected(self, group: DirectoryGroup, key: str) -> bool:
        names = {group.name, group.email, key} - {''}
        if names & self.settings.ignore_groups:
            logger.debug(f"Ignoring group {key}")
            return False
        if self.settings.include_groups and not names & self.settings.include_groups:
            logger.debug(f"Group {key} not in include list")
            return False
        return True

    def _downstream_group_selected(self, key: str, selected_keys: Set[str], upstream: UpstreamSnapshot) -> bool:
        if key in selected_keys:
            return True
        if key in upstream.excluded_group_keys:
            return False
        if key in self.settings.ignore_groups:
            return False
        if self.settings.include_groups and key not in self.settings.include_groups:
            return False
        return True

    # Reporting

    def _planned_report(self, plan: SyncPlan) -> SyncReport:
        keys = self.keys
        report = SyncReport(dry_run=self.settings.dry_run)
        report.users_unchanged = len(plan.users.unchanged)
        report.planned = {
            'users_to_add': [keys.downstream_user(user) for user in plan.users.to_add],
            'users_to_update': [keys.downstream_user(user) for user in plan.users.to_update],
            'users_to_delete': [keys.downstream_user(user) for user in plan.users.to_delete],
            'groups_to_add': [keys.downstream_group(group) for group in plan.groups.to_add],
            'groups_to_delete': [keys.downstream_group(group) for group in plan.groups.to_delete],
            'members_to_remove': [
                f"{group_key}/{keys.downstream_user(user)}" for group_key, user in self._member_removals(plan)
            ],
        }
        if self.settings.dry_run:
            report.users_added = len(plan.users.to_add)
            report.users_updated = len(plan.users.to_update)
            report.users_deleted = len(plan.users.to_delete)
            report.groups_added = len(plan.groups.to_add)
            report.groups_deleted = len(plan.groups.to_delete)
            report.members_removed = len(report.planned['members_to_remove'])
        return report

    def _member_removals(self, plan: SyncPlan):
        """Removals step 6 applies; memberships of deleted groups and users go with them."""
        deleted_users = {self.keys.downstream_user(user) for user in plan.users.to_delete}
        for group in plan.groups.equal:
            group_key = self.keys.downstream_group(group)
            for user in plan.memberships.delete.get(group_key, []):
                if self.keys.downstream_user(user) not in deleted_users:
                    yield group_key, user

    def _log_plan(self, plan: SyncPlan):
        keys = self.keys
        for user in plan.users.to_delete:
            logger.info(f"[dry-run] would delete user {keys.downstream_user(user)}")
        for user in plan.users.to_update:
            logger.info(f"[dry-run] would update user {keys.downstream_user(user)}")
        for user in plan.users.to_add:
            logger.info(f"[dry-run] would create user {keys.downstream_user(user)}")
        for group in plan.groups.to_add:
            logger.info(f"[dry-run] would create group {keys.downstream_group(group)}")
        for group_key, user in self._member_removals(plan):
            logger.info(f"[dry-run] would remove user {keys.downstream_user(user)} from group {group_key}")
        for group in plan.groups.to_delete:
            logger.info(f"[dry-run] would delete group {keys.downstream_group(group)}")
