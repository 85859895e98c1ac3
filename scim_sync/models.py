"""
Entity records exchanged between the directory, the provisioning target and the reconciler.

Upstream (directory) and downstream (SCIM) users differ in shape: the directory
reports a ``suspended`` flag while SCIM stores ``active``. All records are frozen
so snapshots handed to the diff functions cannot be modified in place.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

MEMBER_TYPE_USER = 'USER'
MEMBER_TYPE_GROUP = 'GROUP'


@dataclass(frozen=True)
class DirectoryUser:
    """User as read from the upstream directory."""
    primary_email: str
    given_name: str = ''
    family_name: str = ''
    suspended: bool = False
    dn: Optional[str] = None


@dataclass(frozen=True)
class DirectoryGroup:
    """Group as read from the upstream directory."""
    name: str
    email: str = ''
    dn: Optional[str] = None


@dataclass(frozen=True)
class Member:
    """Entry of an upstream group's member list."""
    email: str
    kind: str = MEMBER_TYPE_USER
    dn: Optional[str] = None


@dataclass(frozen=True)
class User:
    """User as stored in the SCIM provisioning target."""
    username: str
    given_name: str = ''
    family_name: str = ''
    active: bool = True
    id: Optional[str] = None

    @classmethod
    def from_directory(cls, directory_user: DirectoryUser, user_id: Optional[str] = None) -> 'User':
        """Build a downstream record from upstream values (active = not suspended)."""
        return cls(
            username=directory_user.primary_email,
            given_name=directory_user.given_name,
            family_name=directory_user.family_name,
            active=not directory_user.suspended,
            id=user_id,
        )

    def to_scim(self) -> Dict:
        """Serialize to a SCIM 2.0 User resource."""
        display_name = f"{self.given_name} {self.family_name}".strip() or self.username
        return {
            'schemas': ['urn:ietf:params:scim:schemas:core:2.0:User'],
            'userName': self.username,
            'name': {
                'givenName': self.given_name,
                'familyName': self.family_name,
            },
            'displayName': display_name,
            'active': self.active,
            'emails': [{'value': self.username, 'type': 'work', 'primary': True}],
        }

    @classmethod
    def from_scim(cls, resource: Dict) -> 'User':
        name = resource.get('name') or {}
        return cls(
            username=resource.get('userName', ''),
            given_name=name.get('givenName', ''),
            family_name=name.get('familyName', ''),
            active=resource.get('active', True),
            id=resource.get('id'),
        )


@dataclass(frozen=True)
class Group:
    """Group as stored in the SCIM provisioning target."""
    display_name: str
    id: Optional[str] = None

    def to_scim(self) -> Dict:
        return {
            'schemas': ['urn:ietf:params:scim:schemas:core:2.0:Group'],
            'displayName': self.display_name,
            'members': [],
        }

    @classmethod
    def from_scim(cls, resource: Dict) -> 'Group':
        return cls(display_name=resource.get('displayName', ''), id=resource.get('id'))


@dataclass
class SyncReport:
    """Counts of applied operations for one reconciliation run."""
    dry_run: bool = False
    users_added: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    users_unchanged: int = 0
    groups_added: int = 0
    groups_deleted: int = 0
    members_added: int = 0
    members_removed: int = 0
    planned: Dict[str, List[str]] = field(default_factory=dict)

    def as_dict(self) -> Dict:
        return {
            'dry_run': self.dry_run,
            'users_added': self.users_added,
            'users_updated': self.users_updated,
            'users_deleted': self.users_deleted,
            'users_unchanged': self.users_unchanged,
            'groups_added': self.groups_added,
            'groups_deleted': self.groups_deleted,
            'members_added': self.members_added,
            'members_removed': self.members_removed,
        }
