"""
Membership cache interface.

SCIM servers do not always offer a cheap "list members of group" query, so
group membership is mirrored into a secondary store keyed by (group key, user
key). The reconciler reads membership from here and writes every membership
change to both the cache and the provisioning API.
"""

from abc import ABC, abstractmethod
from typing import List


class MembershipCache(ABC):
    """Abstract base class for membership stores."""

    @abstractmethod
    def list_groups(self) -> List[str]:
        """Return the keys of every group with at least one recorded member."""
        pass

    @abstractmethod
    def get_group_members(self, group_key: str) -> List[str]:
        """Return the user keys recorded as members of the group."""
        pass

    @abstractmethod
    def is_member(self, user_key: str, group_key: str) -> bool:
        pass

    @abstractmethod
    def add_member(self, user_key: str, group_key: str) -> None:
        pass

    @abstractmethod
    def remove_member(self, user_key: str, group_key: str) -> None:
        pass

    @abstractmethod
    def remove_group(self, group_key: str) -> None:
        """Drop every membership row of the group."""
        pass

    @abstractmethod
    def remove_user(self, user_key: str) -> None:
        """Drop every membership row of the user."""
        pass
