"""
Directory reader interface.

A directory reader is the upstream side of a sync: it lists groups, group
members and users, filtered by opaque query strings that are passed through to
the directory unmodified.
"""

from abc import ABC, abstractmethod
from typing import List

from scim_sync.models import DirectoryGroup, DirectoryUser, Member


class DirectoryReader(ABC):
    """Abstract base class for upstream directories."""

    @abstractmethod
    def list_groups(self, query: str = '') -> List[DirectoryGroup]:
        """
        List groups matching the query.

        Args:
            query: Directory-specific filter expression; empty means all groups

        Returns:
            List of directory groups
        """
        pass

    @abstractmethod
    def list_group_members(self, group: DirectoryGroup) -> List[Member]:
        """List direct members of a group, users and nested groups alike."""
        pass

    @abstractmethod
    def list_users(self, query: str = '') -> List[DirectoryUser]:
        """List users matching the query."""
        pass

    @abstractmethod
    def list_deleted_users(self) -> List[DirectoryUser]:
        """List users the directory reports as deleted."""
        pass

    @abstractmethod
    def user_query_for(self, email: str) -> str:
        """Return the query selecting exactly the user with this email address."""
        pass

    def close(self):
        """Release any connection held by the reader."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
