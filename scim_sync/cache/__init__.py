"""Secondary group membership stores."""

from scim_sync.cache.base import MembershipCache

__all__ = ['MembershipCache']
