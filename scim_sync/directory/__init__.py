"""Upstream directory readers."""

from scim_sync.directory.base import DirectoryReader

__all__ = ['DirectoryReader']
