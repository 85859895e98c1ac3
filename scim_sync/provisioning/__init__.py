"""Downstream provisioning clients."""

from scim_sync.provisioning.base import ProvisioningClient, HTTPProvisioningClient

__all__ = ['ProvisioningClient', 'HTTPProvisioningClient']
