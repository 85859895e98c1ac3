"""
SCIM 2.0 provisioning client.

This module implements the ProvisioningClient interface against a SCIM 2.0
service provider (RFC 7644), such as the AWS IAM Identity Center SCIM endpoint.
Users are keyed by userName and groups by displayName.
"""

import logging
from typing import Dict, List, Any

from scim_sync.errors import NotFoundError, ProvisioningAPIError
from scim_sync.models import Group, User
from scim_sync.provisioning.base import HTTPProvisioningClient

logger = logging.getLogger(__name__)

PATCH_OP_SCHEMA = 'urn:ietf:params:scim:api:messages:2.0:PatchOp'


def _quote(value: str) -> str:
    """Quote a value for use in a SCIM filter expression."""
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


class SCIMProvisioningClient(HTTPProvisioningClient):
    """
    SCIM 2.0 client implementation.

    Handles user and group CRUD plus group membership patches.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SCIM client.

        Args:
            config: The 'scim' configuration section
        """
        super().__init__(config)
        self.page_size = config.get('page_size', 100)
        logger.info(f"Initialized SCIM client for {self.endpoint}")

    # Users

    def find_user_by_key(self, key: str) -> User:
        resources = self._filter('/Users', f"userName eq {_quote(key)}")
        if not resources:
            raise NotFoundError('user', key)
        return User.from_scim(resources[0])

    def create_user(self, user: User) -> User:
        logger.debug(f"Creating user '{user.username}' in {self.name}")
        response = self.request('POST', '/Users', body=user.to_scim())
        return User.from_scim(response)

    def update_user(self, user: User) -> User:
        user_id = self._user_id(user)
        body = user.to_scim()
        body['id'] = user_id
        logger.debug(f"Replacing user '{user.username}' ({user_id}) in {self.name}")
        response = self.request('PUT', f'/Users/{user_id}', body=body)
        return User.from_scim(response) if response else user

    def delete_user(self, user: User) -> None:
        user_id = self._user_id(user)
        try:
            self.request('DELETE', f'/Users/{user_id}')
        except ProvisioningAPIError as e:
            if e.status_code == 404:
                raise NotFoundError('user', user.username) from e
            raise

    def list_users(self) -> List[User]:
        return [User.from_scim(resource) for resource in self._list_all('/Users')]

    # Groups

    def find_group_by_key(self, key: str) -> Group:
        resources = self._filter('/Groups', f"displayName eq {_quote(key)}")
        if not resources:
            raise NotFoundError('group', key)
        return Group.from_scim(resources[0])

    def create_group(self, group: Group) -> Group:
        logger.debug(f"Creating group '{group.display_name}' in {self.name}")
        response = self.request('POST', '/Groups', body=group.to_scim())
        return Group.from_scim(response)

    def delete_group(self, group: Group) -> None:
        group_id = self._group_id(group)
        try:
            self.request('DELETE', f'/Groups/{group_id}')
        except ProvisioningAPIError as e:
            if e.status_code == 404:
                raise NotFoundError('group', group.display_name) from e
            raise

    def list_groups(self) -> List[Group]:
        return [Group.from_scim(resource) for resource in self._list_all('/Groups')]

    # Membership

    def is_member(self, user: User, group: Group) -> bool:
        user_id = self._user_id(user)
        group_id = self._group_id(group)
        response = self.request('GET', '/Groups', params={
            'filter': f"id eq {_quote(group_id)} and members eq {_quote(user_id)}"
        })
        if response.get('totalResults') is not None:
            return response['totalResults'] > 0
        return bool(response.get('Resources'))

    def add_member(self, user: User, group: Group) -> None:
        self._patch_members(group, {
            'op': 'add',
            'path': 'members',
            'value': [{'value': self._user_id(user)}],
        })

    def remove_member(self, user: User, group: Group) -> None:
        self._patch_members(group, {
            'op': 'remove',
            'path': f"members[value eq {_quote(self._user_id(user))}]",
        })

    # Helpers

    def _patch_members(self, group: Group, operation: Dict[str, Any]):
        group_id = self._group_id(group)
        body = {'schemas': [PATCH_OP_SCHEMA], 'Operations': [operation]}
        self.request('PATCH', f'/Groups/{group_id}', body=body)

    def _user_id(self, user: User) -> str:
        if user.id:
            return user.id
        return self.find_user_by_key(user.username).id

    def _group_id(self, group: Group) -> str:
        if group.id:
            return group.id
        return self.find_group_by_key(group.display_name).id

    def _filter(self, path: str, expression: str) -> List[Dict[str, Any]]:
        response = self.request('GET', path, params={'filter': expression})
        return response.get('Resources', [])

    def _list_all(self, path: str) -> List[Dict[str, Any]]:
        """Read every page of a list endpoint (1-based startIndex paging)."""
        resources = []
        start_index = 1

        while True:
            response = self.request('GET', path, params={'startIndex': start_index, 'count': self.page_size})
            page = response.get('Resources', [])
            resources.extend(page)

            total = response.get('totalResults', len(resources))
            if not page or len(resources) >= total:
                break
            start_index += len(page)

        logger.debug(f"Listed {len(resources)} resources from {path}")
        return resources
