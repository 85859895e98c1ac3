"""
DynamoDB-backed membership cache.

Membership rows live in a single table with the group key as partition key
('groupName') and the user key as sort key ('username'). Reading one group's
members is a Query on the partition; per-user cleanup falls back to a Scan.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from scim_sync.cache.base import MembershipCache
from scim_sync.errors import CacheError

logger = logging.getLogger(__name__)

GROUP_ATTRIBUTE = 'groupName'
USER_ATTRIBUTE = 'username'


class DynamoDBMembershipCache(MembershipCache):
    """Membership cache stored in a DynamoDB table."""

    def __init__(self, config: Dict[str, Any], table=None):
        """
        Initialize the cache.

        Args:
            config: The 'membership_cache' configuration section
            table: Optional pre-built boto3 Table resource
        """
        self.table_name = config['table_name']
        if table is None:
            resource = boto3.resource('dynamodb', region_name=config.get('region'))
            table = resource.Table(self.table_name)
        self.table = table
        logger.info(f"Using DynamoDB membership cache table {self.table_name}")

    def list_groups(self) -> List[str]:
        groups = set()
        for item in self._scan(ProjectionExpression=GROUP_ATTRIBUTE):
            groups.add(item[GROUP_ATTRIBUTE])
        return sorted(groups)

    def get_group_members(self, group_key: str) -> List[str]:
        return [item[USER_ATTRIBUTE] for item in self._query_group(group_key)]

    def is_member(self, user_key: str, group_key: str) -> bool:
        try:
            response = self.table.get_item(Key=self._key(user_key, group_key))
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"DynamoDB GetItem failed for {group_key}/{user_key}: {e}") from e
        return 'Item' in response

    def add_member(self, user_key: str, group_key: str) -> None:
        try:
            self.table.put_item(Item=self._key(user_key, group_key))
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"DynamoDB PutItem failed for {group_key}/{user_key}: {e}") from e
        logger.debug(f"Added {user_key} to group {group_key} in membership cache")

    def remove_member(self, user_key: str, group_key: str) -> None:
        try:
            self.table.delete_item(Key=self._key(user_key, group_key))
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"DynamoDB DeleteItem failed for {group_key}/{user_key}: {e}") from e
        logger.debug(f"Removed {user_key} from group {group_key} in membership cache")

    def remove_group(self, group_key: str) -> None:
        keys = [self._key(item[USER_ATTRIBUTE], group_key) for item in self._query_group(group_key)]
        self._delete_all(keys)
        logger.debug(f"Purged {len(keys)} membership rows of group {group_key}")

    def remove_user(self, user_key: str) -> None:
        keys = [
            self._key(user_key, item[GROUP_ATTRIBUTE])
            for item in self._scan(FilterExpression=Attr(USER_ATTRIBUTE).eq(user_key))
        ]
        self._delete_all(keys)
        logger.debug(f"Purged {len(keys)} membership rows of user {user_key}")

    @staticmethod
    def _key(user_key: str, group_key: str) -> Dict[str, str]:
        return {GROUP_ATTRIBUTE: group_key, USER_ATTRIBUTE: user_key}

    def _query_group(self, group_key: str) -> Iterator[Dict[str, Any]]:
        yield from self._paginate(
            self.table.query,
            KeyConditionExpression=Key(GROUP_ATTRIBUTE).eq(group_key)
        )

    def _scan(self, **kwargs) -> Iterator[Dict[str, Any]]:
        yield from self._paginate(self.table.scan, **kwargs)

    def _paginate(self, operation, **kwargs) -> Iterator[Dict[str, Any]]:
        """Follow LastEvaluatedKey until the result set is exhausted."""
        start_key: Optional[Dict[str, Any]] = None
        while True:
            if start_key:
                kwargs['ExclusiveStartKey'] = start_key
            try:
                response = operation(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise CacheError(f"DynamoDB read of {self.table_name} failed: {e}") from e

            yield from response.get('Items', [])

            start_key = response.get('LastEvaluatedKey')
            if not start_key:
                break

    def _delete_all(self, keys: List[Dict[str, str]]):
        if not keys:
            return
        try:
            with self.table.batch_writer() as batch:
                for key in keys:
                    batch.delete_item(Key=key)
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"DynamoDB batch delete on {self.table_name} failed: {e}") from e
