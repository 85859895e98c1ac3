#!/usr/bin/env python3
"""
Unit tests for the SCIM provisioning client.

HTTP traffic is mocked at the http.client connection level.
"""

import json
import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scim_sync.errors import (
    ConflictError,
    NotFoundError,
    ProvisioningAPIError,
    ProvisioningAuthenticationError,
)
from scim_sync.models import Group, User
from scim_sync.provisioning.scim import SCIMProvisioningClient


def http_response(status=200, body=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = json.dumps(body).encode('utf-8') if body is not None else b''
    return response


class SCIMClientTestCase(unittest.TestCase):

    def setUp(self):
        self.config = {
            'name': 'identity-center',
            'endpoint': 'https://scim.example.com/scim/v2',
            'access_token': 'secret-token',
            'page_size': 2,
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0, 'retry_backoff': 1.0},
        }
        connection_patcher = patch('scim_sync.provisioning.base.HTTPSConnection')
        self.mock_connection_class = connection_patcher.start()
        self.addCleanup(connection_patcher.stop)
        self.connection = self.mock_connection_class.return_value

        sleep_patcher = patch('scim_sync.retry.time.sleep')
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

        self.client = SCIMProvisioningClient(self.config)

    def respond(self, *responses):
        self.connection.getresponse.side_effect = list(responses)

    def sent(self, index=-1):
        """Return (method, path, body, headers) of a recorded request."""
        method, path, body, headers = self.connection.request.call_args_list[index][0]
        return method, path, json.loads(body) if body else None, headers


class TestUsers(SCIMClientTestCase):
    """Test cases for user operations."""

    def test_find_user_by_key(self):
        self.respond(http_response(body={
            'totalResults': 1,
            'Resources': [{'id': 'u1', 'userName': 'a@example.com',
                           'name': {'givenName': 'Ada', 'familyName': 'Lovelace'}, 'active': True}]
        }))

        user = self.client.find_user_by_key('a@example.com')

        self.assertEqual(user, User('a@example.com', 'Ada', 'Lovelace', True, 'u1'))
        method, path, _, headers = self.sent()
        self.assertEqual(method, 'GET')
        self.assertTrue(path.startswith('/scim/v2/Users?'))
        self.assertIn('filter=userName+eq+%22a%40example.com%22', path)
        self.assertEqual(headers['Authorization'], 'Bearer secret-token')

    def test_find_missing_user_raises_not_found(self):
        self.respond(http_response(body={'totalResults': 0, 'Resources': []}))

        with self.assertRaises(NotFoundError) as context:
            self.client.find_user_by_key('ghost@example.com')

        self.assertEqual(context.exception.key, 'ghost@example.com')

    def test_create_user(self):
        self.respond(http_response(201, body={'id': 'u9', 'userName': 'a@example.com', 'active': False}))

        created = self.client.create_user(User('a@example.com', 'Ada', 'Lovelace', active=False))

        self.assertEqual(created.id, 'u9')
        method, path, body, _ = self.sent()
        self.assertEqual((method, path), ('POST', '/scim/v2/Users'))
        self.assertEqual(body['userName'], 'a@example.com')
        self.assertEqual(body['name'], {'givenName': 'Ada', 'familyName': 'Lovelace'})
        self.assertFalse(body['active'])

    def test_update_user_puts_full_resource(self):
        self.respond(http_response(body={'id': 'u1', 'userName': 'a@example.com', 'active': True}))

        self.client.update_user(User('a@example.com', 'Ada', 'Byron', True, 'u1'))

        method, path, body, _ = self.sent()
        self.assertEqual((method, path), ('PUT', '/scim/v2/Users/u1'))
        self.assertEqual(body['id'], 'u1')
        self.assertEqual(body['name']['familyName'], 'Byron')

    def test_delete_user_404_is_not_found(self):
        self.respond(http_response(404, body={'detail': 'Resource not found'}, reason='Not Found'))

        with self.assertRaises(NotFoundError):
            self.client.delete_user(User('a@example.com', id='u1'))

    def test_delete_user_without_id_looks_it_up(self):
        self.respond(
            http_response(body={'totalResults': 1, 'Resources': [{'id': 'u7', 'userName': 'a@example.com'}]}),
            http_response(204)
        )

        self.client.delete_user(User('a@example.com'))

        method, path, _, _ = self.sent()
        self.assertEqual((method, path), ('DELETE', '/scim/v2/Users/u7'))

    def test_list_users_follows_pages(self):
        self.respond(
            http_response(body={'totalResults': 3, 'Resources': [
                {'id': 'u1', 'userName': 'a@example.com'}, {'id': 'u2', 'userName': 'b@example.com'}]}),
            http_response(body={'totalResults': 3, 'Resources': [{'id': 'u3', 'userName': 'c@example.com'}]})
        )

        users = self.client.list_users()

        self.assertEqual([u.username for u in users], ['a@example.com', 'b@example.com', 'c@example.com'])
        self.assertIn('startIndex=1', self.sent(0)[1])
        self.assertIn('startIndex=3', self.sent(1)[1])
        self.assertIn('count=2', self.sent(1)[1])


class TestGroupsAndMembership(SCIMClientTestCase):
    """Test cases for group and membership operations."""

    def test_create_group_conflict(self):
        self.respond(http_response(409, body={'detail': 'Duplicate displayName'}, reason='Conflict'))

        with self.assertRaises(ConflictError) as context:
            self.client.create_group(Group('eng'))

        self.assertEqual(context.exception.status_code, 409)
        self.assertIn('Duplicate displayName', str(context.exception))

    def test_is_member(self):
        self.respond(http_response(body={'totalResults': 1, 'Resources': [{'id': 'g1'}]}))

        self.assertTrue(self.client.is_member(User('a@example.com', id='u1'), Group('eng', 'g1')))
        self.assertIn('members+eq+%22u1%22', self.sent()[1])

    def test_is_not_member(self):
        self.respond(http_response(body={'totalResults': 0, 'Resources': []}))

        self.assertFalse(self.client.is_member(User('a@example.com', id='u1'), Group('eng', 'g1')))

    def test_add_member_patch(self):
        self.respond(http_response(204))

        self.client.add_member(User('a@example.com', id='u1'), Group('eng', 'g1'))

        method, path, body, _ = self.sent()
        self.assertEqual((method, path), ('PATCH', '/scim/v2/Groups/g1'))
        self.assertEqual(body['Operations'], [{'op': 'add', 'path': 'members', 'value': [{'value': 'u1'}]}])

    def test_remove_member_patch(self):
        self.respond(http_response(204))

        self.client.remove_member(User('a@example.com', id='u1'), Group('eng', 'g1'))

        _, _, body, _ = self.sent()
        self.assertEqual(body['Operations'], [{'op': 'remove', 'path': 'members[value eq "u1"]'}])

    def test_delete_group(self):
        self.respond(http_response(204))

        self.client.delete_group(Group('eng', 'g1'))

        self.assertEqual(self.sent()[:2], ('DELETE', '/scim/v2/Groups/g1'))


class TestErrorsAndRetries(SCIMClientTestCase):
    """Test cases for error mapping and transient retries."""

    def test_authentication_error_not_retried(self):
        self.respond(http_response(401, reason='Unauthorized'))

        with self.assertRaises(ProvisioningAuthenticationError):
            self.client.list_groups()

        self.assertEqual(self.connection.request.call_count, 1)

    def test_transient_error_retried(self):
        self.respond(
            http_response(503, reason='Service Unavailable'),
            http_response(body={'totalResults': 0, 'Resources': []})
        )

        self.assertEqual(self.client.list_groups(), [])
        self.assertEqual(self.connection.request.call_count, 2)
        self.mock_sleep.assert_called_once()

    def test_persistent_server_error_raises_with_status(self):
        self.respond(*[http_response(500, reason='Internal Server Error') for _ in range(3)])

        with self.assertRaises(ProvisioningAPIError) as context:
            self.client.list_groups()

        self.assertEqual(context.exception.status_code, 500)
        self.assertEqual(self.connection.request.call_count, 3)

    def test_connection_error_wrapped(self):
        self.connection.request.side_effect = ConnectionRefusedError("connection refused")

        with self.assertRaises(ProvisioningAPIError):
            self.client.list_users()

        self.assertEqual(self.connection.request.call_count, 3)

    def test_authenticate_requires_token(self):
        self.assertTrue(self.client.authenticate())

        config = dict(self.config, access_token=None)
        self.assertFalse(SCIMProvisioningClient(config).authenticate())


if __name__ == '__main__':
    unittest.main()
