#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Collaborators are mocked; these tests cover wiring, exit codes and notifications.
"""

import copy
import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scim_sync.config import ConfigurationError
from scim_sync.errors import DirectoryConnectionError, InvariantViolation, ProvisioningAPIError, SyncError
from scim_sync.main import (
    EXIT_CONFIG_ERROR,
    EXIT_DIRECTORY_ERROR,
    EXIT_SUCCESS,
    EXIT_SYNC_ABORTED,
    EXIT_UNEXPECTED_ERROR,
    SyncOrchestrator,
)
from scim_sync.models import SyncReport
from scim_sync.provisioning.scim import SCIMProvisioningClient

TEST_CONFIG = {
    'ldap': {
        'server_url': 'ldaps://dc.test.com',
        'bind_dn': 'CN=svc,DC=test,DC=com',
        'bind_password': 'pw',
    },
    'scim': {
        'module': 'scim',
        'name': 'scim',
        'endpoint': 'https://scim.test.com/scim/v2',
        'access_token': 'token',
    },
    'membership_cache': {'backend': 'none'},
    'sync': {
        'method': 'groups',
        'user_query': '',
        'group_query': '(cn=aws-*)',
        'ignore_users': ['admin@test.com'],
        'ignore_groups': [],
        'include_groups': [],
        'group_key': 'name',
        'deletion_policy': 'absent',
        'dry_run': False,
    },
    'logging': {'level': 'INFO', 'log_dir': 'logs'},
    'error_handling': {'max_retries': 2, 'retry_wait_seconds': 1},
    'notifications': {'enable_email': False},
}


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.config = copy.deepcopy(TEST_CONFIG)

        patchers = {
            'load_config': patch('scim_sync.main.load_config', return_value=self.config),
            'setup_logging': patch('scim_sync.main.setup_logging'),
            'reader': patch('scim_sync.main.LDAPDirectoryReader'),
            'reconciler': patch('scim_sync.main.Reconciler'),
            'load_client': patch.object(SyncOrchestrator, '_load_provisioning_client'),
            'success': patch('scim_sync.main.send_success_summary'),
            'failure': patch('scim_sync.main.send_failure_notification'),
            'ldap_failure': patch('scim_sync.main.send_directory_connection_failure'),
        }
        self.mocks = {}
        for name, patcher in patchers.items():
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)

        self.provisioning = Mock()
        self.provisioning.authenticate.return_value = True
        self.mocks['load_client'].return_value = self.provisioning
        self.report = SyncReport(users_added=1)
        self.mocks['reconciler'].return_value.run.return_value = self.report


class TestRun(OrchestratorTestCase):
    """Test cases for SyncOrchestrator.run."""

    def test_successful_sync(self):
        orchestrator = SyncOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)

        args, kwargs = self.mocks['reconciler'].call_args
        self.assertIs(args[1], self.provisioning)
        self.assertIsNone(kwargs['cache'])
        self.assertEqual(kwargs['settings'].group_query, '(cn=aws-*)')
        self.assertEqual(kwargs['settings'].ignore_users, frozenset({'admin@test.com'}))
        self.mocks['success'].assert_called_once()
        self.assertIs(self.mocks['success'].call_args[0][0], self.report)

    def test_resources_released(self):
        SyncOrchestrator().run()

        self.provisioning.close_connection.assert_called_once()
        self.mocks['reader'].return_value.close.assert_called_once()

    def test_dry_run_override(self):
        orchestrator = SyncOrchestrator(dry_run=True)

        orchestrator.run()

        self.assertTrue(self.mocks['reconciler'].call_args[1]['settings'].dry_run)

    def test_configuration_error(self):
        self.mocks['load_config'].side_effect = ConfigurationError("bad")

        self.assertEqual(SyncOrchestrator().run(), EXIT_CONFIG_ERROR)
        self.mocks['reconciler'].assert_not_called()

    def test_directory_connection_error(self):
        self.mocks['reader'].return_value.connect.side_effect = DirectoryConnectionError("unreachable")

        self.assertEqual(SyncOrchestrator().run(), EXIT_DIRECTORY_ERROR)
        self.mocks['ldap_failure'].assert_called_once()
        self.mocks['reconciler'].assert_not_called()

    def test_aborted_reconciliation(self):
        for error in (ProvisioningAPIError("HTTP 500", status_code=500), InvariantViolation("stale row")):
            self.mocks['reconciler'].return_value.run.side_effect = error

            self.assertEqual(SyncOrchestrator().run(), EXIT_SYNC_ABORTED)

        self.assertEqual(self.mocks['failure'].call_count, 2)
        self.mocks['success'].assert_not_called()

    def test_authentication_failure(self):
        self.provisioning.authenticate.return_value = False

        self.assertEqual(SyncOrchestrator().run(), EXIT_SYNC_ABORTED)
        self.mocks['reconciler'].assert_not_called()

    def test_unexpected_error(self):
        self.mocks['reconciler'].return_value.run.side_effect = RuntimeError("boom")

        self.assertEqual(SyncOrchestrator().run(), EXIT_UNEXPECTED_ERROR)
        self.mocks['failure'].assert_called_once()

    @patch('scim_sync.main.DynamoDBMembershipCache')
    def test_dynamodb_cache_wired(self, mock_cache):
        self.config['membership_cache'] = {'backend': 'dynamodb', 'table_name': 'members'}

        SyncOrchestrator().run()

        mock_cache.assert_called_once_with(self.config['membership_cache'])
        self.assertIs(self.mocks['reconciler'].call_args[1]['cache'], mock_cache.return_value)


class TestProvisioningModuleLoading(unittest.TestCase):
    """Test cases for dynamic provisioning module loading."""

    def test_loads_scim_client(self):
        client = SyncOrchestrator()._load_provisioning_client(copy.deepcopy(TEST_CONFIG['scim']))

        self.assertIsInstance(client, SCIMProvisioningClient)

    def test_unknown_module(self):
        config = dict(TEST_CONFIG['scim'], module='does_not_exist')

        with self.assertRaises(SyncError):
            SyncOrchestrator()._load_provisioning_client(config)


class TestHealthCheck(OrchestratorTestCase):
    """Test cases for health_check."""

    def test_healthy(self):
        self.mocks['load_client'].return_value = Mock()

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['ldap']['status'], 'pass')
        self.assertEqual(status['checks']['provisioning']['status'], 'pass')
        self.assertEqual(status['checks']['notifications']['status'], 'skip')

    def test_configuration_failure(self):
        self.mocks['load_config'].side_effect = ConfigurationError("missing file")

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')

    def test_ldap_failure(self):
        self.mocks['reader'].return_value.connect.side_effect = DirectoryConnectionError("unreachable")

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['ldap']['status'], 'fail')

    def test_incomplete_notification_config(self):
        self.config['notifications'] = {'enable_email': True, 'smtp_server': 'smtp.test.com'}

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['checks']['notifications']['status'], 'fail')


if __name__ == '__main__':
    unittest.main()
