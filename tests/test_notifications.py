#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import smtplib
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scim_sync import notifications
from scim_sync.models import SyncReport


class TestSendEmail(unittest.TestCase):
    """Test cases for send_email and the notification helpers."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'password123',
            'email_from': 'alerts@example.com',
            'email_to': ['admin@example.com'],
        }

    @patch('scim_sync.notifications.smtplib.SMTP')
    def test_send_email_with_starttls_and_login(self, mock_smtp):
        self.assertTrue(notifications.send_email('Subject', 'Body', self.config))

        server = mock_smtp.return_value
        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'password123')
        server.sendmail.assert_called_once()
        self.assertEqual(server.sendmail.call_args[0][1], ['admin@example.com'])

    @patch('scim_sync.notifications.smtplib.SMTP_SSL')
    def test_port_465_uses_ssl(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465

        self.assertTrue(notifications.send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('scim_sync.notifications.smtplib.SMTP')
    def test_disabled_or_incomplete_config_sends_nothing(self, mock_smtp):
        self.assertFalse(notifications.send_email('S', 'B', dict(self.config, enable_email=False)))
        self.assertFalse(notifications.send_email('S', 'B', dict(self.config, smtp_server=None)))
        self.assertFalse(notifications.send_email('S', 'B', dict(self.config, email_to=[])))
        mock_smtp.assert_not_called()

    @patch('scim_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})

        self.assertFalse(notifications.send_email('Subject', 'Body', self.config))

    @patch('scim_sync.notifications.send_email', return_value=True)
    def test_success_summary_includes_report(self, mock_send):
        report = SyncReport(users_added=2, members_removed=1)

        self.assertTrue(notifications.send_success_summary(report, 75.0, self.config))

        subject, body, _ = mock_send.call_args[0]
        self.assertIn('Successful Completion', subject)
        self.assertIn('Users added: 2', body)
        self.assertIn('Members removed: 1', body)
        self.assertIn('1m 15.0s', body)

    @patch('scim_sync.notifications.send_email', return_value=True)
    def test_success_summary_disabled_by_default(self, mock_send):
        del self.config['email_on_success']

        self.assertFalse(notifications.send_success_summary(SyncReport(), 1.0, self.config))
        mock_send.assert_not_called()

    @patch('scim_sync.notifications.send_email', return_value=True)
    def test_directory_connection_failure(self, mock_send):
        notifications.send_directory_connection_failure('bind failed', self.config, retry_count=3)

        subject, body, _ = mock_send.call_args[0]
        self.assertIn('LDAP Connection Failed', subject)
        self.assertIn('bind failed', body)
        self.assertIn('Retry Attempts: 3', body)

    @patch('scim_sync.notifications.send_email', return_value=True)
    def test_failure_notification_can_be_disabled(self, mock_send):
        self.config['email_on_failure'] = False

        self.assertFalse(notifications.send_failure_notification('Sync Aborted', 'boom', self.config))
        mock_send.assert_not_called()

    @patch('scim_sync.notifications.send_email', return_value=True)
    def test_send_test_email(self, mock_send):
        self.assertTrue(notifications.send_test_email(self.config))
        self.assertIn('smtp.example.com', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
