"""
Main orchestrator for SCIM Directory Sync.

This module wires the directory reader, the provisioning client and the
membership cache together, runs one reconciliation and maps the outcome to a
process exit code.
"""

import sys
import json
import inspect
import logging
import argparse
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from scim_sync.cache.base import MembershipCache
from scim_sync.cache.dynamodb import DynamoDBMembershipCache
from scim_sync.config import load_config, ConfigurationError
from scim_sync.directory.ldap_reader import LDAPDirectoryReader
from scim_sync.errors import DirectoryConnectionError, SyncError
from scim_sync.logging_setup import setup_logging
from scim_sync.models import SyncReport
from scim_sync.notifications import (
    format_runtime,
    send_directory_connection_failure,
    send_failure_notification,
    send_success_summary,
    send_test_email,
)
from scim_sync.provisioning.base import ProvisioningClient
from scim_sync.reconciler import Reconciler, SyncSettings

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_SYNC_ABORTED = 5


class SyncOrchestrator:
    """
    Runs one directory-to-SCIM reconciliation.

    Owns the collaborators for the duration of the run and releases them at the end.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: Optional[bool] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Overrides sync.dry_run from the configuration when set
        """
        self.config_path = config_path
        self.dry_run = dry_run
        self.config = None
        self.directory = None
        self.provisioning = None
        self.cache = None
        self.report = None
        self.runtime_seconds = 0.0

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        start_time = datetime.now()
        try:
            self._load_configuration()
            self._setup_logging()

            logger.info("Starting SCIM Directory Sync")

            self._connect_directory()
            self.provisioning = self._load_provisioning_client(self.config['scim'])
            if not self.provisioning.authenticate():
                raise SyncError(f"Authentication failed for {self.config['scim'].get('name', 'scim')}")
            self.cache = self._build_cache(self.config.get('membership_cache', {}))

            reconciler = Reconciler(
                self.directory,
                self.provisioning,
                cache=self.cache,
                settings=SyncSettings.from_config(self.config['sync'])
            )
            self.report = reconciler.run()

            self.runtime_seconds = (datetime.now() - start_time).total_seconds()
            self._log_sync_summary()
            self._send_success_notification()
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_directory_connection_failure(str(e))
            return EXIT_DIRECTORY_ERROR
        except SyncError as e:
            logger.error(f"Sync aborted: {e}")
            self._send_failure_notification("Sync Aborted", str(e), type(e).__name__)
            return EXIT_SYNC_ABORTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}", type(e).__name__)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if self.dry_run is not None:
            self.config['sync']['dry_run'] = self.dry_run

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _connect_directory(self):
        """Establish LDAP connection."""
        error_config = self.config.get('error_handling', {})
        self.directory = LDAPDirectoryReader(self.config['ldap'])

        try:
            self.directory.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except DirectoryConnectionError:
            self.directory = None
            raise

    def _load_provisioning_client(self, scim_config: Dict[str, Any]) -> ProvisioningClient:
        """Dynamically load the provisioning module and create the client."""
        module_name = scim_config.get('module', 'scim')

        try:
            module = importlib.import_module(f"scim_sync.provisioning.{module_name}")
        except ImportError as e:
            raise SyncError(f"Failed to import provisioning module {module_name}: {e}")

        client_class = None
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, ProvisioningClient) and
                    not inspect.isabstract(attr)):
                client_class = attr
                break

        if not client_class:
            raise SyncError(f"No ProvisioningClient implementation found in module {module_name}")

        return client_class(scim_config)

    def _build_cache(self, cache_config: Dict[str, Any]) -> Optional[MembershipCache]:
        backend = cache_config.get('backend', 'none')
        if backend == 'dynamodb':
            return DynamoDBMembershipCache(cache_config)
        logger.info("No membership cache configured, group membership is read from the provisioning API")
        return None

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        report: SyncReport = self.report
        heading = "=== Sync Summary (dry run) ===" if report.dry_run else "=== Sync Summary ==="

        logger.info(heading)
        logger.info(f"Total runtime: {format_runtime(self.runtime_seconds)}")
        for name, value in report.as_dict().items():
            if name != 'dry_run':
                logger.info(f"{name.replace('_', ' ').capitalize()}: {value}")

    def _notification_config(self) -> Dict[str, Any]:
        if not self.config:
            return {}
        return self.config.get('notifications', {})

    def _send_failure_notification(self, title: str, error_message: str, error_type: str):
        send_failure_notification(
            title,
            error_message,
            self._notification_config(),
            {'Error Type': error_type}
        )

    def _send_directory_connection_failure(self, error_message: str):
        retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
        send_directory_connection_failure(error_message, self._notification_config(), retry_count)

    def _send_success_notification(self):
        send_success_summary(self.report, self.runtime_seconds, self._notification_config())

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            test_reader = LDAPDirectoryReader(self.config['ldap'])
            test_reader.connect(max_retries=1, retry_wait=1)
            test_reader.close()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except SyncError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            client = self._load_provisioning_client(self.config['scim'])
            client.close_connection()
            health_status['checks']['provisioning'] = {
                'status': 'pass',
                'message': f"Module {self.config['scim'].get('module', 'scim')} loaded successfully"
            }
        except SyncError as e:
            health_status['checks']['provisioning'] = {
                'status': 'fail',
                'message': f'Module loading failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def send_test_email(self) -> bool:
        self._load_configuration()
        return send_test_email(self._notification_config())

    def _cleanup(self):
        """Clean up resources."""
        if self.provisioning:
            self.provisioning.close_connection()
        if self.directory:
            self.directory.close()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Reconcile LDAP users and groups into a SCIM provisioning target')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Compute and log the changes without applying them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            sent = orchestrator.send_test_email()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        if sent:
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
