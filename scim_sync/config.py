"""
Configuration loading and management for SCIM Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from scim_sync.keys import GROUP_KEY_POLICIES
from scim_sync.reconciler import DELETION_POLICIES, SYNC_METHODS, as_list

logger = logging.getLogger(__name__)

CACHE_BACKENDS = ('dynamodb', 'none')

LIST_SETTINGS = ('ignore_users', 'ignore_groups', 'include_groups')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'scim.access_token': 'SCIM_ACCESS_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields, collecting every problem."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ('server_url', 'bind_dn', 'bind_password'):
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        scim_config = self.config.get('scim') or {}
        if not scim_config.get('endpoint'):
            errors.append("Missing required SCIM field: endpoint")
        auth = scim_config.get('auth') or {}
        if not scim_config.get('access_token') and not auth:
            errors.append("Missing required SCIM field: access_token")

        cache_config = self.config.get('membership_cache') or {}
        backend = cache_config.get('backend', 'none')
        if backend not in CACHE_BACKENDS:
            errors.append(f"Invalid membership_cache.backend '{backend}', expected one of {', '.join(CACHE_BACKENDS)}")
        elif backend == 'dynamodb' and not cache_config.get('table_name'):
            errors.append("Missing membership_cache.table_name for dynamodb backend")

        sync_config = self.config.get('sync') or {}
        method = sync_config.get('method', SYNC_METHODS[0])
        if method not in SYNC_METHODS:
            errors.append(f"Invalid sync.method '{method}', expected one of {', '.join(SYNC_METHODS)}")
        group_key = sync_config.get('group_key', GROUP_KEY_POLICIES[0])
        if group_key not in GROUP_KEY_POLICIES:
            errors.append(f"Invalid sync.group_key '{group_key}', expected one of {', '.join(GROUP_KEY_POLICIES)}")
        policy = sync_config.get('deletion_policy', DELETION_POLICIES[0])
        if policy not in DELETION_POLICIES:
            errors.append(f"Invalid sync.deletion_policy '{policy}', expected one of {', '.join(DELETION_POLICIES)}")
        for field in LIST_SETTINGS:
            value = sync_config.get(field)
            if value is not None and not isinstance(value, (str, list)):
                errors.append(f"sync.{field} must be a list or a comma-separated string")
        if not isinstance(sync_config.get('dry_run', False), bool):
            errors.append("sync.dry_run must be true or false")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'group_base_dn': '',
            'user_filter': '(objectClass=person)',
            'group_filter': '(objectClass=group)',
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        scim_defaults = {
            'module': 'scim',
            'name': 'scim',
            'verify_ssl': True,
            'timeout': 30,
            'page_size': 100,
        }
        scim_config = self.config.setdefault('scim', {})
        for key, value in scim_defaults.items():
            scim_config.setdefault(key, value)

        cache_config = self.config.get('membership_cache') or {}
        cache_config.setdefault('backend', 'none')
        self.config['membership_cache'] = cache_config

        sync_defaults = {
            'method': SYNC_METHODS[0],
            'user_query': '',
            'group_query': '',
            'group_key': GROUP_KEY_POLICIES[0],
            'deletion_policy': DELETION_POLICIES[0],
            'dry_run': False,
        }
        sync_config = self.config.get('sync') or {}
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)
        for field in LIST_SETTINGS:
            sync_config[field] = as_list(sync_config.get(field))
        self.config['sync'] = sync_config

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 1.0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Collaborators read their retry settings from their own section
        ldap_config.setdefault('error_handling', error_config)
        scim_config.setdefault('error_handling', error_config)

        notification_defaults = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
