"""
Provisioning client interface and common HTTP functionality.

This module defines the abstract interface every downstream provisioning target
must implement, along with an HTTP/JSON client base handling TLS, bearer or
basic authentication, error mapping and retries of transient failures.
"""

import json
import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

from scim_sync.errors import (
    ConflictError,
    ProvisioningAPIError,
    ProvisioningAuthenticationError,
)
from scim_sync.models import Group, User
from scim_sync.retry import (
    MaxRetriesExceeded,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)

logger = logging.getLogger(__name__)


class ProvisioningClient(ABC):
    """
    Abstract interface of the downstream identity store.

    Lookups raise NotFoundError on a miss; every other failure surfaces as a
    ProvisioningAPIError.
    """

    @abstractmethod
    def find_user_by_key(self, key: str) -> User:
        pass

    @abstractmethod
    def create_user(self, user: User) -> User:
        pass

    @abstractmethod
    def update_user(self, user: User) -> User:
        pass

    @abstractmethod
    def delete_user(self, user: User) -> None:
        pass

    @abstractmethod
    def find_group_by_key(self, key: str) -> Group:
        pass

    @abstractmethod
    def create_group(self, group: Group) -> Group:
        pass

    @abstractmethod
    def delete_group(self, group: Group) -> None:
        pass

    @abstractmethod
    def is_member(self, user: User, group: Group) -> bool:
        pass

    @abstractmethod
    def add_member(self, user: User, group: Group) -> None:
        pass

    @abstractmethod
    def remove_member(self, user: User, group: Group) -> None:
        pass

    @abstractmethod
    def list_groups(self) -> List[Group]:
        pass

    @abstractmethod
    def list_users(self) -> List[User]:
        pass

    def authenticate(self) -> bool:
        """Perform any authentication step needed before the first call."""
        return True

    def close_connection(self):
        """Release any connection held by the client."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()


class HTTPProvisioningClient(ProvisioningClient):
    """
    Provisioning client base speaking JSON over HTTP(S).

    Subclasses implement the resource operations on top of request().
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize HTTP client.

        Args:
            config: Provisioning configuration dictionary (the 'scim' section)
        """
        self.config = config
        self.name = config.get('name', 'scim')
        self.endpoint = config['endpoint']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)
        self.retry_backoff = error_config.get('retry_backoff', 1.0)

        self.parsed_url = urlparse(self.endpoint)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise ProvisioningAPIError(f"Failed to load CA certificates {ca_cert_file}: {e}")

        cert_file = self.config.get('cert_file')
        if cert_file:
            try:
                self.ssl_context.load_cert_chain(cert_file, self.config.get('key_file'))
                logger.info(f"Loaded client certificate: {cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise ProvisioningAPIError(f"Failed to load client certificate {cert_file}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', 'bearer').lower()

        if auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token') or self.config.get('access_token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        else:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def authenticate(self) -> bool:
        return 'Authorization' in self.auth_headers

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the provisioning API.

        Transient failures (connection errors, 429 and 5xx responses) are retried
        according to the error_handling settings; anything else fails at once.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API path relative to the endpoint
            body: JSON request body
            params: Query string parameters

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            ProvisioningAuthenticationError: On 401/403
            ConflictError: On 409
            ProvisioningAPIError: On any other failure, status_code set for HTTP errors
        """
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params)

        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/scim+json, application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/scim+json'

        try:
            return retry_call(
                self._send,
                (method, full_path, request_body, headers),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=self.retry_backoff,
                exceptions=(ProvisioningAPIError, OSError),
                retry_if=is_retryable_error,
                on_retry=create_retry_callback(f"{method} {path}")
            )
        except MaxRetriesExceeded as e:
            raise ProvisioningAPIError(
                f"{method} {path} failed for {self.name} after {e.attempts} attempts: {e.last_exception}",
                status_code=e.status_code
            ) from e
        except OSError as e:
            raise ProvisioningAPIError(f"Connection error to {self.name}: {e}") from e

    def _send(self, method: str, full_path: str, body: Optional[str], headers: Dict[str, str]) -> Dict[str, Any]:
        conn = self._get_connection()

        logger.debug(f"Making {method} request to {self.host}{full_path}")
        try:
            conn.request(method, full_path, body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except OSError:
            self.close_connection()
            raise

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status >= 400:
            detail = self._error_detail(response_data) or response.reason
            message = f"HTTP {response.status} from {self.name} for {method} {full_path}: {detail}"
            if response.status in (401, 403):
                raise ProvisioningAuthenticationError(message, status_code=response.status)
            if response.status == 409:
                raise ConflictError(message, status_code=response.status)
            raise ProvisioningAPIError(message, status_code=response.status)

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise ProvisioningAPIError(f"Invalid JSON response from {self.name}: {e}")

    @staticmethod
    def _error_detail(response_data: str) -> Optional[str]:
        """Extract the SCIM error 'detail' field, if the body carries one."""
        if not response_data:
            return None
        try:
            return json.loads(response_data).get('detail')
        except (json.JSONDecodeError, AttributeError):
            return None

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
