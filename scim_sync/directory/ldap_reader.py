"""
LDAP directory reader.

This module connects to LDAP / Active Directory servers and reads groups,
group members and users for reconciliation. Query strings are LDAP filter
fragments and are AND-ed with the configured base filters unmodified.
"""

import logging
import ssl
import time
from typing import Any, Dict, Iterator, List, Optional

from ldap3 import ALL, BASE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPException, LDAPSocketOpenError
from ldap3.utils.conv import escape_filter_chars

from scim_sync.directory.base import DirectoryReader
from scim_sync.errors import DirectoryConnectionError, DirectoryError
from scim_sync.models import (
    MEMBER_TYPE_GROUP,
    MEMBER_TYPE_USER,
    DirectoryGroup,
    DirectoryUser,
    Member,
)

logger = logging.getLogger(__name__)

# Active Directory userAccountControl flag for disabled accounts
ACCOUNTDISABLE = 0x2

# LDAP_SERVER_SHOW_DELETED_OID
SHOW_DELETED_CONTROL = '1.2.840.113556.1.4.417'

USER_ATTRIBUTES = ['mail', 'givenName', 'sn', 'userAccountControl']
GROUP_ATTRIBUTES = ['cn', 'mail']
MEMBER_ATTRIBUTES = ['objectClass', 'mail']


def _first(value: Any) -> Any:
    """Return the single value of an attribute that ldap3 may hand back as a list."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class LDAPDirectoryReader(DirectoryReader):
    """
    Directory reader for LDAP and Active Directory.

    Users are identified by their 'mail' attribute. Group members are read from
    the group's 'member' attribute; members that are themselves groups are
    reported with kind GROUP and are not expanded.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP reader with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn', '')
        self.deleted_base_dn = config.get('deleted_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.suspended_attribute = config.get('suspended_attribute')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPSocketOpenError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise DirectoryConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for LDAPS or StartTLS, None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        return Tls(**tls_config)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while unbinding: {e}")
            self.connection = None

    def close(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            self._drop_connection()
            logger.debug("LDAP connection closed")
        self._connected = False

    # DirectoryReader interface

    def list_groups(self, query: str = '') -> List[DirectoryGroup]:
        search_filter = self._combine(self.group_filter, query)
        groups = []
        for entry in self._search(self.group_base_dn or self._get_domain_base(), search_filter, GROUP_ATTRIBUTES):
            attributes = entry['attributes']
            name = _first(attributes.get('cn'))
            if not name:
                logger.warning(f"Group entry has no cn: {entry['dn']}")
                continue
            groups.append(DirectoryGroup(name=name, email=_first(attributes.get('mail')) or '', dn=entry['dn']))

        logger.info(f"Retrieved {len(groups)} groups matching {search_filter}")
        return groups

    def list_group_members(self, group: DirectoryGroup) -> List[Member]:
        group_dn = group.dn or self._find_group_dn(group.name)
        entries = list(self._search(group_dn, '(objectClass=*)', ['member'], scope=BASE))
        if not entries:
            raise DirectoryError(f"Group not found: {group_dn}")

        member_dns = entries[0]['attributes'].get('member') or []
        if isinstance(member_dns, str):
            member_dns = [member_dns]

        members = []
        for member_dn in member_dns:
            member_entries = list(self._search(member_dn, '(objectClass=*)', MEMBER_ATTRIBUTES, scope=BASE))
            if not member_entries:
                logger.warning(f"Member entry not readable: {member_dn}")
                continue

            attributes = member_entries[0]['attributes']
            object_classes = [value.lower() for value in (attributes.get('objectClass') or [])]
            kind = MEMBER_TYPE_GROUP if 'group' in object_classes else MEMBER_TYPE_USER
            email = _first(attributes.get('mail'))
            if not email:
                logger.debug(f"Member has no mail attribute, skipping: {member_dn}")
                continue
            members.append(Member(email=email, kind=kind, dn=member_dn))

        logger.debug(f"Group {group.name} has {len(members)} members")
        return members

    def list_users(self, query: str = '') -> List[DirectoryUser]:
        search_filter = self._combine(self.user_filter, query)
        users = []
        for entry in self._search(self.user_base_dn or self._get_domain_base(), search_filter, self._user_attributes()):
            user = self._to_user(entry)
            if user:
                users.append(user)

        logger.debug(f"Retrieved {len(users)} users matching {search_filter}")
        return users

    def list_deleted_users(self) -> List[DirectoryUser]:
        search_filter = '(&(isDeleted=TRUE)(objectClass=user))'
        users = []
        entries = self._search(
            self.deleted_base_dn or self._get_domain_base(),
            search_filter,
            self._user_attributes(),
            controls=[(SHOW_DELETED_CONTROL, True, None)]
        )
        for entry in entries:
            user = self._to_user(entry, suspended=True)
            if user:
                users.append(user)

        logger.info(f"Retrieved {len(users)} deleted users")
        return users

    def user_query_for(self, email: str) -> str:
        return f"(mail={escape_filter_chars(email)})"

    # Helpers

    @staticmethod
    def _combine(base_filter: str, query: str) -> str:
        if not query:
            return base_filter
        return f"(&{base_filter}{query})"

    def _user_attributes(self) -> List[str]:
        if self.suspended_attribute:
            return USER_ATTRIBUTES + [self.suspended_attribute]
        return USER_ATTRIBUTES

    def _to_user(self, entry: Dict[str, Any], suspended: Optional[bool] = None) -> Optional[DirectoryUser]:
        """Map an LDAP entry to a DirectoryUser; entries without mail are skipped."""
        attributes = entry['attributes']
        email = _first(attributes.get('mail'))
        if not email:
            logger.debug(f"User entry has no mail attribute: {entry['dn']}")
            return None

        if suspended is None:
            suspended = self._is_suspended(attributes)

        return DirectoryUser(
            primary_email=email,
            given_name=_first(attributes.get('givenName')) or '',
            family_name=_first(attributes.get('sn')) or '',
            suspended=suspended,
            dn=entry['dn'],
        )

    def _is_suspended(self, attributes: Dict[str, Any]) -> bool:
        account_control = _first(attributes.get('userAccountControl'))
        if account_control not in (None, '', []):
            return bool(int(account_control) & ACCOUNTDISABLE)

        if self.suspended_attribute:
            value = _first(attributes.get(self.suspended_attribute))
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in ('true', '1', 'yes')

        return False

    def _find_group_dn(self, name: str) -> str:
        search_filter = self._combine(self.group_filter, f"(cn={escape_filter_chars(name)})")
        for entry in self._search(self.group_base_dn or self._get_domain_base(), search_filter, ['cn']):
            return entry['dn']
        raise DirectoryError(f"Group not found: {name}")

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                scope=SUBTREE, controls=None) -> Iterator[Dict[str, Any]]:
        """Run a paged search and yield result entries."""
        if not self._connected:
            raise DirectoryError("Not connected to LDAP server")

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        try:
            results = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                controls=controls,
                paged_size=self.page_size,
                generator=True
            )
            for entry in results:
                if entry.get('type') == 'searchResEntry':
                    yield entry
        except LDAPException as e:
            raise DirectoryError(f"LDAP query failed: {e}") from e

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryError("Cannot determine domain base DN")
