"""
LDAP client for querying accounts whose password never expires.

This module connects to an LDAP / Active Directory server and returns the
accounts carrying the DONT_EXPIRE_PASSWORD flag as AccountRecord objects.
"""

import logging
import ssl
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, BASE, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException

from expiry_audit.models import AccountRecord
from expiry_audit.retry import (
    ConnectRetryPolicy, RetriesExhausted, TransientConnectionError, is_transient_result
)

logger = logging.getLogger(__name__)

# userAccountControl flags
UF_ACCOUNTDISABLE = 0x0002
UF_DONT_EXPIRE_PASSWD = 0x10000

# LDAP_MATCHING_RULE_BIT_AND
BIT_AND_RULE = '1.2.840.113556.1.4.803'

DEFAULT_USER_FILTER = '(&(objectCategory=person)(objectClass=user))'

ACCOUNT_ATTRIBUTES = [
    'userPrincipalName',
    'displayName',
    'sAMAccountName',
    'lastLogonTimestamp',
    'userAccountControl',
]

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = 0x7FFFFFFFFFFFFFFF

LDAP_SUCCESS = 0


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def build_search_filter(user_filter: str = DEFAULT_USER_FILTER, enabled_only: bool = False) -> str:
    """
    Build the search filter for flagged accounts.

    Args:
        user_filter: Filter selecting user objects
        enabled_only: Also exclude accounts with the disabled bit set

    Returns:
        LDAP filter string
    """
    clauses = [user_filter, f"(userAccountControl:{BIT_AND_RULE}:={UF_DONT_EXPIRE_PASSWD})"]
    if enabled_only:
        clauses.append(f"(!(userAccountControl:{BIT_AND_RULE}:={UF_ACCOUNTDISABLE}))")
    return '(&' + ''.join(clauses) + ')'


def convert_filetime(value: Any) -> Optional[datetime]:
    """
    Convert an AD timestamp attribute to an aware datetime.

    Accepts the raw 100-nanosecond FILETIME integer (or its string form) and
    datetimes already decoded by ldap3. Zero and the "never" sentinel map to None.
    """
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        if value.year <= 1601:
            return None
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    try:
        ticks = int(value)
    except (TypeError, ValueError):
        logger.debug(f"Unrecognised timestamp value: {value!r}")
        return None

    if ticks <= 0 or ticks >= FILETIME_NEVER:
        return None
    return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


class LDAPClient:
    """
    LDAP client for the flagged account query.

    Connection attempts are retried according to a ConnectRetryPolicy when the
    server is unreachable or busy. Searches are not retried: a failed search is
    reported to the caller as an error.
    """

    def __init__(self, config: Dict[str, Any], retry_policy: Optional[ConnectRetryPolicy] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: ``ldap`` configuration section
            retry_policy: Connection retry policy; defaults to three attempts five seconds apart
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.search_base = config.get('search_base', '')
        self.user_filter = config.get('user_filter', DEFAULT_USER_FILTER)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.retry_policy = retry_policy or ConnectRetryPolicy()

        self.server = None
        self.connection = None
        self.last_error: Optional[str] = None
        self._connected = False

    def connect(self, retry_policy: Optional[ConnectRetryPolicy] = None) -> bool:
        """
        Establish connection to LDAP server, retrying transient failures.

        Args:
            retry_policy: Overrides the client's policy for this call

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the bind is rejected or every attempt failed
        """
        policy = retry_policy or self.retry_policy

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            policy.run(self._open_and_bind, "LDAP connection")
        except RetriesExhausted as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")
        except LDAPConnectionError:
            raise
        except LDAPException as e:
            raise LDAPConnectionError(f"LDAP connection failed: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        """
        Single connection attempt: open, optional StartTLS, bind.

        Unreachable or busy servers raise a transient error; a rejected bind or
        failed TLS negotiation raises LDAPConnectionError.
        """
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            # Raises LDAPSocketOpenError when the server cannot be reached
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                result = self.connection.result
                if is_transient_result(result):
                    raise TransientConnectionError(f"Server temporarily unavailable: {result}")
                raise LDAPConnectionError(f"Bind failed: {result}")
        except Exception:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def fetch_flagged_accounts(self, enabled_only: bool = False) -> List[AccountRecord]:
        """
        Retrieve accounts whose password is set to never expire.

        Args:
            enabled_only: Return only accounts that are not disabled

        Returns:
            Account records in directory order; entries without a
            userPrincipalName are skipped

        Raises:
            LDAPQueryError: If the search fails or the response is malformed
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = build_search_filter(self.user_filter, enabled_only)
        search_base = self.search_base or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        try:
            response = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=ACCOUNT_ATTRIBUTES,
                paged_size=self.page_size,
                generator=False
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during LDAP query: {e}")

        result = self.connection.result or {}
        if result.get('result', LDAP_SUCCESS) != LDAP_SUCCESS:
            raise LDAPQueryError(f"Search failed: {result.get('description', result)}")

        accounts = []
        skipped = 0
        for entry in response or []:
            if not isinstance(entry, dict):
                raise LDAPQueryError(f"Malformed search response entry: {entry!r}")
            if entry.get('type', 'searchResEntry') != 'searchResEntry':
                continue

            account = self._to_account(entry)
            if account is None:
                skipped += 1
                continue
            if enabled_only and not account.enabled:
                continue
            accounts.append(account)

        if skipped:
            logger.debug(f"Skipped {skipped} entries without a userPrincipalName")
        logger.info(f"Retrieved {len(accounts)} accounts with password never expires")
        return accounts

    def _to_account(self, entry: Dict[str, Any]) -> Optional[AccountRecord]:
        """Convert a search response entry to an AccountRecord."""
        attributes = entry.get('attributes')
        if not isinstance(attributes, dict):
            raise LDAPQueryError(f"Search entry has no attributes: {entry.get('dn')}")

        upn = self._single(attributes.get('userPrincipalName'))
        if not upn:
            return None

        uac = self._single(attributes.get('userAccountControl'))
        try:
            enabled = not (int(uac) & UF_ACCOUNTDISABLE) if uac is not None else True
        except (TypeError, ValueError):
            raise LDAPQueryError(f"Invalid userAccountControl for {upn}: {uac!r}")

        return AccountRecord(
            user_principal_name=str(upn),
            display_name=self._single(attributes.get('displayName')),
            sam_account_name=self._single(attributes.get('sAMAccountName')),
            last_logon=convert_filetime(attributes.get('lastLogonTimestamp')),
            enabled=enabled,
            distinguished_name=entry.get('dn')
        )

    @staticmethod
    def _single(value: Any) -> Any:
        """Collapse ldap3 list values to their first element."""
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connectivity with a single attempt and a root DSE read.

        Never raises; the reason for a failure is kept in ``last_error``.

        Returns:
            True if connection successful, False otherwise
        """
        self.last_error = None
        try:
            if not self._connected:
                self.connect(ConnectRetryPolicy.single_attempt())
            if self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts']
            ):
                return True
            self.last_error = f"Root DSE read failed: {self.connection.result}"
        except (LDAPConnectionError, LDAPException) as e:
            self.last_error = str(e)
        logger.debug(f"Connection test failed: {self.last_error}")
        return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'search_base': self.search_base,
            'page_size': self.page_size,
            'max_attempts': self.retry_policy.max_attempts,
            'last_error': self.last_error
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
