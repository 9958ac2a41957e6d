"""
Main orchestrator for the password never expires audit.

This module contains the run controller that coordinates the directory query,
baseline store, reconciler and audit log for a single initialize or check run,
plus the command-line entry point used by the external scheduler.
"""

import os
import sys
import copy
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from expiry_audit.config import ConfigLoader, ConfigurationError
from expiry_audit.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from expiry_audit.baseline import BaselineStore, BaselineError, BaselineNotFoundError
from expiry_audit.reconciler import reconcile, snapshot_identifiers
from expiry_audit.audit_log import AuditLogger, AuditLogConfig, Severity
from expiry_audit.logging_setup import setup_logging, console_shows
from expiry_audit.models import AccountRecord
from expiry_audit.retry import ConnectRetryPolicy
from expiry_audit.notifications import send_failure_notification, send_new_accounts_alert

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PRECONDITION = 1
EXIT_CONFIGURATION = 2
EXIT_DIRECTORY = 3
EXIT_UNEXPECTED = 4
EXIT_PERSISTENCE = 5


class AuditError(Exception):
    """Base exception for audit run errors."""
    pass


class PreconditionError(AuditError):
    """Raised when a check run is attempted before the baseline is initialized."""
    pass


class RunMode(Enum):
    INITIALIZE = 'initialize'
    CHECK = 'check'


class AuditOrchestrator:
    """
    Run controller for one audit pass.

    Each instance performs a single run: initialize records the current set of
    flagged accounts as the baseline, check reports accounts missing from the
    baseline and then replaces it with the current set.
    """

    def __init__(self, config_path: Optional[str] = None,
                 config: Optional[Dict[str, Any]] = None,
                 ldap_client=None,
                 baseline_store: Optional[BaselineStore] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 baseline_path: Optional[str] = None,
                 log_file: Optional[str] = None):
        """
        Initialize audit orchestrator.

        Args:
            config_path: Path to configuration file
            config: Configuration dictionary used instead of reading config_path
            ldap_client: Directory client; built from configuration if None
            baseline_store: Baseline store; built from configuration if None
            audit_logger: Audit logger; built from configuration if None
            baseline_path: Override for ``baseline.path``
            log_file: Override for ``audit_log.path``
        """
        self.config_path = config_path
        self._config_data = config
        self.config = None
        self.ldap_client = ldap_client
        self.baseline_store = baseline_store
        self.audit_logger = audit_logger
        self.baseline_path = baseline_path
        self.log_file = log_file

        self.new_accounts: List[AccountRecord] = []
        self.run_stats = {
            'mode': None,
            'enabled_only': False,
            'accounts_found': 0,
            'new_accounts': 0,
            'removed_accounts': 0,
            'baseline_size': 0,
            'audit_write_failures': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self, mode: RunMode, enabled_only: bool = False) -> int:
        """
        Run a complete audit pass.

        Args:
            mode: Initialize or check
            enabled_only: Restrict the query to enabled accounts

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.run_stats['mode'] = mode.value
        self.run_stats['enabled_only'] = enabled_only
        self.run_stats['start_time'] = datetime.now()

        try:
            self._load_configuration()
            self._setup_logging()
            self._setup_audit_log()
            self._setup_baseline_store()

            logger.info(f"Starting {mode.value} run (enabled_only={enabled_only})")

            if mode is RunMode.CHECK:
                self._run_check(enabled_only)
            else:
                self._run_initialize(enabled_only)

            self._finish_timing()
            self._log_run_summary()
            return EXIT_SUCCESS

        except ConfigurationError as e:
            self._report_fatal(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except PreconditionError as e:
            self._report_fatal(str(e))
            return EXIT_PRECONDITION
        except (LDAPConnectionError, LDAPQueryError) as e:
            self._report_fatal(f"Directory query failed, baseline left unchanged: {e}")
            self._send_failure_notification("Directory Query Failed", str(e))
            return EXIT_DIRECTORY
        except BaselineError as e:
            self._report_fatal(f"Baseline error: {e}")
            self._send_failure_notification("Baseline Persistence Failed", str(e))
            return EXIT_PERSISTENCE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._report_fatal(f"Unexpected error: {e}")
            self._send_failure_notification("Audit Run Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _run_initialize(self, enabled_only: bool):
        """Record the current flagged accounts as the baseline."""
        self._audit(Severity.INFO, f"Initializing baseline at {self.baseline_store.path} "
                                   f"(enabled_only={enabled_only})")

        accounts = self._query_accounts(enabled_only)
        written = self.baseline_store.save(snapshot_identifiers(accounts))
        self.run_stats['baseline_size'] = written

        self._audit(Severity.INFO, f"Baseline initialized with {written} accounts")

    def _run_check(self, enabled_only: bool):
        """Report accounts absent from the baseline, then replace the baseline."""
        # Must fail before any directory traffic or file creation
        if not self.baseline_store.exists():
            raise PreconditionError(
                f"Baseline file not found: {self.baseline_store.path}. "
                f"Run with --init to create it before running a check."
            )

        try:
            previous = self.baseline_store.load()
        except BaselineNotFoundError as e:
            raise PreconditionError(f"{e}. Run with --init to create it before running a check.")

        self._audit(Severity.INFO, f"Starting check against baseline of {len(previous)} accounts "
                                   f"(enabled_only={enabled_only})")

        accounts = self._query_accounts(enabled_only)
        result = reconcile(previous, accounts)

        self.new_accounts = result.new_accounts
        self.run_stats['new_accounts'] = len(result.new_accounts)
        self.run_stats['removed_accounts'] = len(result.removed_identifiers)

        for account in result.new_accounts:
            self._audit(Severity.CRITICAL,
                        f"New account with password never expires: {account.describe()}")

        if result.removed_identifiers:
            self._audit(Severity.INFO, f"{len(result.removed_identifiers)} accounts no longer flagged: "
                                       f"{', '.join(result.removed_identifiers)}")

        written = self.baseline_store.save(result.baseline)
        self.run_stats['baseline_size'] = written

        self._audit(Severity.INFO, f"Check complete: {len(accounts)} flagged, "
                                   f"{len(result.new_accounts)} new, baseline updated with {written} accounts")

        if result.new_accounts:
            self._send_new_accounts_notification(result.new_accounts)

    def _query_accounts(self, enabled_only: bool) -> List[AccountRecord]:
        """Connect to the directory and fetch the flagged accounts."""
        self._connect_ldap()
        accounts = self.ldap_client.fetch_flagged_accounts(enabled_only=enabled_only)
        self.run_stats['accounts_found'] = len(accounts)
        self._audit(Severity.DEBUG, f"Directory returned {len(accounts)} flagged accounts")
        return accounts

    def _load_configuration(self):
        """Load and validate configuration, then apply command-line overrides."""
        if self._config_data is not None:
            loader = ConfigLoader(self.config_path or '<in-memory>')
            loader.config = copy.deepcopy(self._config_data)
            self.config = loader.prepare()
        else:
            loader = ConfigLoader(self.config_path)
            self.config = loader.load()

        if self.baseline_path:
            self.config['baseline']['path'] = self.baseline_path
        if self.log_file:
            self.config['audit_log']['path'] = self.log_file

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _setup_audit_log(self):
        if self.audit_logger is None:
            try:
                self.audit_logger = AuditLogger(AuditLogConfig.from_dict(self.config.get('audit_log')))
            except ValueError as e:
                raise ConfigurationError(f"Invalid audit_log configuration: {e}")

    def _setup_baseline_store(self):
        if self.baseline_store is None:
            self.baseline_store = BaselineStore(self.config['baseline']['path'])

    def _connect_ldap(self):
        """Establish LDAP connection."""
        if self.ldap_client is None:
            self.ldap_client = LDAPClient(
                self.config['ldap'],
                ConnectRetryPolicy.from_config(self.config.get('error_handling'))
            )

        self.ldap_client.connect()

    def _audit(self, level: Severity, message: str):
        """Write to the audit log, reporting but otherwise ignoring write failures."""
        if self.audit_logger is None:
            return

        error = self.audit_logger.log(level, message)
        if error is not None:
            # Audit log writes are best-effort and never change the run outcome
            self.run_stats['audit_write_failures'] += 1
            logger.error(f"Audit log write failed: {error}")

    def _report_fatal(self, message: str):
        """Report a fatal error to the operator and, if possible, the audit log."""
        logger.error(message)
        self._audit(Severity.CRITICAL, message)

        # Fatal errors must reach the operator even when the console filters them
        if not console_shows((self.config or {}).get('logging'), logging.ERROR):
            print(f"Error: {message}", file=sys.stderr)

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        try:
            notifications_config = (self.config or {}).get('notifications', {})
            send_failure_notification(title, error_message, notifications_config, {
                'Mode': self.run_stats['mode'],
                'Baseline': self.baseline_store.path if self.baseline_store else 'unknown'
            })
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_new_accounts_notification(self, accounts: List[AccountRecord]):
        """Send email notification listing newly flagged accounts."""
        try:
            notifications_config = self.config.get('notifications', {})
            host = self.audit_logger.config.host if self.audit_logger else None
            send_new_accounts_alert(accounts, notifications_config, host)
        except Exception as e:
            logger.error(f"Failed to send new account notification: {e}")

    def _finish_timing(self):
        self.run_stats['end_time'] = datetime.now()
        self.run_stats['runtime_seconds'] = (
            self.run_stats['end_time'] - self.run_stats['start_time']
        ).total_seconds()

    def _log_run_summary(self):
        """Log final run statistics."""
        stats = self.run_stats

        logger.info("=== Audit Summary ===")
        logger.info(f"Mode: {stats['mode']} (enabled_only={stats['enabled_only']})")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Flagged accounts found: {stats['accounts_found']}")
        logger.info(f"New accounts: {stats['new_accounts']}")
        logger.info(f"Accounts no longer flagged: {stats['removed_accounts']}")
        logger.info(f"Baseline size: {stats['baseline_size']}")
        if stats['audit_write_failures']:
            logger.warning(f"Audit log write failures: {stats['audit_write_failures']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the audit setup.

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
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        test_client = self.ldap_client or LDAPClient(self.config['ldap'], ConnectRetryPolicy.single_attempt())
        with test_client:
            connected = test_client.test_connection()
        if connected:
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        else:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {test_client.last_error}'
            }
            health_status['status'] = 'unhealthy'

        baseline_path = self.config['baseline']['path']
        if os.path.isfile(baseline_path):
            health_status['checks']['baseline'] = {
                'status': 'pass',
                'message': f'Baseline present: {baseline_path}'
            }
        else:
            health_status['checks']['baseline'] = {
                'status': 'warn',
                'message': f'Baseline not initialized: {baseline_path}'
            }

        audit_dir = os.path.dirname(os.path.abspath(self.config['audit_log']['path']))
        if os.path.isdir(audit_dir) and not os.access(audit_dir, os.W_OK):
            health_status['checks']['audit_log'] = {
                'status': 'fail',
                'message': f'Audit log directory not writable: {audit_dir}'
            }
            health_status['status'] = 'unhealthy'
        else:
            health_status['checks']['audit_log'] = {
                'status': 'pass',
                'message': f'Audit log path usable: {self.config["audit_log"]["path"]}'
            }

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
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

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            try:
                self.ldap_client.disconnect()
            except Exception as e:
                logger.warning(f"Error during LDAP disconnect: {e}")


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description='Audit directory accounts whose password never expires'
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--init', action='store_true',
                      help='Record the current flagged accounts as the baseline')
    mode.add_argument('--check', action='store_true',
                      help='Report accounts flagged since the last run and update the baseline')
    parser.add_argument('--enabled-only', action='store_true',
                        help='Only consider enabled accounts')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--baseline', help='Override the baseline file path')
    parser.add_argument('--log-file', help='Override the audit log file path')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of an audit run')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import json

    parser = build_parser()
    args = parser.parse_args(argv)

    orchestrator = AuditOrchestrator(
        config_path=args.config,
        baseline_path=args.baseline,
        log_file=args.log_file
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        from expiry_audit.notifications import send_test_notification
        if send_test_notification(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        else:
            print("Failed to send test email")
            sys.exit(1)

    else:
        if not (args.init or args.check):
            parser.error('one of the arguments --init --check is required')

        mode = RunMode.CHECK if args.check else RunMode.INITIALIZE
        sys.exit(orchestrator.run(mode, enabled_only=args.enabled_only))


if __name__ == "__main__":
    main()
