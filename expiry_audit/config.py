"""
Configuration loading and management for the password never expires audit.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from expiry_audit.audit_log import Severity, DEFAULT_LOG_PATH, DEFAULT_MAX_BYTES

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    SECTIONS = ('ldap', 'baseline', 'audit_log', 'logging', 'error_handling', 'notifications')

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
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        return self.prepare()

    def prepare(self) -> Dict[str, Any]:
        """Apply environment overrides, validation and defaults to the loaded config."""
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
            if current.get(key) is None:
                current[key] = {}
            current = current[key]
            if not isinstance(current, dict):
                # Left for _validate to report
                return
        current[keys[-1]] = value

    def _section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section, replacing an empty YAML value with a dict."""
        section = self.config.get(name)
        if not isinstance(section, dict):
            section = {}
            self.config[name] = section
        return section

    def _mapping(self, name: str) -> Dict[str, Any]:
        """Return a top-level section for reading; anything but a mapping reads as empty."""
        section = self.config.get(name)
        return section if isinstance(section, dict) else {}

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        for name in self.SECTIONS:
            section = self.config.get(name)
            if section is not None and not isinstance(section, dict):
                errors.append(f"{name} section must be a mapping, got {type(section).__name__}")

        ldap_config = self._mapping('ldap')
        required_ldap_fields = ['server_url', 'bind_dn', 'bind_password']
        for field in required_ldap_fields:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        page_size = ldap_config.get('page_size')
        if page_size is not None and (not isinstance(page_size, int) or page_size <= 0):
            errors.append("ldap.page_size must be a positive integer")

        baseline_config = self._mapping('baseline')
        if 'path' in baseline_config and not baseline_config.get('path'):
            errors.append("baseline.path must not be empty")

        audit_config = self._mapping('audit_log')
        if 'level' in audit_config:
            try:
                Severity.from_name(audit_config['level'])
            except ValueError as e:
                errors.append(str(e))

        max_bytes = audit_config.get('max_bytes')
        if max_bytes is not None and (not isinstance(max_bytes, int) or max_bytes <= 0):
            errors.append("audit_log.max_bytes must be a positive integer")

        error_config = self._mapping('error_handling')
        max_retries = error_config.get('max_retries')
        if max_retries is not None and (not isinstance(max_retries, int) or max_retries < 0):
            errors.append("error_handling.max_retries must be a non-negative integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'search_base': '',
            'page_size': 1000,
            'connection_timeout': 10,
            'receive_timeout': 10
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        baseline_config = self._section('baseline')
        baseline_config.setdefault('path', 'baseline.txt')

        # Audit log defaults
        audit_defaults = {
            'path': DEFAULT_LOG_PATH,
            'level': 'INFO',
            'max_bytes': DEFAULT_MAX_BYTES,
            'host': None
        }
        audit_config = self._section('audit_log')
        for key, value in audit_defaults.items():
            audit_config.setdefault(key, value)

        # Diagnostic logging defaults
        logging_defaults = {
            'level': 'INFO',
            'console_output': True,
            'console_level': 'WARNING',
            'log_file': None
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self._section('error_handling')
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_new_accounts': True,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self._section('notifications')
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
