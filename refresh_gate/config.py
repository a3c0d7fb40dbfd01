"""
Configuration Management for the Refresh Gate.

This module handles the token endpoint, token storage and logging settings
with support for an INI configuration file and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from refresh_gate.shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_TEMPLATE = """# Refresh Gate Configuration
# Configuration file: {config_path}

[endpoint]
# Full token endpoint URL; when empty it is derived from the host name
# as <host>/services/oauth2/token
url =

# Request timeout in seconds
timeout = 30

[storage]
# Token storage backend: secure (keyring or encrypted file) or memory
backend = secure

# Keyring service name
service_name = refresh-gate

# Encrypted token file used when no keyring is available
path =

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO

# Log format: standard, detailed, json
format = standard
"""


class GateConfiguration:
    """
    Configuration manager for the Refresh Gate.

    Supports configuration from:
    1. Overrides such as command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'REFRESH_GATE_TOKEN_ENDPOINT': ('endpoint', 'url'),
        'REFRESH_GATE_TIMEOUT': ('endpoint', 'timeout'),
        'REFRESH_GATE_STORAGE_BACKEND': ('storage', 'backend'),
        'REFRESH_GATE_STORAGE_PATH': ('storage', 'path'),
        'REFRESH_GATE_STORAGE_PASSPHRASE': ('storage', 'passphrase'),
        'REFRESH_GATE_LOG_LEVEL': ('logging', 'level'),
        'REFRESH_GATE_LOG_FORMAT': ('logging', 'format'),
        'REFRESH_GATE_LOG_FILE': ('logging', 'file'),
    }

    # Settings kept as the literal text, never coerced to numbers or booleans
    RAW_STRING_SETTINGS = {('storage', 'passphrase')}

    DEFAULTS = {
        'endpoint': {
            'url': None,
            'timeout': 30.0,
        },
        'storage': {
            'backend': 'secure',
            'service_name': 'refresh-gate',
            'path': None,
            'use_keyring': True,
            'passphrase': None,
        },
        'logging': {
            'level': 'INFO',
            'format': 'standard',
            'file': None,
            'audit_file': None,
            'max_size': 10485760,  # 10MB
            'backup_count': 3,
        },
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating it from the template."""
        config_dir = Path.home() / '.refresh-gate'
        user_config_path = config_dir / 'gate.conf'

        if not user_config_path.exists():
            try:
                config_dir.mkdir(parents=True, exist_ok=True)
                user_config_path.write_text(
                    DEFAULT_CONFIG_TEMPLATE.format(config_path=user_config_path)
                )
                logger.info(f"Created default configuration file: {user_config_path}")
            except OSError as e:
                logger.warning(f"Failed to create default configuration: {e}")

        return str(user_config_path)

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser(interpolation=None)
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e,
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                if value == '':
                    section_data[key] = None
                    continue
                if (section_name, key) in self.RAW_STRING_SETTINGS:
                    section_data[key] = value
                    continue
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if (section, key) in self.RAW_STRING_SETTINGS:
                section_data[key] = value
            elif value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                section_data[key] = value

    def _set_defaults(self) -> None:
        """Fill in default values for missing settings."""
        for section, section_defaults in self.DEFAULTS.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if section_data.get(key) is None:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def get_config_file_path(self) -> str:
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def get_token_endpoint_url(self) -> Optional[str]:
        return self.get_config('endpoint.url')

    def get_timeout(self) -> float:
        """Get token endpoint request timeout in seconds."""
        timeout = self.get_config('endpoint.timeout', 30.0)
        try:
            return float(timeout)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid endpoint timeout: {timeout!r}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='endpoint.timeout',
            )

    def get_storage_backend(self) -> str:
        return str(self.get_config('storage.backend', 'secure'))

    def get_storage_service_name(self) -> str:
        return str(self.get_config('storage.service_name', 'refresh-gate'))

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('storage.path')

    def get_storage_passphrase(self) -> Optional[str]:
        passphrase = self.get_config('storage.passphrase')
        return None if passphrase is None else str(passphrase)

    def use_keyring(self) -> bool:
        return bool(self.get_config('storage.use_keyring', True))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')

    def get_log_max_size(self) -> int:
        return int(self.get_config('logging.max_size', 10485760))

    def get_log_backup_count(self) -> int:
        return int(self.get_config('logging.backup_count', 3))
