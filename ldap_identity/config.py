"""
Configuration loading and management for LDAP Identity Manager.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and turns the directory section into a DirectoryLayout.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class DirectoryLayout:
    """
    Location of users, groups and sequence counters in the directory tree.

    Layout:
        <suffix>
          ou=<administration_ou>   cn=<uid_counter_cn>, cn=<gid_counter_cn>
          ou=<users_ou>            uid=<name> entries
          ou=<groups_ou>           cn=<name> entries
    """

    DEFAULTS = {
        'suffix': 'dc=noname-ev,dc=de',
        'users_ou': 'users',
        'groups_ou': 'groups',
        'administration_ou': 'administration',
        'uid_counter_cn': 'Next POSIX UID',
        'gid_counter_cn': 'Next POSIX GID',
        'home_base': '/home',
        'default_shell': '/usr/bin/bash',
        'default_groups': ['noname'],
        'user_object_classes': ['top', 'account', 'posixAccount', 'ldapPublicKey'],
        'group_object_classes': ['top', 'groupOfEntries', 'posixGroup'],
    }

    # Object classes a search must require to treat an entry as a user/group
    USER_SEARCH_CLASSES = ['account', 'posixAccount']
    GROUP_SEARCH_CLASSES = ['groupOfEntries', 'posixGroup']

    def __init__(self, **settings):
        values = dict(self.DEFAULTS)
        unknown = set(settings) - set(values)
        if unknown:
            raise ConfigurationError(f"Unknown directory settings: {', '.join(sorted(unknown))}")
        values.update({key: value for key, value in settings.items() if value is not None})

        self.suffix = values['suffix']
        self.users_ou = values['users_ou']
        self.groups_ou = values['groups_ou']
        self.administration_ou = values['administration_ou']
        self.uid_counter_cn = values['uid_counter_cn']
        self.gid_counter_cn = values['gid_counter_cn']
        self.home_base = values['home_base'].rstrip('/')
        self.default_shell = values['default_shell']
        self.default_groups = list(values['default_groups'])
        self.user_object_classes = list(values['user_object_classes'])
        self.group_object_classes = list(values['group_object_classes'])

    @classmethod
    def from_config(cls, directory_config: Optional[Dict[str, Any]]) -> 'DirectoryLayout':
        return cls(**(directory_config or {}))

    @property
    def users_base(self) -> str:
        return f"ou={self.users_ou},{self.suffix}"

    @property
    def groups_base(self) -> str:
        return f"ou={self.groups_ou},{self.suffix}"

    @property
    def administration_base(self) -> str:
        return f"ou={self.administration_ou},{self.suffix}"

    @property
    def uid_counter_dn(self) -> str:
        return f"cn={self.uid_counter_cn},{self.administration_base}"

    @property
    def gid_counter_dn(self) -> str:
        return f"cn={self.gid_counter_cn},{self.administration_base}"

    def user_dn(self, uid: str) -> str:
        return f"uid={uid},{self.users_base}"

    def group_dn(self, name: str) -> str:
        return f"cn={name},{self.groups_base}"

    def home_directory(self, uid: str) -> str:
        return f"{self.home_base}/{uid}"

    def __repr__(self):
        return f"DirectoryLayout(suffix={self.suffix!r})"


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    AUTH_METHODS = ('simple', 'external')

    def __init__(self, config_path: Optional[str] = None, test_mode: bool = False):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            test_mode: Allow a missing config file and skip LDAP server checks
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.test_mode = test_mode
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
            if not self.test_mode:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using defaults for test mode")
            self.config = {}
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
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        if not self.test_mode:
            if not ldap_config.get('server_url'):
                errors.append("Missing required LDAP field: server_url")

            auth_method = ldap_config.get('auth_method', 'simple')
            if auth_method not in self.AUTH_METHODS:
                errors.append(f"Invalid LDAP auth_method '{auth_method}' "
                              f"(expected one of: {', '.join(self.AUTH_METHODS)})")
            elif auth_method == 'simple':
                for field in ('bind_dn', 'bind_password'):
                    if not ldap_config.get(field):
                        errors.append(f"Missing required LDAP field: {field}")

        directory_config = self.config.get('directory') or {}
        unknown = set(directory_config) - set(DirectoryLayout.DEFAULTS)
        if unknown:
            errors.append(f"Unknown directory settings: {', '.join(sorted(unknown))}")
        for field in ('default_groups', 'user_object_classes', 'group_object_classes'):
            if field in directory_config and not isinstance(directory_config[field], list):
                errors.append(f"directory.{field} must be a list")

        error_config = self.config.get('error_handling') or {}
        attempts = error_config.get('allocation_attempts')
        if attempts is not None and (not isinstance(attempts, int) or attempts < 1):
            errors.append("error_handling.allocation_attempts must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'auth_method': 'simple',
            'connection_timeout': 10,
            'receive_timeout': 10,
            'verify_ssl': True,
            'start_tls': False,
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        directory_config = self._section('directory')
        for key, value in DirectoryLayout.DEFAULTS.items():
            directory_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'allocation_attempts': 5,
            'allocation_retry_wait_seconds': 0.2,
        }
        error_config = self._section('error_handling')
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # In-memory test directory defaults
        test_defaults = {
            'dump_file': '/tmp/ldapDump.ldif',
            'uid_start': 2000,
            'gid_start': 2000,
            'seed_file': None,
        }
        test_config = self._section('test_directory')
        for key, value in test_defaults.items():
            test_config.setdefault(key, value)

    def _section(self, name: str) -> Dict[str, Any]:
        if not isinstance(self.config.get(name), dict):
            self.config[name] = {}
        return self.config[name]


def load_config(config_path: Optional[str] = None, test_mode: bool = False) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        test_mode: Allow a missing config file and skip LDAP server checks

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path, test_mode=test_mode)
    return loader.load()
