"""
Configuration loading and management for the LDAP control plane.

This module handles loading the cluster descriptor from YAML files and
environment variables, with validation and defaults, and turns the result
into immutable cluster and form objects.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

from ldap_control.models import ClusterConfig, EntryForm, TlsMode

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    DEFAULTS = {
        'connection': {
            'connect_timeout': 10,
            'receive_timeout': 10,
            'pool_size': 5,
            'acquire_timeout': 10,
            'max_retries': 3,
            'retry_wait_seconds': 0.5,
            'retry_backoff': 2.0,
            'max_retry_wait_seconds': 8.0,
            'failure_threshold': 3,
        },
        'search': {
            'default_page_size': 100,
            'max_page_size': 1000,
            'session_idle_timeout': 300,
            'max_sessions': None,
        },
        'schema': {
            'refresh_interval': 3600,
        },
        'health': {
            'interval': 30,
            'stale_after': 120,
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
        },
        'notifications': {
            'enable_email': False,
            'email_on_unreachable': True,
            'email_on_recovery': True,
            'smtp_port': 587,
            'smtp_tls': True,
        },
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

        return self.load_dict(self.config)

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate an already-parsed configuration dictionary."""
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration root must be a mapping")
        self.config = config

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}: "
                    f"{len(self.config['clusters'])} cluster(s)")
        return self.config

    @staticmethod
    def password_env_var(cluster_name: str) -> str:
        """Environment variable holding a cluster's bind credential."""
        return f"LDAP_{re.sub(r'[^A-Za-z0-9]', '_', cluster_name).upper()}_BIND_PASSWORD"

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        for cluster in self.config.get('clusters') or []:
            if not isinstance(cluster, dict) or not cluster.get('name'):
                continue
            env_var = self.password_env_var(str(cluster['name']))
            env_value = os.getenv(env_var)
            if env_value:
                cluster['bind_password'] = env_value
                logger.debug(f"Applied environment override for cluster {cluster['name']} bind credential")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        clusters = self.config.get('clusters') or []
        if not clusters:
            errors.append("At least one cluster must be configured")

        names = set()
        for i, cluster in enumerate(clusters):
            prefix = f"clusters[{i}]"
            if not isinstance(cluster, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            for field in ['name', 'host', 'bind_dn', 'bind_password', 'base_dn']:
                if not cluster.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            name = cluster.get('name')
            if name in names:
                errors.append(f"Duplicate cluster name: {name}")
            names.add(name)

            tls = str(cluster.get('tls', TlsMode.LDAPS.value)).lower()
            if tls not in [mode.value for mode in TlsMode]:
                errors.append(f"Invalid tls mode for {prefix}: {tls}")

            port = cluster.get('port')
            if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
                errors.append(f"Invalid port for {prefix}: {port}")

            pool_size = cluster.get('pool_size')
            if pool_size is not None and (not isinstance(pool_size, int) or pool_size < 1):
                errors.append(f"Invalid pool_size for {prefix}: {pool_size}")

        for i, form in enumerate(self.config.get('forms') or []):
            prefix = f"forms[{i}]"
            if not isinstance(form, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            for field in ['name', 'base_dn', 'rdn_attribute', 'object_classes']:
                if not form.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")
            if form.get('cluster') and form['cluster'] not in names:
                errors.append(f"{prefix} references unknown cluster: {form['cluster']}")

        max_sessions = (self.config.get('search') or {}).get('max_sessions')
        if max_sessions is not None and (isinstance(max_sessions, bool) or not isinstance(max_sessions, int)
                                         or max_sessions < 1):
            errors.append(f"Invalid search.max_sessions: {max_sessions}")

        for cluster_name, rules in (self.config.get('access') or {}).items():
            if cluster_name not in names:
                errors.append(f"access references unknown cluster: {cluster_name}")
            if not isinstance(rules, dict):
                errors.append(f"access.{cluster_name} must be a mapping")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.setdefault(section, {})
            for key, value in defaults.items():
                section_config.setdefault(key, value)

        self.config.setdefault('forms', [])
        self.config.setdefault('access', {})

        for cluster in self.config['clusters']:
            tls = str(cluster.get('tls', TlsMode.LDAPS.value)).lower()
            cluster['tls'] = tls
            cluster.setdefault('port', 636 if tls == TlsMode.LDAPS.value else 389)
            cluster.setdefault('verify_tls', True)
            cluster.setdefault('replicated', False)
            cluster.setdefault('read_only', False)


def build_cluster_configs(config: Dict[str, Any]) -> List[ClusterConfig]:
    """
    Build immutable cluster configurations from a loaded config.

    Args:
        config: Validated configuration dictionary

    Returns:
        Cluster configurations in declaration order
    """
    clusters = []
    for raw in config['clusters']:
        cluster = ClusterConfig(
            name=str(raw['name']),
            host=str(raw['host']),
            port=int(raw['port']),
            bind_dn=str(raw['bind_dn']),
            bind_password=str(raw['bind_password']),
            base_dn=str(raw['base_dn']),
            tls_mode=TlsMode(raw['tls']),
            verify_tls=bool(raw.get('verify_tls', True)),
            ca_cert_file=raw.get('ca_cert_file'),
            replicated=bool(raw.get('replicated', False)),
            read_only=bool(raw.get('read_only', False)),
            pool_size=raw.get('pool_size'),
        )
        if cluster.tls_mode is TlsMode.NONE and not cluster.is_loopback:
            logger.warning(f"Cluster {cluster.name} uses an unencrypted connection to {cluster.endpoint}; "
                           f"use ldaps or start_tls for non-loopback deployments")
        if cluster.tls_mode is not TlsMode.NONE and not cluster.verify_tls:
            logger.warning(f"TLS certificate verification disabled for cluster {cluster.name}")
        clusters.append(cluster)
    return clusters


def build_entry_forms(config: Dict[str, Any]) -> List[EntryForm]:
    """Build entry-editing forms from a loaded config."""
    return [
        EntryForm(
            name=str(raw['name']),
            base_dn=str(raw['base_dn']),
            rdn_attribute=str(raw['rdn_attribute']),
            object_classes=tuple(str(oc) for oc in raw['object_classes']),
            cluster=raw.get('cluster'),
        )
        for raw in config.get('forms') or []
    ]

