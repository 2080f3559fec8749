# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import io
import json
from typing import (
    Any,
    Mapping,
    Optional
)

from .lib.admin_client import ConnectionSettings
from .lib.mongod_conf import DesiredConfig, LiveConfigDocument, TlsMode

DEFAULT_CONFIG_PATH = './config.json'
DEFAULT_REPLICA_SET_NAME = 'rs0'

# Values that ship in the sample config.json and mean "not configured"
PLACEHOLDER_VALUES = ('', 'null', 'your.domain.com')

# Where the TLS material lives for each mode unless config.json says otherwise
DEFAULT_TLS_PATHS = {
    TlsMode.REQUIRE_TLS_SELF_CA: {
        'certificate_key_file': '/etc/ssl/mongodb/certificate.pem',
        'ca_file': '/etc/ssl/mongodb/certificate_authority.pem',
        'client_certificate_file': '/etc/ssl/mongodb/client.pem',
    },
    TlsMode.REQUIRE_TLS_LETS_ENCRYPT: {
        'certificate_key_file': '/etc/ssl/mongodb.pem',
        'ca_file': '/etc/ssl/mongodb-ca.pem',
        'client_certificate_file': None,
    },
}


def _optional_str(values: Mapping[str, Any], key: str) -> Optional[str]:
    value = values.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return None if value in PLACEHOLDER_VALUES else value


def _int(values: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    value = values.get(key)
    if value is None or value == 'null' or value == '':
        if default is None:
            raise ValueError(f'Missing required configuration value: {key}')
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f'Configuration value {key} must be an integer (got {value!r})') from e


def _bool(values: Mapping[str, Any], key: str, default: bool) -> bool:
    value = values.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on', 'enabled')


class AppConfig:
    """
    Configuration values for a node, read from config.json.
    """
    def __init__(self, values: Mapping[str, Any]):
        # The public DNS name of this node. Other replica set members and clients reach it through this name.
        self.domain_name: Optional[str] = _optional_str(values, 'domain_name')

        # The port mongod listens on. Required.
        self.mongo_port: int = _int(values, 'mongo_port')

        # Credentials of the root administrative user.
        self.db_username: Optional[str] = _optional_str(values, 'db_username')
        self.db_password: Optional[str] = _optional_str(values, 'db_password')

        # Shared secret written to the keyfile for inter-node authentication.
        self.replica_set_key: Optional[str] = _optional_str(values, 'replica_set_key')

        # S3 bucket and region that receive database backups.
        self.aws_bucket: Optional[str] = _optional_str(values, 'aws_bucket')
        self.aws_region: Optional[str] = _optional_str(values, 'aws_region')

        # Where health alerts are sent, and the SMTP relay used to send them.
        self.alert_email: Optional[str] = _optional_str(values, 'alert_email')
        self.smtp_server: Optional[str] = _optional_str(values, 'smtp_server')
        self.smtp_port: int = _int(values, 'smtp_port', default=587)
        self.smtp_user: Optional[str] = _optional_str(values, 'smtp_user')
        self.smtp_pass: Optional[str] = _optional_str(values, 'smtp_pass')

        # Shared token that callers of the monitor report must present.
        self.monitor_token: Optional[str] = _optional_str(values, 'monitor_token')

        # mongod settings.
        self.bind_address: str = _optional_str(values, 'bind_address') or '0.0.0.0'
        self.auth_enabled: bool = _bool(values, 'auth_enabled', default=True)
        self.tls_mode: TlsMode = TlsMode(_optional_str(values, 'tls_mode') or TlsMode.OFF.value)
        self.keyfile_path: Optional[str] = _optional_str(values, 'keyfile_path') or '/etc/mongo-keyfile'
        self.cluster_file: Optional[str] = _optional_str(values, 'cluster_file')
        self.db_path: str = _optional_str(values, 'db_path') or '/var/lib/mongodb'
        self.log_path: str = _optional_str(values, 'log_path') or '/var/log/mongodb/mongod.log'
        self.mongod_conf_path: str = _optional_str(values, 'mongod_conf_path') or '/etc/mongod.conf'
        self.service_name: str = _optional_str(values, 'service_name') or 'mongod'

        tls_paths = DEFAULT_TLS_PATHS.get(self.tls_mode, {})
        self.certificate_key_file: Optional[str] = (
            _optional_str(values, 'certificate_key_file') or tls_paths.get('certificate_key_file')
        )
        self.ca_file: Optional[str] = _optional_str(values, 'ca_file') or tls_paths.get('ca_file')
        self.client_certificate_file: Optional[str] = (
            _optional_str(values, 'client_certificate_file') or tls_paths.get('client_certificate_file')
        )

    @classmethod
    def load(cls, path: str = DEFAULT_CONFIG_PATH) -> 'AppConfig':
        try:
            with io.open(path, 'r', encoding='utf8') as config_file:
                values = json.load(config_file)
        except FileNotFoundError as e:
            raise ValueError(f'Missing {path}!') from e
        except json.JSONDecodeError as e:
            raise ValueError(f'{path} is not valid JSON: {e}') from e
        if not isinstance(values, dict):
            raise ValueError(f'{path} must contain a JSON object')
        return cls(values)

    def resolve_domain(self, override: Optional[str] = None) -> str:
        """
        The command line wins over config.json. There is no hostname fallback.
        """
        domain = (override or '').strip() or self.domain_name
        if not domain:
            raise ValueError(
                'Domain name not provided as argument or in config.json. '
                'Pass --domain or set domain_name in config.json.'
            )
        return domain

    def resolve_replica_set(self, override: Optional[str] = None, live: Optional[LiveConfigDocument] = None) -> str:
        """
        The command line wins, then replication.replSetName in the live mongod.conf, then "rs0".
        """
        if override and override.strip():
            return override.strip()
        if live is not None and live.replica_set_name:
            return str(live.replica_set_name)
        return DEFAULT_REPLICA_SET_NAME

    def desired_config(self, replica_set_name: str) -> DesiredConfig:
        return DesiredConfig(
            listen_port=self.mongo_port,
            bind_address=self.bind_address,
            auth_enabled=self.auth_enabled,
            tls_mode=self.tls_mode,
            replica_set_name=replica_set_name,
            certificate_key_file=self.certificate_key_file if self.tls_mode.enabled else None,
            ca_file=self.ca_file if self.tls_mode.enabled else None,
            cluster_file=self.cluster_file if self.tls_mode.enabled else None,
            keyfile_path=self.keyfile_path,
            db_path=self.db_path,
            log_path=self.log_path,
        )

    def connection_settings(self, with_credentials: bool = True) -> ConnectionSettings:
        return ConnectionSettings(
            port=self.mongo_port,
            username=self.db_username if with_credentials else None,
            password=self.db_password if with_credentials else None,
            tls=self.tls_mode.enabled,
            ca_file=self.ca_file if self.tls_mode.enabled else None,
            certificate_key_file=self.client_certificate_file if self.tls_mode.enabled else None,
        )
