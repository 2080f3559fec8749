# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

# Structured handling of /etc/mongod.conf.
#
# The live file is parsed with PyYAML, the three sections we own (net, security and
# replication) are rewritten from a DesiredConfig, and every other top-level section
# (storage, systemLog, processManagement, operationProfiling, ...) is carried through
# as parsed.

import copy
import io
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

import yaml

from .errors import MissingCertificateError

# For reference, the document synthesized when no usable mongod.conf exists is:
"""
storage:
  dbPath: /var/lib/mongodb
systemLog:
  destination: file
  logAppend: true
  path: /var/log/mongodb/mongod.log
net:
  port: 27017
  bindIp: 0.0.0.0
  tls:
    mode: requireTLS
    certificateKeyFile: /etc/ssl/mongodb/certificate.pem
    CAFile: /etc/ssl/mongodb/certificate_authority.pem
security:
  authorization: enabled
  keyFile: /etc/mongo-keyfile
replication:
  replSetName: rs0
processManagement:
  timeZoneInfo: /usr/share/zoneinfo
"""

MANAGED_SECTIONS = ('net', 'security', 'replication')

# Keys that weaken certificate validation. They are never written, and are stripped from
# both the tls and the legacy ssl sub-sections whenever TLS is required.
RELAXED_TRUST_KEYS = (
    'allowConnectionsWithoutCertificates',
    'allowInvalidCertificates',
    'allowInvalidHostnames',
    'weakCertificateValidation',
)

# Legacy net.ssl option names and their net.tls replacements. Options not listed keep
# their name when migrated.
LEGACY_SSL_KEYS = {
    'PEMKeyFile': 'certificateKeyFile',
    'PEMKeyPassword': 'certificateKeyFilePassword',
    'sslOnNormalPorts': None,
}

LEGACY_SSL_MODES = {
    'disabled': 'disabled',
    'allowSSL': 'allowTLS',
    'preferSSL': 'preferTLS',
    'requireSSL': 'requireTLS',
}


class TlsMode(Enum):
    OFF = 'off'
    REQUIRE_TLS_SELF_CA = 'requireTLS-selfCA'
    REQUIRE_TLS_LETS_ENCRYPT = 'requireTLS-letsEncrypt'

    @property
    def enabled(self) -> bool:
        return self is not TlsMode.OFF


class SectionState(Enum):
    ABSENT = 'absent'
    MATCHING = 'matching'
    DIVERGENT = 'divergent'


class DocumentState(Enum):
    MISSING = 'missing'
    MALFORMED = 'malformed'
    PARSED = 'parsed'


@dataclass
class DesiredConfig:
    """
    The declared state of a mongod node
    """
    # The TCP port mongod listens on.
    listen_port: int

    # The address (or comma separated addresses) mongod binds to.
    bind_address: str

    # Whether clients must authenticate.
    auth_enabled: bool

    # How (and whether) TLS is required for connections.
    tls_mode: TlsMode

    # The name of the replica set this node belongs to.
    replica_set_name: str

    # PEM file containing the server certificate and its private key. Required when TLS is enabled.
    certificate_key_file: Optional[str] = None

    # PEM file containing the certificate authority chain. Required when TLS is enabled.
    ca_file: Optional[str] = None

    # PEM file used for x509 inter-node authentication. When set (with TLS enabled) it replaces the keyfile.
    cluster_file: Optional[str] = None

    # Shared secret used for inter-node authentication when x509 is not in use.
    keyfile_path: Optional[str] = None

    # Only used when the document has to be synthesized from scratch.
    db_path: str = '/var/lib/mongodb'
    log_path: str = '/var/log/mongodb/mongod.log'

    def validate(self) -> None:
        """
        Ensures the TLS material referenced by this configuration exists and is readable.

        :exception MissingCertificateError: if TLS is enabled and a certificate file is missing.
        """
        if not self.tls_mode.enabled:
            return

        required = [
            ('certificateKeyFile', self.certificate_key_file),
            ('CAFile', self.ca_file),
        ]
        if self.cluster_file:
            required.append(('clusterFile', self.cluster_file))

        for option, path in required:
            if not path:
                raise MissingCertificateError(
                    f'TLS mode "{self.tls_mode.value}" requires a {option} but none was configured'
                )
            if not os.path.isfile(path) or not os.access(path, os.R_OK):
                raise MissingCertificateError(f'{option} "{path}" does not exist or is not readable')


class LiveConfigDocument(NamedTuple):
    """
    The on-disk mongod.conf as it was at the start of a reconciliation pass
    """
    path: str
    state: DocumentState
    raw: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def load(cls, path: str) -> 'LiveConfigDocument':
        try:
            with io.open(path, 'r', encoding='utf8') as conf_file:
                raw = conf_file.read()
        except FileNotFoundError:
            return cls(path=path, state=DocumentState.MISSING)

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            print(f'WARNING: "{path}" is not valid YAML and will be rebuilt: {e}')
            return cls(path=path, state=DocumentState.MALFORMED, raw=raw)

        if not isinstance(data, dict):
            print(f'WARNING: "{path}" does not contain a YAML mapping and will be rebuilt')
            return cls(path=path, state=DocumentState.MALFORMED, raw=raw)

        return cls(path=path, state=DocumentState.PARSED, raw=raw, data=data)

    def section(self, name: str) -> Optional[Dict[str, Any]]:
        if self.data is None:
            return None
        value = self.data.get(name)
        return value if isinstance(value, dict) else None

    @property
    def replica_set_name(self) -> Optional[str]:
        replication = self.section('replication') or {}
        return replication.get('replSetName') or None

    @property
    def tls_required(self) -> bool:
        net_conf = self.section('net') or {}
        tls_conf = net_conf.get('tls')
        if isinstance(tls_conf, dict) and tls_conf.get('mode') == 'requireTLS':
            return True
        ssl_conf = net_conf.get('ssl')
        return isinstance(ssl_conf, dict) and ssl_conf.get('mode') == 'requireSSL'


def _ensure_section(mongod_conf: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = mongod_conf.get(name)
    if not isinstance(value, dict):
        value = {}
        mongod_conf[name] = value
    return value


def _migrate_legacy_ssl(net_conf: Dict[str, Any]) -> Dict[str, Any]:
    tls_conf = net_conf.get('tls')
    if not isinstance(tls_conf, dict):
        tls_conf = {}

    ssl_conf = net_conf.pop('ssl', None)
    if isinstance(ssl_conf, dict):
        for key, value in ssl_conf.items():
            new_key = LEGACY_SSL_KEYS.get(key, key)
            if new_key is None:
                continue
            if key == 'mode':
                value = LEGACY_SSL_MODES.get(value, value)
            tls_conf.setdefault(new_key, value)

    return tls_conf


def modify_net_options(mongod_conf: Dict[str, Any], desired: DesiredConfig) -> None:
    # Reference: https://www.mongodb.com/docs/manual/reference/configuration-options/#net-options
    net_conf = _ensure_section(mongod_conf, 'net')

    net_conf['port'] = desired.listen_port

    # bindIp and bindIpAll are mutually exclusive
    net_conf.pop('bindIpAll', None)
    net_conf['bindIp'] = desired.bind_address

    if not desired.tls_mode.enabled:
        net_conf.pop('tls', None)
        net_conf.pop('ssl', None)
        return

    tls_conf = _migrate_legacy_ssl(net_conf)
    for key in RELAXED_TRUST_KEYS:
        tls_conf.pop(key, None)

    tls_conf['mode'] = 'requireTLS'
    tls_conf['certificateKeyFile'] = desired.certificate_key_file
    tls_conf['CAFile'] = desired.ca_file
    if desired.cluster_file:
        tls_conf['clusterFile'] = desired.cluster_file
    else:
        tls_conf.pop('clusterFile', None)

    net_conf['tls'] = tls_conf


def modify_security(mongod_conf: Dict[str, Any], desired: DesiredConfig) -> None:
    # Reference: https://www.mongodb.com/docs/manual/reference/configuration-options/#security-options
    security_conf = _ensure_section(mongod_conf, 'security')

    if desired.auth_enabled:
        security_conf['authorization'] = 'enabled'
        # transitionToAuth accepts unauthenticated connections
        security_conf.pop('transitionToAuth', None)
    else:
        security_conf['authorization'] = 'disabled'

    if desired.tls_mode.enabled and desired.cluster_file:
        security_conf['clusterAuthMode'] = 'x509'
        security_conf.pop('keyFile', None)
    else:
        security_conf.pop('clusterAuthMode', None)
        if desired.keyfile_path:
            security_conf['keyFile'] = desired.keyfile_path


def modify_replication(mongod_conf: Dict[str, Any], desired: DesiredConfig) -> None:
    replication_conf = _ensure_section(mongod_conf, 'replication')
    replication_conf['replSetName'] = desired.replica_set_name


def synthesize_document(desired: DesiredConfig) -> Dict[str, Any]:
    mongod_conf = {
        'storage': {
            'dbPath': desired.db_path,
        },
        'systemLog': {
            'destination': 'file',
            'logAppend': True,
            'path': desired.log_path,
        },
    }
    modify_net_options(mongod_conf, desired)
    modify_security(mongod_conf, desired)
    modify_replication(mongod_conf, desired)
    mongod_conf['processManagement'] = {'timeZoneInfo': '/usr/share/zoneinfo'}
    return mongod_conf


def render_document(live: LiveConfigDocument, desired: DesiredConfig) -> Dict[str, Any]:
    """
    Computes the document that should be on disk for the given desired configuration.

    The live document is never mutated. Only the net, security and replication sections
    are rewritten; a missing or malformed document is synthesized from the desired
    configuration alone.
    """
    if live.state is not DocumentState.PARSED:
        return synthesize_document(desired)

    mongod_conf = copy.deepcopy(live.data)
    modify_net_options(mongod_conf, desired)
    modify_security(mongod_conf, desired)
    modify_replication(mongod_conf, desired)
    return mongod_conf


def classify(live: LiveConfigDocument, desired: DesiredConfig,
             rendered: Optional[Dict[str, Any]] = None) -> Dict[str, SectionState]:
    if rendered is None:
        rendered = render_document(live, desired)

    states = {}
    for name in MANAGED_SECTIONS:
        current = live.section(name)
        if current is None:
            states[name] = SectionState.ABSENT
        elif current == rendered[name]:
            states[name] = SectionState.MATCHING
        else:
            states[name] = SectionState.DIVERGENT
    return states


def dump_document(mongod_conf: Dict[str, Any]) -> str:
    return yaml.safe_dump(mongod_conf, default_flow_style=False, sort_keys=False)
