# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Any, Dict, Optional
from urllib.parse import quote_plus, urlencode

from .admin_client import parse_host

MEMBER_STATES = {
    'PRIMARY': 'primary',
    'SECONDARY': 'secondary',
}


def build_connection_info(
    status: Dict[str, Any],
    username: str,
    password: str,
    replica_set: str,
    tls: bool,
    ca_file: Optional[str] = None,
    client_cert: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Builds the connection details clients need from a replSetGetStatus document
    """
    hosts = []
    for member in status.get('members', []):
        hostname, port = parse_host(member['name'])
        hosts.append({
            'hostname': hostname,
            'port': port,
            'state': MEMBER_STATES.get(member.get('stateStr'), 'other'),
        })

    options = {}
    if tls:
        options['tls'] = 'true'
        if ca_file:
            options['tlsCAFile'] = ca_file
        if client_cert:
            options['tlsCertificateKeyFile'] = client_cert
    options['authSource'] = 'admin'
    options['replicaSet'] = replica_set

    seed_list = ','.join(f'{host["hostname"]}:{host["port"]}' for host in hosts)
    connection_string = 'mongodb://{user}:{password}@{seeds}/?{options}'.format(
        user=quote_plus(username),
        password=quote_plus(password),
        seeds=seed_list,
        options=urlencode(options, safe='/'),
    )

    return {
        'username': username,
        'password': password,
        'hosts': hosts,
        'tls_enabled': tls,
        'replica_set': replica_set,
        'connection_string': connection_string,
    }
