# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Administrative access to a running mongod through pymongo
"""

from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .errors import UnreachableError

DEFAULT_MONGO_PORT = 27017
LOOPBACK_HOST = 'localhost'


#####################################
#          DATA STRUCTURES          #
#####################################


class Member(NamedTuple):
    id: int
    host: str
    port: int
    is_self: bool = False

    @property
    def name(self) -> str:
        return f'{self.host}:{self.port}'


class NodeRoleState(NamedTuple):
    initialized: bool
    is_primary: bool
    replica_set_name: Optional[str]
    members: List[Member]


class ConnectionSettings(NamedTuple):
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    ca_file: Optional[str] = None
    certificate_key_file: Optional[str] = None
    timeout_ms: int = 5000

    def client_kwargs(self, host: str) -> Dict[str, Any]:
        kwargs = {
            'host': host,
            'port': self.port,
            'directConnection': True,
            'serverSelectionTimeoutMS': self.timeout_ms,
            'connectTimeoutMS': self.timeout_ms,
        }
        if self.username:
            kwargs.update(username=self.username, password=self.password, authSource='admin')
        if self.tls:
            kwargs['tls'] = True
            if self.ca_file:
                kwargs['tlsCAFile'] = self.ca_file
            if self.certificate_key_file:
                kwargs['tlsCertificateKeyFile'] = self.certificate_key_file
            if is_loopback(host):
                # The server certificate names the domain, not the loopback alias
                kwargs['tlsAllowInvalidHostnames'] = True
        return kwargs


def is_loopback(host: str) -> bool:
    host = host.strip().strip('[]').lower()
    return host == 'localhost' or host == '::1' or host.startswith('127.')


def parse_host(name: str, default_port: int = DEFAULT_MONGO_PORT) -> Tuple[str, int]:
    """
    Splits a "host:port" member name. IPv6 hosts must be bracketed ("[::1]:27017").
    """
    name = name.strip()
    if name.startswith('['):
        host, _, rest = name[1:].partition(']')
        port = rest[1:] if rest.startswith(':') else ''
        return host, int(port) if port else default_port

    host, sep, port = name.rpartition(':')
    if not sep:
        return name, default_port
    return host, int(port)


def members_from_config(config: Dict[str, Any], me: Optional[str] = None) -> List[Member]:
    members = []
    for member in config.get('members', []):
        host, port = parse_host(member['host'])
        members.append(Member(
            id=member['_id'],
            host=host,
            port=port,
            is_self=(member['host'] == me),
        ))
    return members


#####################################
#          MONGO INTERACTION        #
#####################################


class AdminClient(object):
    def __init__(self, client: MongoClient):
        self._client = client
        self._admin = client.admin

    def ping(self) -> Dict[str, Any]:
        return self._admin.command('ping')

    def hello(self) -> Dict[str, Any]:
        return self._admin.command('hello')

    def get_replica_set_status(self) -> Dict[str, Any]:
        return self._admin.command('replSetGetStatus')

    def get_replica_set_config(self) -> Dict[str, Any]:
        return self._admin.command('replSetGetConfig')['config']

    def get_node_role_state(self) -> NodeRoleState:
        # hello does not require authentication, so it is safe on a node without users
        hello = self.hello()
        set_name = hello.get('setName')
        if not set_name:
            return NodeRoleState(initialized=False, is_primary=False, replica_set_name=None, members=[])

        return NodeRoleState(
            initialized=True,
            is_primary=bool(hello.get('isWritablePrimary', hello.get('ismaster'))),
            replica_set_name=set_name,
            members=members_from_config(self.get_replica_set_config(), hello.get('me')),
        )

    def initiate_replica_set(self, name: str, members: Iterable[Member]) -> Dict[str, Any]:
        return self._admin.command('replSetInitiate', {
            '_id': name,
            'members': [{'_id': member.id, 'host': member.name} for member in members],
        })

    def reconfigure_replica_set(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return self._admin.command('replSetReconfig', config)

    def create_user(self, name: str, password: str, roles: List[Dict[str, str]]) -> Dict[str, Any]:
        return self._admin.command('createUser', name, pwd=password, roles=roles)

    def close(self) -> None:
        self._client.close()


def connect_with_fallback(
    domain: str,
    settings: ConnectionSettings,
    client_factory: Callable[..., MongoClient] = MongoClient,
) -> Tuple[AdminClient, str]:
    """
    Connects to the local mongod through its canonical domain, falling back exactly once
    to the loopback address.

    The host used only decides how this process talks to the server. It must never be
    written into the replica set configuration.

    :return: the connected client and the host it connected through
    :exception UnreachableError: if neither host answers a ping
    """
    hosts = [domain] if is_loopback(domain) else [domain, LOOPBACK_HOST]

    last_error = None
    for host in hosts:
        client = None
        try:
            client = client_factory(**settings.client_kwargs(host))
            client.admin.command('ping')
        except PyMongoError as e:
            last_error = e
            if client is not None:
                client.close()
            print(f'Connection to MongoDB using {host} failed: {e}')
            continue
        print(f'Connected to MongoDB using {host}')
        return AdminClient(client), host

    raise UnreachableError(
        'Failed to connect to MongoDB using ' + ' and '.join(hosts),
        diagnostics=str(last_error),
    )
