# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Brings a node to the correct replica set membership state
"""

import json
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Tuple

from pymongo.errors import OperationFailure, PyMongoError

from .admin_client import (
    AdminClient,
    ConnectionSettings,
    Member,
    NodeRoleState,
    connect_with_fallback,
    is_loopback,
    parse_host,
)
from .errors import AmbiguousStateError, InitiateFailedError, ReconfigFailedError, UserCreationError

# Server error code returned by createUser when the user already exists
USER_ALREADY_EXISTS_CODE = 51003


class NodeRole(Enum):
    PRIMARY = 'primary'
    SECONDARY = 'secondary'


class BootstrapState(Enum):
    UNINITIALIZED = 'Uninitialized'
    SECONDARY_MEMBER = 'SecondaryMember'
    PRIMARY_UNINITIALIZED = 'PrimaryUninitialized'
    PRIMARY_INITIALIZED = 'PrimaryInitialized'


class BootstrapAction(Enum):
    INITIATE = 'initiate'
    RECONFIG = 'reconfig'
    NOOP = 'noop'


class MemberReplacement(NamedTuple):
    member_id: int
    old_host: str
    new_host: str


class ReconfigIntent(NamedTuple):
    replacements: List[MemberReplacement]
    members: List[Member]

    @property
    def needed(self) -> bool:
        return bool(self.replacements)


class BootstrapResult(NamedTuple):
    state: BootstrapState
    action: BootstrapAction
    intent: Optional[ReconfigIntent] = None
    host_used: Optional[str] = None


def compute_reconfig_intent(members: List[Member], domain: str) -> ReconfigIntent:
    """
    Replaces every loopback member host with the canonical domain, keeping the member's
    id and port. Members that already use another hostname are left untouched, even if
    that hostname differs from ``domain``.

    :exception ValueError: if ``domain`` is itself a loopback address
    """
    if is_loopback(domain):
        raise ValueError(f'"{domain}" is a loopback address and cannot be used as a replica set member host')

    replacements = []
    new_members = []
    for member in members:
        if is_loopback(member.host):
            updated = member._replace(host=domain)
            replacements.append(MemberReplacement(
                member_id=member.id,
                old_host=member.name,
                new_host=updated.name,
            ))
            new_members.append(updated)
        else:
            new_members.append(member)

    return ReconfigIntent(replacements=replacements, members=new_members)


def _bump_version(config):
    config['version'] = int(config.get('version', 1)) + 1
    return config


class ClusterBootstrapper(object):
    """
    Decides the replica set role of this node and issues at most one of initiate,
    reconfig or nothing per invocation. Nothing is retried: the operator re-runs the
    tool, which observes the new state and takes the no-op path.
    """

    def __init__(
        self,
        domain: str,
        role: NodeRole,
        replica_set_name: str,
        settings: ConnectionSettings,
        connector: Callable[[str, ConnectionSettings], Tuple[AdminClient, str]] = connect_with_fallback,
    ):
        if is_loopback(domain):
            raise ValueError(f'The canonical domain must not be a loopback address (got "{domain}")')
        self._domain = domain
        self._role = role
        self._replica_set_name = replica_set_name
        self._settings = settings
        self._connector = connector

    @property
    def member_name(self) -> str:
        return f'{self._domain}:{self._settings.port}'

    def determine_state(self, node_state: NodeRoleState) -> BootstrapState:
        if self._role is NodeRole.PRIMARY:
            if not node_state.initialized:
                return BootstrapState.PRIMARY_UNINITIALIZED
            if node_state.is_primary:
                return BootstrapState.PRIMARY_INITIALIZED
            return BootstrapState.SECONDARY_MEMBER

        if node_state.initialized:
            return BootstrapState.SECONDARY_MEMBER
        return BootstrapState.UNINITIALIZED

    def operator_guidance(self) -> str:
        return (
            f'This node does not enrol itself. From the primary, run:\n'
            f'    mongod-provisioner members add {self.member_name}'
        )

    def bootstrap(self) -> BootstrapResult:
        """
        :exception UnreachableError: if the node answers neither on its domain nor on loopback
        :exception AmbiguousStateError: if the replica set state could not be read
        :exception InitiateFailedError: if replSetInitiate is rejected
        :exception ReconfigFailedError: if replSetReconfig is rejected
        """
        client, host_used = self._connector(self._domain, self._settings)
        try:
            try:
                node_state = client.get_node_role_state()
            except PyMongoError as e:
                raise AmbiguousStateError('Failed to read the replica set state', diagnostics=str(e)) from e

            state = self.determine_state(node_state)
            print(f'Node role = {self._role.value}, replica set state = {state.value}')

            if (node_state.replica_set_name
                    and node_state.replica_set_name != self._replica_set_name):
                print(
                    f'WARNING: this node belongs to replica set "{node_state.replica_set_name}", '
                    f'not "{self._replica_set_name}"'
                )

            if state is BootstrapState.PRIMARY_UNINITIALIZED:
                self._initiate(client)
                return BootstrapResult(
                    state=BootstrapState.PRIMARY_INITIALIZED,
                    action=BootstrapAction.INITIATE,
                    host_used=host_used,
                )

            if state is BootstrapState.PRIMARY_INITIALIZED:
                intent = compute_reconfig_intent(node_state.members, self._domain)
                if not intent.needed:
                    print('Replica set configuration already uses non-loopback hostnames. No update needed.')
                    return BootstrapResult(state=state, action=BootstrapAction.NOOP, intent=intent, host_used=host_used)
                self._reconfigure(client, intent)
                return BootstrapResult(state=state, action=BootstrapAction.RECONFIG, intent=intent, host_used=host_used)

            print(self.operator_guidance())
            return BootstrapResult(state=state, action=BootstrapAction.NOOP, host_used=host_used)
        finally:
            client.close()

    def _initiate(self, client: AdminClient) -> None:
        member = Member(id=0, host=self._domain, port=self._settings.port)
        print(f'Initializing replica set "{self._replica_set_name}" with member "{member.name}"...')
        try:
            client.initiate_replica_set(self._replica_set_name, [member])
        except PyMongoError as e:
            raise InitiateFailedError(
                f'replSetInitiate failed for "{self._replica_set_name}". It will not be retried automatically.',
                diagnostics=str(e),
            ) from e
        print(f'Replica set "{self._replica_set_name}" initiated')

    def _reconfigure(self, client: AdminClient, intent: ReconfigIntent) -> None:
        print(json.dumps(
            {
                'action': 'reconfig',
                'replacements': [replacement._asdict() for replacement in intent.replacements],
            },
            indent=2,
        ))
        by_id = {replacement.member_id: replacement for replacement in intent.replacements}
        try:
            config = client.get_replica_set_config()
            for member in config.get('members', []):
                replacement = by_id.get(member['_id'])
                if replacement:
                    member['host'] = replacement.new_host
            client.reconfigure_replica_set(_bump_version(config))
        except PyMongoError as e:
            raise ReconfigFailedError('replSetReconfig failed', diagnostics=str(e)) from e
        print('Replica set configuration updated to use the domain name')

    #####################################
    #          MEMBER MANAGEMENT        #
    #####################################

    def add_member(self, name: str) -> bool:
        """
        Adds ``name`` ("host:port") to the replica set. Must run against the primary.

        :return: False if the member was already present
        """
        host, port = parse_host(name, self._settings.port)
        if is_loopback(host):
            raise ValueError(f'Refusing to add loopback member "{name}"; use the node\'s domain name')
        member_name = f'{host}:{port}'

        def _add(config):
            members = config.setdefault('members', [])
            if any(parse_host(m['host'], self._settings.port) == (host, port) for m in members):
                print(f'Member "{member_name}" is already part of the replica set, skipping')
                return False
            next_id = max((m['_id'] for m in members), default=-1) + 1
            members.append({'_id': next_id, 'host': member_name})
            return True

        return self._modify_members(_add, f'Node {member_name} added.')

    def remove_member(self, name: str) -> bool:
        """
        Removes ``name`` ("host:port") from the replica set. Must run against the primary.

        :return: False if the member was not present
        """
        target = parse_host(name, self._settings.port)

        def _remove(config):
            members = config.get('members', [])
            remaining = [m for m in members if parse_host(m['host'], self._settings.port) != target]
            if len(remaining) == len(members):
                print(f'Member "{name}" is not part of the replica set, skipping')
                return False
            config['members'] = remaining
            return True

        return self._modify_members(_remove, f'Node {name} removed.')

    def _modify_members(self, mutate, success_message: str) -> bool:
        client, _ = self._connector(self._domain, self._settings)
        try:
            try:
                node_state = client.get_node_role_state()
                if not node_state.initialized or not node_state.is_primary:
                    raise AmbiguousStateError(
                        'Replica set members can only be changed from an initialized primary'
                    )
                config = client.get_replica_set_config()
            except PyMongoError as e:
                raise AmbiguousStateError('Failed to read the replica set configuration', diagnostics=str(e)) from e

            if not mutate(config):
                return False

            try:
                client.reconfigure_replica_set(_bump_version(config))
            except PyMongoError as e:
                raise ReconfigFailedError('replSetReconfig failed', diagnostics=str(e)) from e
            print(success_message)
            return True
        finally:
            client.close()

    def ensure_admin_user(self, username: str, password: str) -> bool:
        """
        Creates the root administrative user

        :return: False if the user already exists
        :exception UserCreationError: if the server refused to create the user for any other reason
        """
        client, _ = self._connector(self._domain, self._settings)
        try:
            client.create_user(username, password, [{'role': 'root', 'db': 'admin'}])
        except OperationFailure as e:
            if e.code != USER_ALREADY_EXISTS_CODE:
                raise UserCreationError(f'Failed to create admin user "{username}"', diagnostics=str(e)) from e
            print(f'Admin user "{username}" already exists, skipping')
            return False
        except PyMongoError as e:
            raise UserCreationError(f'Failed to create admin user "{username}"', diagnostics=str(e)) from e
        finally:
            client.close()
        print(f'Created admin user "{username}"')
        return True
