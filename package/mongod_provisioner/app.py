#!/usr/bin/env python3

# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Configures and operates a MongoDB replica set node
"""

import argparse
import base64
import json
import os
import secrets
import shutil
import socket
import sys

from pymongo.errors import PyMongoError

from .config import DEFAULT_CONFIG_PATH, AppConfig
from .lib.admin_client import connect_with_fallback
from .lib.alerts import MailSink, health_check
from .lib.backups import DEFAULT_RETENTION, BackupStore, Dumper, create_backup, restore_backup
from .lib.bootstrapper import BootstrapAction, ClusterBootstrapper, NodeRole
from .lib.connection_info import build_connection_info
from .lib.errors import AmbiguousStateError, ProvisioningError
from .lib.mongod_conf import LiveConfigDocument
from .lib.monitor import collect_report, token_matches
from .lib.reconciler import ConfigReconciler
from .lib.services import ServiceManager

# Exit code used when a change was rolled back and the node is running its previous configuration
EXIT_ROLLED_BACK = 2

# Exit code used when the monitor token is missing or wrong
EXIT_FORBIDDEN = 3

# Encodes to 1008 characters, under the 1024 character limit of mongod keyfiles
KEYFILE_RANDOM_BYTES = 756


##############################################
#          PROGRAM ARGUMENT HANDLING         #
##############################################


def parse_args(args):
    """
    Parses all command line arguments

    :param args: A list of command line arguments
    :return: A namespace containing the parsed arguments
    """

    def _role(value):
        """
        A type function for converting the node role argument into a NodeRole

        :exception argparse.ArgumentTypeError: if the argument is not a known role.
        """
        try:
            return NodeRole(value)
        except ValueError:
            raise argparse.ArgumentTypeError(
                'Given argument "%s" is not a valid role (%s)' % (value, ', '.join(r.value for r in NodeRole))
            )

    parser = argparse.ArgumentParser(prog='mongod-provisioner', description=__doc__.strip())
    parser.add_argument(
        '--config',
        default     = DEFAULT_CONFIG_PATH,
        help        = 'Path to the node\'s config.json',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    reconcile = subparsers.add_parser('reconcile', help='Bring mongod.conf in line with config.json')
    reconcile.add_argument('--replica-set', help='Replica set name. Defaults to the live mongod.conf, then rs0')
    reconcile.set_defaults(func=run_reconcile)

    bootstrap = subparsers.add_parser(
        'bootstrap',
        help='Reconcile mongod.conf, then initiate or repair the replica set membership',
    )
    bootstrap.add_argument('--role', type=_role, required=True, help='primary or secondary')
    bootstrap.add_argument('--replica-set', help='Replica set name. Defaults to the live mongod.conf, then rs0')
    bootstrap.add_argument('--domain', help='Canonical domain of this node. Defaults to domain_name in config.json')
    bootstrap.set_defaults(func=run_bootstrap)

    status = subparsers.add_parser('status', help='Print the replica set role of this node')
    status.add_argument('--domain')
    status.set_defaults(func=run_status)

    create_admin = subparsers.add_parser('create-admin', help='Create the root user from config.json')
    create_admin.add_argument('--domain')
    create_admin.set_defaults(func=run_create_admin)

    members = subparsers.add_parser('members', help='Add or remove replica set members (run on the primary)')
    members.add_argument('action', choices=('add', 'remove'))
    members.add_argument('member', help='hostname:port of the member')
    members.add_argument('--domain')
    members.set_defaults(func=run_members)

    connection_info = subparsers.add_parser('connection-info', help='Print connection details as JSON')
    connection_info.add_argument('--domain')
    connection_info.set_defaults(func=run_connection_info)

    backup = subparsers.add_parser('backup', help='Manage database backups in S3')
    backup.add_argument('action', choices=('create', 'list', 'restore'))
    backup.add_argument('filename', nargs='?', help='Backup to restore')
    backup.add_argument('--prefix', default='manual', help='Filename prefix of a new backup')
    backup.add_argument(
        '--keep',
        type        = int,
        help        = 'After creating a backup, delete all but this many backups (e.g. %d)' % DEFAULT_RETENTION,
    )
    backup.add_argument('--domain')
    backup.set_defaults(func=run_backup)

    health = subparsers.add_parser('health-check', help='Alert by email if mongod is not running')
    health.add_argument('--hostname', default=None, help='Name used in the alert. Defaults to the FQDN')
    health.set_defaults(func=run_health_check)

    monitor = subparsers.add_parser('monitor', help='Print service state, memory, CPU and disk usage')
    monitor.add_argument('--token', required=True, help='Must match monitor_token in config.json')
    monitor.add_argument('--json', dest='as_json', action='store_true', help='Print the report as JSON')
    monitor.set_defaults(func=run_monitor)

    return parser.parse_args(args)


def validate_config(config):
    if config.command == 'backup' and config.action == 'restore' and not config.filename:
        raise ValueError('backup restore requires the filename of the backup to restore')
    if getattr(config, 'keep', None) is not None and config.keep < 1:
        raise ValueError('--keep must be at least 1')


################################
#          COMMANDS            #
################################


def ensure_keyfile(path, key=None):
    """
    Writes the replica set keyfile if it does not exist yet. An existing keyfile is never overwritten.

    :param path: Where mongod expects the keyfile
    :param key: The shared secret. A random one is generated when not configured; it must then be
                copied to every other member before they can join.
    """
    if os.path.exists(path):
        return
    if not key:
        key = base64.b64encode(secrets.token_bytes(KEYFILE_RANDOM_BYTES)).decode('ascii')
        print(f'WARNING: replica_set_key is not set. Generated a random key at "{path}"; '
              'copy it to every other member of the replica set.')
    print(f'Creating replica set keyfile at "{path}"')
    # Created owner-read-only; the mode is never widened
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o400)
    with os.fdopen(fd, 'w', encoding='utf8') as keyfile:
        keyfile.write(key + '\n')
    try:
        shutil.chown(path, user='mongodb', group='mongodb')
    except (LookupError, PermissionError) as e:
        print(f'WARNING: could not change the owner of "{path}" to mongodb: {e}')


def _reconcile(config, app_config, service_manager):
    reconciler = ConfigReconciler(
        service_manager,
        conf_path=app_config.mongod_conf_path,
        service_name=app_config.service_name,
    )
    live = LiveConfigDocument.load(app_config.mongod_conf_path)
    replica_set = app_config.resolve_replica_set(config.replica_set, live)
    desired = app_config.desired_config(replica_set)
    desired.validate()
    if not (desired.tls_mode.enabled and desired.cluster_file):
        ensure_keyfile(desired.keyfile_path, app_config.replica_set_key)
    result = reconciler.reconcile(desired)
    if result.rolled_back:
        print(
            f'WARNING: the new configuration was rolled back ({result.error.value}). '
            f'The rejected change was not kept; the previous file is at "{result.backup_path}".',
            file=sys.stderr,
        )
    return result, replica_set


def run_reconcile(config, app_config):
    result, _ = _reconcile(config, app_config, ServiceManager())
    return EXIT_ROLLED_BACK if result.rolled_back else 0


def run_bootstrap(config, app_config):
    domain = app_config.resolve_domain(config.domain)
    service_manager = ServiceManager()
    service_manager.enable(app_config.service_name)

    result, replica_set = _reconcile(config, app_config, service_manager)
    if result.rolled_back:
        return EXIT_ROLLED_BACK
    if not service_manager.is_active(app_config.service_name) and not service_manager.start(app_config.service_name):
        print(service_manager.recent_logs(app_config.service_name), file=sys.stderr)
        return 1

    bootstrapper = ClusterBootstrapper(domain, config.role, replica_set, app_config.connection_settings())
    outcome = bootstrapper.bootstrap()
    print(f'{config.role.value} node bootstrap complete on {domain} '
          f'(state = {outcome.state.value}, action = {outcome.action.value})')
    if outcome.action is BootstrapAction.INITIATE:
        print('Next step: create the admin user with "mongod-provisioner create-admin".')
    return 0


def run_status(config, app_config):
    domain = app_config.resolve_domain(config.domain)
    client, host_used = connect_with_fallback(domain, app_config.connection_settings())
    try:
        node_state = client.get_node_role_state()
    except PyMongoError as e:
        raise AmbiguousStateError(f'Failed to read the replica set role via {host_used}', diagnostics=str(e)) from e
    finally:
        client.close()
    print(json.dumps(
        {
            'queried_via': host_used,
            'initialized': node_state.initialized,
            'is_primary': node_state.is_primary,
            'replica_set': node_state.replica_set_name,
            'members': [member._asdict() for member in node_state.members],
        },
        indent=2,
    ))
    return 0


def _bootstrapper(config, app_config, with_credentials=True):
    domain = app_config.resolve_domain(config.domain)
    live = LiveConfigDocument.load(app_config.mongod_conf_path)
    return ClusterBootstrapper(
        domain,
        NodeRole.PRIMARY,
        app_config.resolve_replica_set(None, live),
        app_config.connection_settings(with_credentials=with_credentials),
    )


def run_create_admin(config, app_config):
    if not app_config.db_username or not app_config.db_password:
        raise ValueError('db_username and db_password must be set in config.json')
    bootstrapper = _bootstrapper(config, app_config, with_credentials=False)
    bootstrapper.ensure_admin_user(app_config.db_username, app_config.db_password)
    return 0


def run_members(config, app_config):
    bootstrapper = _bootstrapper(config, app_config)
    if config.action == 'add':
        bootstrapper.add_member(config.member)
    else:
        bootstrapper.remove_member(config.member)
    return 0


def run_connection_info(config, app_config):
    domain = app_config.resolve_domain(config.domain)
    live = LiveConfigDocument.load(app_config.mongod_conf_path)
    client, host_used = connect_with_fallback(domain, app_config.connection_settings())
    try:
        status = client.get_replica_set_status()
    except PyMongoError as e:
        raise AmbiguousStateError(f'Failed to read the replica set status via {host_used}', diagnostics=str(e)) from e
    finally:
        client.close()

    tls = live.tls_required
    print(json.dumps(
        build_connection_info(
            status,
            username=app_config.db_username or '',
            password=app_config.db_password or '',
            replica_set=app_config.resolve_replica_set(None, live),
            tls=tls,
            ca_file=app_config.ca_file if tls else None,
            client_cert=app_config.client_certificate_file if tls else None,
        ),
        indent=2,
    ))
    return 0


def run_backup(config, app_config):
    if not app_config.aws_bucket:
        raise ValueError('aws_bucket must be set in config.json')
    domain = app_config.resolve_domain(config.domain)
    store = BackupStore(app_config.aws_bucket, domain, region=app_config.aws_region)

    if config.action == 'list':
        print(f'Backups in s3://{app_config.aws_bucket}/{domain} (newest to oldest):')
        for filename in reversed(store.list()):
            print(filename)
        return 0

    dumper = Dumper(domain, app_config.connection_settings())
    if config.action == 'create':
        create_backup(dumper, store, prefix=config.prefix, keep=config.keep)
    else:
        restore_backup(dumper, store, config.filename)
    return 0


def run_health_check(config, app_config):
    hostname = config.hostname or socket.getfqdn()
    sink = None
    if app_config.smtp_server and app_config.alert_email:
        sink = MailSink(
            app_config.smtp_server,
            app_config.smtp_port,
            app_config.smtp_user,
            app_config.smtp_pass,
            sender=app_config.alert_email,
        )
    healthy = health_check(ServiceManager(), sink, app_config.alert_email, hostname, app_config.service_name)
    return 0 if healthy else 1


def run_monitor(config, app_config):
    if not token_matches(config.token, app_config.monitor_token):
        print('Forbidden', file=sys.stderr)
        return EXIT_FORBIDDEN
    report = collect_report(ServiceManager(), app_config.service_name)
    if config.as_json:
        print(json.dumps(report._asdict(), indent=2))
    else:
        print('\n'.join(report.lines()))
    return 0


################################
#          ENTRY POINT         #
################################


def main(args=None):
    config = parse_args(sys.argv[1:] if args is None else args)
    try:
        validate_config(config)
        app_config = AppConfig.load(config.config)
        return config.func(config, app_config)
    except ProvisioningError as e:
        print(f'ERROR ({e.kind.value}): {e}', file=sys.stderr)
        if e.diagnostics:
            print(e.diagnostics, file=sys.stderr)
        return 1
    except ValueError as e:
        print(f'ERROR: {e}', file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
