# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Database dumps shipped to and restored from Amazon S3
"""

import os
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .admin_client import LOOPBACK_HOST, ConnectionSettings, is_loopback
from .errors import CommandError, StorageError
from .services import run_command

BACKUP_TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
DEFAULT_RETENTION = 10


def backup_filename(prefix: str, now: datetime) -> str:
    return f'{prefix}-{now.strftime(BACKUP_TIMESTAMP_FORMAT)}.gz'


class BackupStore(object):
    """
    Backups are stored under s3://<bucket>/<prefix>/<filename>, where the prefix is the
    node's domain name.
    """

    def __init__(self, bucket: str, prefix: str, region: Optional[str] = None, s3_client=None):
        self._bucket = bucket
        self._prefix = prefix.strip('/')
        self._s3 = s3_client if s3_client is not None else boto3.client('s3', region_name=region)

    def _key(self, filename: str) -> str:
        return f'{self._prefix}/{filename}'

    def put(self, local_path: str, filename: str) -> None:
        try:
            self._s3.upload_file(local_path, self._bucket, self._key(filename))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f'Failed to upload {filename} to s3://{self._bucket}/{self._prefix}',
                diagnostics=str(e),
            ) from e

    def list(self) -> List[str]:
        """
        :return: backup filenames, oldest first
        """
        prefix = self._prefix + '/'
        filenames = []
        paginator = self._s3.get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for entry in page.get('Contents', []):
                    filename = entry['Key'][len(prefix):]
                    if filename:
                        filenames.append(filename)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f'Failed to list backups in s3://{self._bucket}/{prefix}',
                diagnostics=str(e),
            ) from e
        return sorted(filenames)

    def get(self, filename: str, local_path: str) -> None:
        try:
            self._s3.download_file(self._bucket, self._key(filename), local_path)
        except (BotoCoreError, ClientError) as e:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise StorageError(
                f'Failed to download {filename} from s3://{self._bucket}/{self._prefix}',
                diagnostics=str(e),
            ) from e

    def delete(self, filename: str) -> None:
        self._s3.delete_object(Bucket=self._bucket, Key=self._key(filename))

    def enforce_retention(self, keep: int = DEFAULT_RETENTION) -> List[str]:
        """
        Deletes all but the ``keep`` most recent backups

        :return: the filenames that were deleted
        """
        if keep < 1:
            raise ValueError('At least one backup must be retained')

        filenames = self.list()
        if len(filenames) <= keep:
            print(f'Only {len(filenames)} backups exist, no cleanup needed')
            return []

        stale = filenames[:len(filenames) - keep]
        print(f'Keeping {keep} most recent backups, deleting {len(stale)} older backups')
        deleted = []
        for filename in stale:
            try:
                self.delete(filename)
            except ClientError as e:
                print(f'Failed to delete old backup {filename}: {e}')
                continue
            print(f'Deleted old backup: {filename}')
            deleted.append(filename)
        return deleted


class Dumper(object):
    """
    Runs mongodump and mongorestore against the local node, through its domain first
    and then once through the loopback address.
    """

    def __init__(self, domain: str, settings: ConnectionSettings,
                 mongodump: str = 'mongodump', mongorestore: str = 'mongorestore'):
        self._domain = domain
        self._settings = settings
        self._mongodump = mongodump
        self._mongorestore = mongorestore

    def _connection_args(self, host: str) -> List[str]:
        args = ['--host', host, '--port', str(self._settings.port)]
        if self._settings.tls:
            # The database tools take the --ssl spelling of the TLS options
            args.append('--ssl')
            if self._settings.ca_file:
                args += ['--sslCAFile', self._settings.ca_file]
            if self._settings.certificate_key_file:
                args += ['--sslPEMKeyFile', self._settings.certificate_key_file]
            if is_loopback(host):
                args.append('--sslAllowInvalidHostnames')
        if self._settings.username:
            args += [
                '--username', self._settings.username,
                '--password', self._settings.password or '',
                '--authenticationDatabase', 'admin',
            ]
        return args

    def _run(self, tool: str, extra_args: List[str]) -> str:
        hosts = [self._domain] if is_loopback(self._domain) else [self._domain, LOOPBACK_HOST]
        last_error = None
        for host in hosts:
            print(f'Running {tool} against {host}...')
            try:
                return run_command([tool] + self._connection_args(host) + extra_args)
            except CommandError as e:
                print(f'{tool} using {host} failed: {e.diagnostics or e}')
                last_error = e
        raise CommandError(
            f'{tool} failed using ' + ' and '.join(hosts),
            diagnostics=last_error.diagnostics if last_error else None,
        )

    def dump(self, archive_path: str) -> None:
        self._run(self._mongodump, [f'--archive={archive_path}', '--gzip'])

    def restore(self, archive_path: str) -> None:
        self._run(self._mongorestore, [f'--archive={archive_path}', '--gzip', '--drop'])


def create_backup(
    dumper: Dumper,
    store: BackupStore,
    prefix: str = 'manual',
    now: Optional[datetime] = None,
    tmp_dir: str = '/tmp',
    keep: Optional[int] = None,
) -> str:
    """
    Dumps the database, uploads the archive and optionally prunes old backups

    :return: the filename of the uploaded backup
    """
    filename = backup_filename(prefix, now or datetime.now())
    archive_path = os.path.join(tmp_dir, filename)

    print(f'Creating MongoDB backup: {filename}')
    try:
        dumper.dump(archive_path)
        size = os.path.getsize(archive_path) if os.path.exists(archive_path) else 0
        if size == 0:
            raise CommandError(f'Backup file "{archive_path}" is missing or empty. Backup may be corrupted.')
        print(f'Uploading backup ({size} bytes) to S3...')
        store.put(archive_path, filename)
    finally:
        if os.path.exists(archive_path):
            os.remove(archive_path)

    print(f'Backup complete: {filename}')
    if keep is not None:
        store.enforce_retention(keep)
    return filename


def restore_backup(dumper: Dumper, store: BackupStore, filename: str, tmp_dir: str = '/tmp') -> None:
    archive_path = os.path.join(tmp_dir, os.path.basename(filename))
    print(f'Downloading {filename} from S3...')
    store.get(filename, archive_path)
    try:
        print('Restoring backup...')
        dumper.restore(archive_path)
    finally:
        os.remove(archive_path)
    print(f'Restore complete from {filename}')
