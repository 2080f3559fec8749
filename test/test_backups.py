#!/usr/bin/env python3
# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Tests for mongod_provisioner/lib/backups.py
"""

import os
import tempfile
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, NoCredentialsError

from mongod_provisioner.lib import backups as subject
from mongod_provisioner.lib.admin_client import ConnectionSettings
from mongod_provisioner.lib.errors import CommandError, ErrorKind, StorageError

BUCKET = 'backups-bucket'
DOMAIN = 'db1.example.com'


def _s3_with(filenames):
    s3 = MagicMock()
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {'Contents': [{'Key': f'{DOMAIN}/{name}'} for name in filenames[:2]]},
        {'Contents': [{'Key': f'{DOMAIN}/{name}'} for name in filenames[2:]]},
    ]
    s3.get_paginator.return_value = paginator
    return s3


class TestBackupStore(unittest.TestCase):
    def test_backup_filename(self):
        self.assertEqual(
            subject.backup_filename('daily', datetime(2024, 1, 2, 3, 4, 5)),
            'daily-20240102-030405.gz',
        )

    def test_list_is_sorted_oldest_first(self):
        # GIVEN
        s3 = _s3_with(['daily-20240103-000000.gz', 'daily-20240101-000000.gz', 'daily-20240102-000000.gz'])
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # WHEN
        filenames = store.list()

        # THEN
        self.assertEqual(filenames, [
            'daily-20240101-000000.gz',
            'daily-20240102-000000.gz',
            'daily-20240103-000000.gz',
        ])
        s3.get_paginator.return_value.paginate.assert_called_once_with(Bucket=BUCKET, Prefix=DOMAIN + '/')

    def test_retention_deletes_oldest(self):
        # GIVEN
        filenames = [f'daily-202401{day:02d}-000000.gz' for day in range(1, 13)]
        s3 = _s3_with(filenames)
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # WHEN
        deleted = store.enforce_retention(keep=10)

        # THEN
        self.assertEqual(deleted, filenames[:2])
        s3.delete_object.assert_any_call(Bucket=BUCKET, Key=f'{DOMAIN}/daily-20240101-000000.gz')
        s3.delete_object.assert_any_call(Bucket=BUCKET, Key=f'{DOMAIN}/daily-20240102-000000.gz')
        self.assertEqual(s3.delete_object.call_count, 2)

    def test_retention_with_few_backups(self):
        # GIVEN
        s3 = _s3_with(['daily-20240101-000000.gz'])
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # THEN
        self.assertEqual(store.enforce_retention(keep=10), [])
        s3.delete_object.assert_not_called()

    def test_retention_continues_after_failed_delete(self):
        # GIVEN
        filenames = ['a-20240101-000000.gz', 'a-20240102-000000.gz', 'a-20240103-000000.gz']
        s3 = _s3_with(filenames)
        s3.delete_object.side_effect = [
            ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'DeleteObject'),
            {},
        ]
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # WHEN
        deleted = store.enforce_retention(keep=1)

        # THEN
        self.assertEqual(deleted, ['a-20240102-000000.gz'])

    def test_retention_must_keep_one(self):
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=MagicMock())

        self.assertRaises(ValueError, store.enforce_retention, 0)

    def test_download_failure_is_a_storage_error(self):
        # GIVEN
        s3 = MagicMock()
        s3.download_file.side_effect = ClientError({'Error': {'Code': '404', 'Message': 'Not Found'}}, 'HeadObject')
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # WHEN
        with self.assertRaises(StorageError) as context:
            store.get('daily-20240101-000000.gz', '/nonexistent/daily-20240101-000000.gz')

        # THEN
        self.assertIs(context.exception.kind, ErrorKind.STORAGE_FAILED)
        self.assertIn('Not Found', context.exception.diagnostics)

    def test_list_without_credentials_is_a_storage_error(self):
        # GIVEN
        s3 = MagicMock()
        s3.get_paginator.return_value.paginate.side_effect = NoCredentialsError()
        store = subject.BackupStore(BUCKET, DOMAIN, s3_client=s3)

        # THEN
        self.assertRaises(StorageError, store.list)


class TestDumper(unittest.TestCase):
    @patch.object(subject, 'run_command')
    def test_dump_through_domain(self, run_command_mock: MagicMock):
        # GIVEN
        settings = ConnectionSettings(port=27017, username='admin', password='pw', tls=True, ca_file='/ca.pem')
        dumper = subject.Dumper(DOMAIN, settings)

        # WHEN
        dumper.dump('/tmp/x.gz')

        # THEN
        run_command_mock.assert_called_once_with([
            'mongodump',
            '--host', DOMAIN, '--port', '27017',
            '--ssl', '--sslCAFile', '/ca.pem',
            '--username', 'admin', '--password', 'pw', '--authenticationDatabase', 'admin',
            '--archive=/tmp/x.gz', '--gzip',
        ])

    @patch.object(subject, 'run_command')
    def test_restore_falls_back_to_loopback(self, run_command_mock: MagicMock):
        # GIVEN
        run_command_mock.side_effect = [CommandError('failed', diagnostics='no route'), '']
        dumper = subject.Dumper(DOMAIN, ConnectionSettings(port=27017, tls=True))

        # WHEN
        dumper.restore('/tmp/x.gz')

        # THEN
        self.assertEqual(run_command_mock.call_count, 2)
        second_args = run_command_mock.call_args_list[1][0][0]
        self.assertEqual(second_args[:3], ['mongorestore', '--host', 'localhost'])
        self.assertIn('--sslAllowInvalidHostnames', second_args)
        self.assertIn('--drop', second_args)

    @patch.object(subject, 'run_command')
    def test_both_hosts_fail(self, run_command_mock: MagicMock):
        # GIVEN
        run_command_mock.side_effect = CommandError('failed', diagnostics='auth failed')
        dumper = subject.Dumper(DOMAIN, ConnectionSettings(port=27017))

        # WHEN
        with self.assertRaises(CommandError) as context:
            dumper.dump('/tmp/x.gz')

        # THEN
        self.assertEqual(context.exception.diagnostics, 'auth failed')
        self.assertEqual(run_command_mock.call_count, 2)


class TestCreateAndRestore(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_create_backup(self):
        # GIVEN
        def _dump(path):
            with open(path, 'wb') as archive:
                archive.write(b'archive')

        dumper = MagicMock(spec=subject.Dumper)
        dumper.dump.side_effect = _dump
        store = MagicMock(spec=subject.BackupStore)

        # WHEN
        filename = subject.create_backup(
            dumper, store, prefix='daily', now=datetime(2024, 1, 2, 3, 4, 5), tmp_dir=self.tmp_dir.name, keep=10,
        )

        # THEN
        archive_path = os.path.join(self.tmp_dir.name, 'daily-20240102-030405.gz')
        self.assertEqual(filename, 'daily-20240102-030405.gz')
        store.put.assert_called_once_with(archive_path, filename)
        store.enforce_retention.assert_called_once_with(10)
        self.assertFalse(os.path.exists(archive_path))

    def test_empty_archive_is_not_uploaded(self):
        # GIVEN
        dumper = MagicMock(spec=subject.Dumper)
        dumper.dump.side_effect = lambda path: open(path, 'wb').close()
        store = MagicMock(spec=subject.BackupStore)

        # WHEN
        with self.assertRaises(CommandError):
            subject.create_backup(dumper, store, tmp_dir=self.tmp_dir.name)

        # THEN
        store.put.assert_not_called()
        self.assertEqual(os.listdir(self.tmp_dir.name), [])

    def test_restore_backup(self):
        # GIVEN
        dumper = MagicMock(spec=subject.Dumper)
        store = MagicMock(spec=subject.BackupStore)
        store.get.side_effect = lambda filename, path: open(path, 'wb').close()

        # WHEN
        subject.restore_backup(dumper, store, 'daily-20240102-030405.gz', tmp_dir=self.tmp_dir.name)

        # THEN
        archive_path = os.path.join(self.tmp_dir.name, 'daily-20240102-030405.gz')
        store.get.assert_called_once_with('daily-20240102-030405.gz', archive_path)
        dumper.restore.assert_called_once_with(archive_path)
        self.assertFalse(os.path.exists(archive_path))

    def test_restore_stops_when_download_fails(self):
        # GIVEN
        dumper = MagicMock(spec=subject.Dumper)
        store = MagicMock(spec=subject.BackupStore)
        store.get.side_effect = StorageError('Failed to download', diagnostics='AccessDenied')

        # WHEN
        with self.assertRaises(StorageError):
            subject.restore_backup(dumper, store, 'daily-20240102-030405.gz', tmp_dir=self.tmp_dir.name)

        # THEN
        dumper.restore.assert_not_called()


if __name__ == '__main__':
    unittest.main()
