#!/usr/bin/env python3
# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Tests for mongod_provisioner/lib/services.py
"""

import subprocess
import unittest
from unittest.mock import MagicMock, patch

from mongod_provisioner.lib import services as subject
from mongod_provisioner.lib.errors import CommandError, ErrorKind


class TestRunCommand(unittest.TestCase):
    @patch.object(subject.subprocess, 'check_output')
    def test_returns_output(self, check_output_mock: MagicMock):
        # GIVEN
        check_output_mock.return_value = 'active\n'

        # WHEN
        output = subject.run_command(['systemctl', 'is-active', 'mongod'])

        # THEN
        self.assertEqual(output, 'active\n')
        check_output_mock.assert_called_once_with(
            ['systemctl', 'is-active', 'mongod'], stderr=subprocess.PIPE, text=True,
        )

    @patch.object(subject.subprocess, 'check_output')
    def test_failure_is_chained(self, check_output_mock: MagicMock):
        # GIVEN
        error = subprocess.CalledProcessError(3, ['systemctl'], output='out', stderr='Job failed')
        check_output_mock.side_effect = error

        # WHEN
        with self.assertRaises(CommandError) as context:
            subject.run_command(['systemctl', 'restart', 'mongod'])

        # THEN
        self.assertIs(context.exception.__cause__, error)
        self.assertIs(context.exception.kind, ErrorKind.COMMAND_FAILED)
        self.assertEqual(context.exception.diagnostics, 'Job failed')
        self.assertIn('failed to call systemctl (3)', str(context.exception))

    @patch.object(subject.subprocess, 'check_output')
    def test_missing_binary(self, check_output_mock: MagicMock):
        check_output_mock.side_effect = FileNotFoundError(2, 'No such file or directory')

        self.assertRaisesRegex(CommandError, 'failed to call mongodump', subject.run_command, ['mongodump'])


class TestServiceManager(unittest.TestCase):
    @patch.object(subject, 'run_command')
    def test_restart(self, run_command_mock: MagicMock):
        self.assertTrue(subject.ServiceManager().restart('mongod'))
        run_command_mock.assert_called_once_with(['systemctl', 'restart', 'mongod'])

    @patch.object(subject, 'run_command')
    def test_restart_failure(self, run_command_mock: MagicMock):
        run_command_mock.side_effect = CommandError('failed to call systemctl (1)')

        self.assertFalse(subject.ServiceManager().restart('mongod'))

    @patch.object(subject, 'run_command')
    def test_is_active(self, run_command_mock: MagicMock):
        manager = subject.ServiceManager()

        self.assertTrue(manager.is_active('mongod'))
        run_command_mock.assert_called_once_with(['systemctl', 'is-active', '--quiet', 'mongod'])

        run_command_mock.side_effect = CommandError('inactive')
        self.assertFalse(manager.is_active('mongod'))

    @patch.object(subject.subprocess, 'run')
    def test_active_state(self, run_mock: MagicMock):
        # GIVEN
        run_mock.return_value = subprocess.CompletedProcess(['systemctl'], 3, stdout='inactive\n', stderr='')

        # WHEN
        state = subject.ServiceManager().active_state('mongod')

        # THEN
        self.assertEqual(state, 'inactive')
        run_mock.assert_called_once_with(
            ['systemctl', 'is-active', 'mongod'], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
        )

    @patch.object(subject, 'run_command')
    def test_recent_logs(self, run_command_mock: MagicMock):
        # GIVEN
        run_command_mock.return_value = 'line 1\nline 2\n'

        # WHEN
        logs = subject.ServiceManager().recent_logs('mongod', lines=2)

        # THEN
        self.assertEqual(logs, 'line 1\nline 2\n')
        run_command_mock.assert_called_once_with(['journalctl', '-u', 'mongod', '--no-pager', '-n', '2'])


if __name__ == '__main__':
    unittest.main()
