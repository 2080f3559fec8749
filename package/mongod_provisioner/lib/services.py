# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Thin wrappers around the external command line tools this project drives
"""

import subprocess
from typing import List

from .errors import CommandError


def run_command(args: List[str]) -> str:
    """
    Executes a command and returns its standard output

    :param args: the command and its arguments
    :exception CommandError: if the command exits with a non-zero exit code
    """
    try:
        return subprocess.check_output(args, stderr=subprocess.PIPE, text=True)
    except subprocess.CalledProcessError as e:
        raise CommandError(
            f'failed to call {args[0]} ({e.returncode}): \n{e.output}\n\n{e.stderr}',
            diagnostics=e.stderr,
        ) from e
    except OSError as e:
        raise CommandError(f'failed to call {args[0]}: {e}') from e


class ServiceManager(object):
    """
    Controls systemd units through systemctl
    """

    def __init__(self, systemctl: str = 'systemctl', journalctl: str = 'journalctl'):
        self._systemctl = systemctl
        self._journalctl = journalctl

    def _call(self, action: str, name: str) -> bool:
        try:
            run_command([self._systemctl, action, name])
        except CommandError as e:
            print(f'systemctl {action} {name} failed: {e}')
            return False
        return True

    def restart(self, name: str) -> bool:
        return self._call('restart', name)

    def start(self, name: str) -> bool:
        return self._call('start', name)

    def stop(self, name: str) -> bool:
        return self._call('stop', name)

    def enable(self, name: str) -> bool:
        return self._call('enable', name)

    def is_active(self, name: str) -> bool:
        # "systemctl is-active" exits non-zero for every state other than active
        try:
            run_command([self._systemctl, 'is-active', '--quiet', name])
        except CommandError:
            return False
        return True

    def recent_logs(self, name: str, lines: int = 20) -> str:
        try:
            return run_command([self._journalctl, '-u', name, '--no-pager', '-n', str(lines)])
        except CommandError as e:
            return str(e)

    def active_state(self, name: str) -> str:
        """
        :return: the unit's state as printed by "systemctl is-active", e.g. active, inactive or failed
        """
        try:
            result = subprocess.run(
                [self._systemctl, 'is-active', name],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise CommandError(f'failed to call {self._systemctl}: {e}') from e
        return result.stdout.strip() or 'unknown'
