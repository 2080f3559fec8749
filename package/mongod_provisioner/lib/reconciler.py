# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Brings /etc/mongod.conf in line with a DesiredConfig and safely applies it
"""

import glob
import io
import os
import shutil
import sys
import tempfile
import time
from datetime import datetime
from typing import Callable, Dict, NamedTuple, Optional

from .errors import ErrorKind, MissingCertificateError, UnrecoverableError
from .mongod_conf import (
    DesiredConfig,
    DocumentState,
    LiveConfigDocument,
    SectionState,
    classify,
    dump_document,
    render_document,
)
from .services import ServiceManager

BACKUP_SUFFIX = '.bak.'
BACKUP_TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'


class ReconcileResult(NamedTuple):
    # True when a new document was written and the service came back up with it.
    changed: bool

    # True when the new document was rejected by the service and the backup was restored.
    rolled_back: bool = False

    # RestartFailed after a rollback, AlreadyInDesiredState for a no-op, otherwise None.
    error: Optional[ErrorKind] = None

    # The copy of the previous document taken before writing, if any.
    backup_path: Optional[str] = None

    sections: Optional[Dict[str, SectionState]] = None

    @property
    def ok(self) -> bool:
        return self.error in (None, ErrorKind.ALREADY_IN_DESIRED_STATE)


class ConfigReconciler(object):
    def __init__(
        self,
        service_manager: ServiceManager,
        conf_path: str = '/etc/mongod.conf',
        service_name: str = 'mongod',
        restart_timeout: float = 15,
        poll_interval: float = 1,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._service_manager = service_manager
        self._conf_path = conf_path
        self._service_name = service_name
        self._restart_timeout = restart_timeout
        self._poll_interval = poll_interval
        self._clock = clock

    @property
    def conf_path(self) -> str:
        return self._conf_path

    def reconcile(self, desired: DesiredConfig) -> ReconcileResult:
        """
        Writes the document described by ``desired`` and restarts the service, only if the
        live document differs from it.

        :param desired: The declared node configuration
        :return: The outcome of the pass
        :exception MissingCertificateError: if the TLS material is missing. Nothing is written.
        :exception UnrecoverableError: if the service does not come back even with the previous document
        """
        try:
            desired.validate()
        except MissingCertificateError as e:
            print(f'ERROR: {e}. No changes were made to "{self._conf_path}".', file=sys.stderr)
            raise

        live = LiveConfigDocument.load(self._conf_path)
        rendered = render_document(live, desired)
        sections = classify(live, desired, rendered)

        if live.state is DocumentState.PARSED and rendered == live.data:
            print(f'"{self._conf_path}" already matches the desired configuration, skipping')
            return ReconcileResult(
                changed=False,
                error=ErrorKind.ALREADY_IN_DESIRED_STATE,
                sections=sections,
            )

        print('mongod.conf sections = ' + ', '.join(f'{name}: {state.value}' for name, state in sections.items()))

        backup_path = self._backup(live)
        self._write(dump_document(rendered), live)
        print(f'Wrote "{self._conf_path}". Restarting {self._service_name}...')

        if self._restart_and_wait():
            print(f'{self._service_name} restarted successfully with the new configuration')
            return ReconcileResult(changed=True, backup_path=backup_path, sections=sections)

        print(
            f'WARNING: {self._service_name} failed to restart with the new configuration:\n'
            + self._service_manager.recent_logs(self._service_name),
            file=sys.stderr,
        )
        self._restore(backup_path)

        if self._restart_and_wait():
            print(f'{self._service_name} restarted with the previous configuration restored from "{backup_path}"')
            return ReconcileResult(
                changed=False,
                rolled_back=True,
                error=ErrorKind.RESTART_FAILED,
                backup_path=backup_path,
                sections=sections,
            )

        raise UnrecoverableError(
            f'{self._service_name} failed to restart even with the previous configuration. '
            'Manual intervention required.',
            diagnostics=self._service_manager.recent_logs(self._service_name),
        )

    def list_backups(self):
        return sorted(glob.glob(glob.escape(self._conf_path) + BACKUP_SUFFIX + '*'))

    def _backup_path(self) -> str:
        base = self._conf_path + BACKUP_SUFFIX + self._clock().strftime(BACKUP_TIMESTAMP_FORMAT)
        candidate = base
        counter = 1
        while os.path.exists(candidate):
            candidate = f'{base}-{counter}'
            counter += 1
        return candidate

    def _backup(self, live: LiveConfigDocument) -> Optional[str]:
        if live.state is DocumentState.MISSING:
            return None
        backup_path = self._backup_path()
        shutil.copy2(self._conf_path, backup_path)
        print(f'Created backup of "{self._conf_path}" at "{backup_path}"')
        return backup_path

    def _write(self, contents: str, live: LiveConfigDocument) -> None:
        conf_dir = os.path.dirname(os.path.abspath(self._conf_path))
        fd, tmp_path = tempfile.mkstemp(prefix='.mongod.conf.', dir=conf_dir)
        try:
            with io.open(fd, 'w', encoding='utf8') as tmp_file:
                tmp_file.write(contents)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            if live.state is DocumentState.MISSING:
                os.chmod(tmp_path, 0o644)
            else:
                shutil.copymode(self._conf_path, tmp_path)
            os.replace(tmp_path, self._conf_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _restore(self, backup_path: Optional[str]) -> None:
        if backup_path is None:
            # There was no document before this pass
            print(f'Removing "{self._conf_path}" (no previous configuration existed)')
            os.remove(self._conf_path)
            return
        print(f'Restoring "{self._conf_path}" from "{backup_path}"')
        shutil.copy2(backup_path, self._conf_path)

    def _restart_and_wait(self) -> bool:
        if not self._service_manager.restart(self._service_name):
            return False

        samples = max(1, int(self._restart_timeout / self._poll_interval))
        for sample in range(samples):
            if self._service_manager.is_active(self._service_name):
                return True
            if sample + 1 < samples:
                time.sleep(self._poll_interval)
        return False
