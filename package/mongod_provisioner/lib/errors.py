# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Error taxonomy shared by the reconciler, the bootstrapper and the CLI
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    MISSING_CERTIFICATE = 'MissingCertificate'
    RESTART_FAILED = 'RestartFailed'
    UNRECOVERABLE = 'Unrecoverable'
    INITIATE_FAILED = 'InitiateFailed'
    RECONFIG_FAILED = 'ReconfigFailed'
    UNREACHABLE = 'Unreachable'
    AMBIGUOUS_STATE = 'AmbiguousState'
    ALREADY_IN_DESIRED_STATE = 'AlreadyInDesiredState'
    COMMAND_FAILED = 'CommandFailed'
    USER_CREATION_FAILED = 'UserCreationFailed'
    STORAGE_FAILED = 'StorageFailed'


class ProvisioningError(Exception):
    """
    Base class for failures that must be surfaced to the operator.

    :param message: A human readable description of the failure
    :param diagnostics: The last output captured from the collaborator that failed, if any
    """
    kind = None  # type: ErrorKind

    def __init__(self, message: str, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.diagnostics = diagnostics


class MissingCertificateError(ProvisioningError):
    kind = ErrorKind.MISSING_CERTIFICATE


class UnrecoverableError(ProvisioningError):
    kind = ErrorKind.UNRECOVERABLE


class InitiateFailedError(ProvisioningError):
    kind = ErrorKind.INITIATE_FAILED


class ReconfigFailedError(ProvisioningError):
    kind = ErrorKind.RECONFIG_FAILED


class UnreachableError(ProvisioningError):
    kind = ErrorKind.UNREACHABLE


class AmbiguousStateError(ProvisioningError):
    kind = ErrorKind.AMBIGUOUS_STATE


class CommandError(ProvisioningError):
    kind = ErrorKind.COMMAND_FAILED


class UserCreationError(ProvisioningError):
    kind = ErrorKind.USER_CREATION_FAILED


class StorageError(ProvisioningError):
    kind = ErrorKind.STORAGE_FAILED
