# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Token protected status report of the node: service state, memory, CPU and disk usage
"""

import hmac
from typing import List, NamedTuple, Optional

import psutil

from .services import ServiceManager

MEGABYTE = 1024 * 1024
GIGABYTE = 1024 * MEGABYTE


class MonitorReport(NamedTuple):
    status: str
    memory_used_mb: int
    memory_total_mb: int
    cpu_percent: float
    disk_used_gb: float
    disk_total_gb: float

    def lines(self) -> List[str]:
        return [
            f'Status: MongoDB {self.status}',
            f'Memory: {self.memory_used_mb}MB/{self.memory_total_mb}MB',
            f'CPU: {self.cpu_percent:.1f}%',
            f'Disk: {self.disk_used_gb:.1f}G/{self.disk_total_gb:.1f}G',
        ]


def token_matches(presented: Optional[str], expected: Optional[str]) -> bool:
    """
    An unset expected token never matches, so the report is closed until a token is configured.
    """
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode('utf8'), expected.encode('utf8'))


def collect_report(service_manager: ServiceManager, service_name: str = 'mongod', disk_path: str = '/',
                   cpu_interval: float = 0.5) -> MonitorReport:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(disk_path)
    return MonitorReport(
        status=service_manager.active_state(service_name),
        memory_used_mb=memory.used // MEGABYTE,
        memory_total_mb=memory.total // MEGABYTE,
        cpu_percent=psutil.cpu_percent(interval=cpu_interval),
        disk_used_gb=disk.used / GIGABYTE,
        disk_total_gb=disk.total / GIGABYTE,
    )
