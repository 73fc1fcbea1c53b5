"""Host telemetry collected on every heartbeat."""
from __future__ import annotations

import asyncio
import os
import socket
import time
from typing import Any, Dict, List

import psutil

from citrus_agent.services.git import GitRepository


def _disks() -> List[Dict[str, Any]]:
    disks = []
    for part in psutil.disk_partitions(all=False):
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (PermissionError, OSError):
            continue
        disks.append(
            {
                "fs": part.device,
                "mount": part.mountpoint,
                "size": usage.total,
                "used": usage.used,
                "available": usage.free,
            }
        )
    return disks


def _sample() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "hostname": socket.gethostname(),
        "uptime": int(time.time() - psutil.boot_time()),
        "cpu": {
            "load": psutil.cpu_percent(interval=None),
            "cores": os.cpu_count(),
        },
        "memory": {
            "total": memory.total,
            "used": memory.used,
            "free": memory.available,
        },
        "disk": _disks(),
    }


class TelemetryCollector:
    """Produces the snapshot attached to each ``status_update``."""

    def __init__(self, git: GitRepository) -> None:
        self._git = git

    async def collect(self) -> Dict[str, Any]:
        snapshot = await asyncio.to_thread(_sample)
        snapshot["gitVersion"] = await self._git.safe_revision()
        snapshot["timestamp"] = int(time.time() * 1000)
        return snapshot
