"""Host resource snapshot attached to metrics responses."""

from __future__ import annotations

import os
import resource
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from swarm_conductor.storage.common import utc_now


@dataclass(slots=True, frozen=True)
class ResourceSnapshot:
    cpu_count: int
    load_average: tuple[float, float, float] | None
    disk_total_bytes: int
    disk_used_bytes: int
    disk_free_bytes: int
    peak_rss_bytes: int
    captured_at: str

    @property
    def disk_used_percent(self) -> float:
        if self.disk_total_bytes == 0:
            return 0.0
        return round(self.disk_used_bytes / self.disk_total_bytes * 100, 2)

    def to_payload(self) -> dict[str, Any]:
        return {
            "cpu": {
                "count": self.cpu_count,
                "load_average": list(self.load_average) if self.load_average else None,
            },
            "disk": {
                "total": self.disk_total_bytes,
                "used": self.disk_used_bytes,
                "free": self.disk_free_bytes,
                "percentage": self.disk_used_percent,
            },
            "memory": {"peak_rss": self.peak_rss_bytes},
            "timestamp": self.captured_at,
        }


def capture_resources(path: Path) -> ResourceSnapshot:
    """Snapshot for the filesystem holding ``path``."""

    try:
        load_average: tuple[float, float, float] | None = os.getloadavg()
    except OSError:
        load_average = None
    target = path if path.exists() else path.parent
    usage = shutil.disk_usage(target if target.exists() else Path.cwd())
    return ResourceSnapshot(
        cpu_count=os.cpu_count() or 1,
        load_average=load_average,
        disk_total_bytes=usage.total,
        disk_used_bytes=usage.used,
        disk_free_bytes=usage.free,
        peak_rss_bytes=peak_rss_bytes(),
        captured_at=utc_now().isoformat(),
    )


def peak_rss_bytes() -> int:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes.
    if sys.platform == "darwin":
        return int(peak)
    return int(peak) * 1024
