"""Host information: processor count, OS family and the /proc location."""

import platform
import socket
import time
from datetime import datetime
from pathlib import Path

import psutil
import structlog

log = structlog.get_logger()


class SystemInfo:
    """Describes the host the sampler runs on.

    The engines only need num_processors() and proc_counter_source_path();
    the rest is reported by the info command.
    """

    def __init__(self, proc_dir: str | Path = "/proc"):
        self._proc_dir = Path(proc_dir)
        self._num_processors: int | None = None

    def architecture(self) -> str:
        return platform.machine()

    def os_family(self) -> str:
        """Lowercase OS family, e.g. "linux", "darwin", "freebsd"."""
        return platform.system().lower()

    def os_version(self) -> str:
        return platform.release()

    def proc_dir(self) -> Path:
        return self._proc_dir

    def proc_counter_source_path(self) -> Path:
        """Path of the kernel CPU counter source (/proc/stat)."""
        return self._proc_dir / "stat"

    def num_processors(self) -> int | None:
        """Number of processors, or None if it cannot be determined.

        On Linux this counts "processor" entries in cpuinfo; elsewhere psutil
        is asked. The value is cached after the first successful lookup.
        """
        if self._num_processors is None:
            self._num_processors = self._lookup_num_processors()
        return self._num_processors

    def _lookup_num_processors(self) -> int | None:
        if self.os_family() == "linux":
            try:
                text = (self._proc_dir / "cpuinfo").read_text()
            except OSError as e:
                log.warning("cpuinfo_unreadable", error=str(e))
                return None
            count = sum(
                1
                for line in text.splitlines()
                if line.startswith("processor") and line.partition(":")[0].strip() == "processor"
            )
            return count or None

        count = psutil.cpu_count()
        return count if count else None

    def hostname(self) -> str:
        return socket.gethostname()

    def timezone(self) -> str:
        return time.strftime("%Z")

    def timezone_offset(self) -> int:
        """UTC offset in whole hours."""
        offset = datetime.now().astimezone().utcoffset()
        return int(offset.total_seconds() // 3600) if offset else 0

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "architecture": self.architecture(),
            "os": self.os_family(),
            "os_version": self.os_version(),
            "num_processors": self.num_processors(),
            "hostname": self.hostname(),
            "timezone": self.timezone(),
            "timezone_offset": self.timezone_offset(),
        }
