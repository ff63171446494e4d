"""Process table provider built on psutil."""

import os
from dataclasses import dataclass

import psutil
import structlog

log = structlog.get_logger()

DEFAULT_CLOCK_TICKS = 100


class ProcessTableUnavailable(Exception):
    """Raised when the process table cannot be enumerated at all."""


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """One raw OS process observation.

    cpu_ticks is user + system time since the process started; time spent
    in children is not included. resident_pages is None where the platform
    cannot report it.
    """

    pid: int
    command_name: str  # Bare executable name, no path or arguments
    command_line: str
    cpu_ticks: int
    resident_pages: int | None = None


def _clock_ticks() -> int:
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError, AttributeError):
        return DEFAULT_CLOCK_TICKS
    return ticks if ticks > 0 else DEFAULT_CLOCK_TICKS


class ProcessTable:
    """Lists processes with cumulative CPU ticks and resident pages."""

    ATTRS = ["pid", "name", "cmdline", "cpu_times", "memory_info"]

    def __init__(self, clock_ticks: int | None = None, page_size_bytes: int | None = None):
        self._clock_ticks = clock_ticks or _clock_ticks()
        if page_size_bytes is None:
            from host_sampler.processes import page_size

            page_size_bytes = page_size()
        self._page_size = page_size_bytes

    def list_processes(self) -> list[ProcessRecord]:
        """Return a record for every process visible to this user.

        Processes that exit or deny access mid-scan are skipped.

        Raises:
            ProcessTableUnavailable: If the table itself cannot be read.
        """
        records: list[ProcessRecord] = []
        try:
            for proc in psutil.process_iter(attrs=self.ATTRS):
                try:
                    record = self._to_record(proc.info)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
                if record is not None:
                    records.append(record)
        except (psutil.Error, OSError) as e:
            raise ProcessTableUnavailable(str(e)) from e
        return records

    def _to_record(self, info: dict) -> ProcessRecord | None:
        pid = info.get("pid")
        if pid is None:
            return None

        name = info.get("name") or ""
        cmdline = info.get("cmdline") or []
        command_line = " ".join(cmdline) if cmdline else name

        # utime/stime only; children_user/children_system are excluded
        cpu_times = info.get("cpu_times")
        if cpu_times is not None:
            seconds = (cpu_times.user or 0.0) + (cpu_times.system or 0.0)
            cpu_ticks = int(round(seconds * self._clock_ticks))
        else:
            cpu_ticks = 0

        mem_info = info.get("memory_info")
        resident_pages = mem_info.rss // self._page_size if mem_info is not None else None

        return ProcessRecord(
            pid=pid,
            command_name=name,
            command_line=command_line,
            cpu_ticks=cpu_ticks,
            resident_pages=resident_pages,
        )
