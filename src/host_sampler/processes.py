"""Per-process CPU and memory usage, grouped by command name.

CPU is measured since the previous sample and expressed as a percentage of
all CPU capacity on the host, i.e. normalized by the processor count. On an
8-CPU machine the numbers are therefore roughly 8x lower than what top or
htop show for the same process.

The previous sample is kept as a checkpoint (pid -> cumulative CPU ticks,
wall-clock time and jiffy counter) so the sampler can be restarted between
calls without losing its baseline.
"""

import os
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from host_sampler.checkpoint import (
    CheckpointStore,
    CheckpointValue,
    MalformedCheckpoint,
    coerce_int,
    coerce_optional_int,
    format_timestamp,
    parse_timestamp,
    require_mapping,
)
from host_sampler.config import Config
from host_sampler.proctable import ProcessRecord, ProcessTable
from host_sampler.sysinfo import SystemInfo

log = structlog.get_logger()

# Most common page size; used when the system can't be asked. Bytes.
DEFAULT_PAGE_SIZE = 4096

PID_KEY_PREFIX = "pid."

_JIFFIES_RE = re.compile(r"^jiffies: (\d+)$", re.MULTILINE)

_page_size: int | None = None


def page_size(default: int = DEFAULT_PAGE_SIZE) -> int:
    """Return the memory page size in bytes.

    The system is asked once and the answer cached; default is returned if
    the query fails.
    """
    global _page_size
    if _page_size is None:
        try:
            _page_size = os.sysconf("SC_PAGE_SIZE")
        except (ValueError, OSError, AttributeError):
            _page_size = 0
    return _page_size if _page_size > 0 else default


def read_jiffies(
    proc_dir: str | Path,
    *,
    now: float | None = None,
    fallback_ticks_per_second: int = 100,
) -> int:
    """Read the kernel jiffy counter from timer_list.

    Jiffies per second vary between kernels (100 to 1000), so the counter is
    read rather than derived from wall time. If timer_list is missing or
    unreadable, wall time at fallback_ticks_per_second is used instead.
    """
    try:
        text = (Path(proc_dir) / "timer_list").read_text()
    except OSError:
        text = ""
    match = _JIFFIES_RE.search(text)
    if match:
        return int(match.group(1))
    if now is None:
        now = time.time()
    return int(now * fallback_ticks_per_second)


@dataclass
class PidCpuCheckpoint:
    """Baseline for the next process sample."""

    cpu_ticks_by_pid: dict[int, int] = field(default_factory=dict)
    sampled_at: datetime | str | None = None
    jiffies: int | None = None

    def to_checkpoint(self) -> CheckpointValue:
        """Serialize to a flat checkpoint map, one pid.<pid> key per process."""
        data: CheckpointValue = {
            "last_run": format_timestamp(self.sampled_at),
            "last_jiffies": self.jiffies,
        }
        for pid, ticks in self.cpu_ticks_by_pid.items():
            data[f"{PID_KEY_PREFIX}{pid}"] = ticks
        return data

    @classmethod
    def from_checkpoint(cls, data: object) -> "PidCpuCheckpoint":
        """Restore from a checkpoint map.

        Raises:
            MalformedCheckpoint: If data is not a map or a value is not numeric.
        """
        d = require_mapping(data)
        by_pid: dict[int, int] = {}
        for key in d:
            if not isinstance(key, str) or not key.startswith(PID_KEY_PREFIX):
                continue
            try:
                pid = int(key[len(PID_KEY_PREFIX) :])
            except ValueError:
                raise MalformedCheckpoint(f"bad pid key {key!r}") from None
            by_pid[pid] = coerce_int(d, key)

        return cls(
            cpu_ticks_by_pid=by_pid,
            sampled_at=parse_timestamp(d.get("last_run")),
            jiffies=coerce_optional_int(d, "last_jiffies"),
        )

    @property
    def is_complete(self) -> bool:
        """True when the checkpoint can serve as a baseline."""
        return isinstance(self.sampled_at, datetime) and self.jiffies is not None


@dataclass
class ProcessUsage:
    """A process record with its CPU usage for the current interval."""

    record: ProcessRecord
    recent_cpu_ticks: int | None = None
    recent_cpu_percentage: float | None = None


@dataclass
class ProcessGroupSummary:
    """Processes sharing one command name."""

    command_name: str
    count: int = 0
    cpu_percentage: float = 0.0
    memory_megabytes: float = 0.0
    command_lines: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary."""
        return {
            "cmd": self.command_name,
            "count": self.count,
            "cpu": self.cpu_percentage,
            "memory": self.memory_megabytes,
            "cmd_lines": list(self.command_lines),
        }


@dataclass
class ProcessReport:
    """Result of one warm ProcessCollector.sample() call."""

    groups: dict[str, ProcessGroupSummary]
    processes: list[ProcessUsage]
    elapsed_seconds: float
    elapsed_jiffies: int

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serialize the groups, keyed by command name."""
        return {name: group.to_dict() for name, group in self.groups.items()}

    def top(self, n: int) -> list[ProcessGroupSummary]:
        """The n groups using the most CPU, then memory."""
        ranked = sorted(
            self.groups.values(),
            key=lambda g: (g.cpu_percentage, g.memory_megabytes),
            reverse=True,
        )
        return ranked[:n]


def compute_usage(
    records: Iterable[ProcessRecord],
    previous: Mapping[int, int],
    *,
    elapsed_seconds: float,
    elapsed_jiffies: int,
    num_processors: int,
    min_interval_seconds: float = 1.0,
) -> list[ProcessUsage]:
    """Attribute CPU ticks for the interval to each process.

    A pid not seen in the previous sample is charged its whole cumulative
    CPU time. Percentages are left as None when less than
    min_interval_seconds elapsed or no jiffies elapsed.
    """
    with_percentage = elapsed_seconds >= min_interval_seconds and elapsed_jiffies > 0
    usages = []
    for record in records:
        last_cpu = previous.get(record.pid)
        if last_cpu is not None:
            recent = record.cpu_ticks - last_cpu
        else:
            recent = record.cpu_ticks

        percentage = None
        if with_percentage:
            # share of available time slots, as a percentage of all processors
            percentage = ((recent / elapsed_jiffies) * 100.0) / num_processors

        usages.append(
            ProcessUsage(
                record=record,
                recent_cpu_ticks=recent,
                recent_cpu_percentage=percentage,
            )
        )
    return usages


def group_processes(
    usages: Iterable[ProcessUsage], page_size_bytes: int
) -> dict[str, ProcessGroupSummary]:
    """Group processes by command name, summing CPU and memory."""
    grouped: dict[str, ProcessGroupSummary] = {}
    for usage in usages:
        proc = usage.record
        group = grouped.get(proc.command_name)
        if group is None:
            group = grouped[proc.command_name] = ProcessGroupSummary(proc.command_name)

        group.count += 1
        group.cpu_percentage += usage.recent_cpu_percentage or 0.0
        if proc.resident_pages:
            group.memory_megabytes += (proc.resident_pages * page_size_bytes) / 1024 / 1024
        if proc.command_line not in group.command_lines:
            group.command_lines.append(proc.command_line)
    return grouped


class ProcessCollector:
    """Samples the process table and reports usage grouped by command.

    The first call after a cold start stores a baseline and reports
    nothing; later calls report CPU used since the previous call.
    Calls on one instance must not overlap.
    """

    def __init__(
        self,
        config: Config,
        store: CheckpointStore,
        system_info: SystemInfo | None = None,
        process_table: ProcessTable | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.system_info = system_info or SystemInfo(config.system.proc_dir)
        self._process_table = process_table
        self._clock = clock or datetime.now
        self.checkpoint: PidCpuCheckpoint | None = None

    @property
    def process_table(self) -> ProcessTable:
        if self._process_table is None:
            self._process_table = ProcessTable(page_size_bytes=self._page_size())
        return self._process_table

    def _page_size(self) -> int:
        return page_size(default=self.config.processes.default_page_size)

    def _num_processors(self) -> int:
        n = self.system_info.num_processors()
        if not n:
            log.warning("num_processors_unknown", assumed=1)
            return 1
        return n

    def sample(self) -> ProcessReport | None:
        """Take one sample.

        Raises:
            ProcessTableUnavailable: If the process list cannot be read. The
                stored checkpoint is left as it was.
        """
        cfg = self.config.processes
        records = self.process_table.list_processes()

        now = self._clock()
        current_jiffies = read_jiffies(
            self.system_info.proc_dir(),
            now=now.timestamp(),
            fallback_ticks_per_second=cfg.fallback_ticks_per_second,
        )
        previous = self._restore(cfg.checkpoint_key)
        elapsed_seconds = self._elapsed_seconds(previous, now)

        report = None
        if previous is not None and elapsed_seconds is not None:
            elapsed_jiffies = current_jiffies - previous.jiffies  # type: ignore[operator]
            usages = compute_usage(
                records,
                previous.cpu_ticks_by_pid,
                elapsed_seconds=elapsed_seconds,
                elapsed_jiffies=elapsed_jiffies,
                num_processors=self._num_processors(),
                min_interval_seconds=cfg.min_interval_seconds,
            )
            if elapsed_seconds < cfg.min_interval_seconds:
                log.debug("interval_too_short", elapsed=elapsed_seconds)
            report = ProcessReport(
                groups=group_processes(usages, self._page_size()),
                processes=usages,
                elapsed_seconds=elapsed_seconds,
                elapsed_jiffies=elapsed_jiffies,
            )
        else:
            log.info("cold_start", checkpoint=cfg.checkpoint_key, processes=len(records))

        checkpoint = PidCpuCheckpoint(
            cpu_ticks_by_pid={r.pid: r.cpu_ticks for r in records},
            sampled_at=now,
            jiffies=current_jiffies,
        )
        self.store.remember(cfg.checkpoint_key, checkpoint.to_checkpoint())
        self.checkpoint = checkpoint
        return report

    @staticmethod
    def _elapsed_seconds(previous: PidCpuCheckpoint | None, now: datetime) -> float | None:
        if previous is None or not previous.is_complete:
            return None
        try:
            return (now - previous.sampled_at).total_seconds()  # type: ignore[operator]
        except TypeError:
            # Mixing naive and aware timestamps
            return None

    def _restore(self, key: str) -> PidCpuCheckpoint | None:
        data = self.store.recall(key)
        if data is None:
            return None
        try:
            return PidCpuCheckpoint.from_checkpoint(data)
        except MalformedCheckpoint as e:
            log.warning("checkpoint_discarded", checkpoint=key, error=str(e))
            return None
