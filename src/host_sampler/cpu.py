"""System-wide CPU utilization from /proc/stat counter snapshots."""

import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from host_sampler.checkpoint import (
    CheckpointStore,
    CheckpointValue,
    MalformedCheckpoint,
    coerce_int,
    format_timestamp,
    parse_timestamp,
    require_mapping,
)
from host_sampler.config import Config
from host_sampler.sysinfo import SystemInfo

log = structlog.get_logger()


class CounterSourceUnavailable(Exception):
    """Raised when the CPU counter source cannot be read."""


def _percent(delta: int, div: int) -> int:
    """Whole percentage of delta in div, rounded half up. Zero when div is not positive."""
    if div <= 0:
        return 0
    return (100 * delta + div // 2) // div


def _whole_percentages(deltas: list[int], div: int) -> list[int]:
    """Round each share of div to a whole percentage, keeping the total within 100 +/- 1.

    Rounding every share half up can push the total to 102 (or down to 98)
    on short intervals. When that happens the total is brought back to 100
    by taking a point from the shares that were rounded up the most, or
    giving one to the shares that were rounded down the most.
    """
    values = [_percent(d, div) for d in deltas]
    drift = sum(values) - 100
    if div <= 0 or abs(drift) <= 1:
        return values

    # rounding error of each share, in units of 1/div percent
    errors = [v * div - 100 * d for v, d in zip(values, deltas)]
    order = sorted(range(len(values)), key=lambda i: errors[i], reverse=drift > 0)
    step = -1 if drift > 0 else 1
    for i in order[: abs(drift)]:
        values[i] += step
    return values


@dataclass
class CpuUtilizationReport:
    """Percentages for one interval between two counter snapshots."""

    user: int
    system: int
    idle: int
    io_wait: int
    steal: int | None  # Only when both snapshots report steal time
    interrupts_per_second: float | None
    procs_running: int
    procs_blocked: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary keyed by report labels."""
        result: dict[str, Any] = {
            "User": self.user,
            "System": self.system,
            "Idle": self.idle,
            "IO wait": self.io_wait,
            "Procs running": self.procs_running,
            "Procs blocked": self.procs_blocked,
        }
        if self.steal is not None:
            result["Steal"] = self.steal
        if self.interrupts_per_second is not None:
            result["Interrupts"] = self.interrupts_per_second
        return result


@dataclass
class CpuCounterSnapshot:
    """Absolute CPU counters read from the kernel.

    user already includes nice time and system includes hard and soft
    interrupt time. procs_running and procs_blocked are instantaneous.
    """

    user: int = 0
    system: int = 0
    idle: int = 0
    io_wait: int = 0
    interrupts: int = 0
    steal: int = 0
    procs_running: int = 0
    procs_blocked: int = 0
    sampled_at: datetime | str | None = None

    def diff(self, previous: "CpuCounterSnapshot") -> CpuUtilizationReport:
        """Compute utilization for the interval since previous.

        When no CPU ticks elapsed every percentage is 0. A negative
        interrupt delta (counter wrapped or reset) is reported as 0.
        """
        deltas = [
            self.user - previous.user,
            self.system - previous.system,
            self.idle - previous.idle,
            self.io_wait - previous.io_wait,
        ]
        with_steal = self.steal > 0 and previous.steal > 0
        if with_steal:
            deltas.append(self.steal - previous.steal)

        percentages = _whole_percentages(deltas, sum(deltas))
        user, system, idle, io_wait = percentages[:4]

        return CpuUtilizationReport(
            user=user,
            system=system,
            idle=idle,
            io_wait=io_wait,
            steal=percentages[4] if with_steal else None,
            interrupts_per_second=self._interrupt_rate(previous),
            procs_running=self.procs_running,
            procs_blocked=self.procs_blocked,
        )

    def _interrupt_rate(self, previous: "CpuCounterSnapshot") -> float | None:
        if not isinstance(self.sampled_at, datetime) or not isinstance(
            previous.sampled_at, datetime
        ):
            return None
        try:
            seconds = (self.sampled_at - previous.sampled_at).total_seconds()
        except TypeError:
            # Mixing naive and aware timestamps
            return None
        if seconds <= 0:
            return None
        rate = (self.interrupts - previous.interrupts) / seconds
        return max(0.0, rate)

    def to_checkpoint(self) -> CheckpointValue:
        """Serialize to a flat checkpoint map."""
        return {
            "user": self.user,
            "system": self.system,
            "idle": self.idle,
            "iowait": self.io_wait,
            "interrupts": self.interrupts,
            "procs_running": self.procs_running,
            "procs_blocked": self.procs_blocked,
            "time": format_timestamp(self.sampled_at),
            "steal": self.steal,
        }

    @classmethod
    def from_checkpoint(cls, data: object) -> "CpuCounterSnapshot":
        """Restore from a checkpoint map.

        Unknown keys are ignored and missing counters default to 0.

        Raises:
            MalformedCheckpoint: If data is not a map or a counter is not numeric.
        """
        d = require_mapping(data)
        return cls(
            user=coerce_int(d, "user"),
            system=coerce_int(d, "system"),
            idle=coerce_int(d, "idle"),
            io_wait=coerce_int(d, "iowait"),
            interrupts=coerce_int(d, "interrupts"),
            steal=coerce_int(d, "steal"),
            procs_running=coerce_int(d, "procs_running"),
            procs_blocked=coerce_int(d, "procs_blocked"),
            sampled_at=parse_timestamp(d.get("time")),
        )


def _int_or_zero(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _first_int(fields: list[str]) -> int:
    return _int_or_zero(fields[1]) if len(fields) > 1 else 0


def parse_proc_stat(text: str, sampled_at: datetime | None = None) -> CpuCounterSnapshot:
    """Parse /proc/stat content into a snapshot.

    The aggregate "cpu" line is "user nice system idle iowait irq softirq steal ...".
    Older kernels print fewer columns; missing ones count as 0. Missing lines
    leave their fields at 0.
    """
    snapshot = CpuCounterSnapshot(sampled_at=sampled_at or datetime.now())

    for line in text.splitlines():
        fields = line.split()
        if not fields:
            continue
        label = fields[0]

        if label == "cpu":
            # a column that does not parse counts as 0 and keeps its position
            values = [_int_or_zero(v) for v in fields[1:9]]
            values += [0] * (8 - len(values))
            user, nice, system, idle, io_wait, hardirq, softirq, steal = values
            snapshot.user = user + nice
            snapshot.system = system + hardirq + softirq
            snapshot.idle = idle
            snapshot.io_wait = io_wait
            snapshot.steal = steal
        elif label == "intr":
            snapshot.interrupts = _first_int(fields)
        elif label == "procs_running":
            snapshot.procs_running = _first_int(fields)
        elif label == "procs_blocked":
            snapshot.procs_blocked = _first_int(fields)

    return snapshot


def read_cpu_counters(path: str | Path, *, now: datetime | None = None) -> CpuCounterSnapshot:
    """Read and parse the CPU counter source.

    Raises:
        CounterSourceUnavailable: If the file cannot be read.
    """
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise CounterSourceUnavailable(f"could not retrieve CPU stats from {path}: {e}") from e
    return parse_proc_stat(text, sampled_at=now)


@dataclass
class LoadAverage:
    """1, 5 and 15 minute load averages divided by the processor count."""

    last_minute: float
    last_five_minutes: float
    last_fifteen_minutes: float

    def to_dict(self) -> dict[str, float]:
        """Serialize to a dictionary keyed by report labels."""
        return {
            "Last minute": self.last_minute,
            "Last five minutes": self.last_five_minutes,
            "Last fifteen minutes": self.last_fifteen_minutes,
        }


def read_load_average(num_processors: int | None) -> LoadAverage:
    """Read the load average, normalized per processor.

    An unknown processor count is treated as 1.

    Raises:
        OSError: If the platform cannot report a load average.
    """
    one, five, fifteen = os.getloadavg()
    n = num_processors if num_processors and num_processors > 0 else 1
    return LoadAverage(
        last_minute=one / n,
        last_five_minutes=five / n,
        last_fifteen_minutes=fifteen / n,
    )


@dataclass
class CpuSample:
    """Result of one CpuCollector.sample() call."""

    utilization: CpuUtilizationReport | None = None
    load_average: LoadAverage | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize both reports into one dictionary."""
        result: dict[str, Any] = {}
        if self.utilization is not None:
            result.update(self.utilization.to_dict())
        if self.load_average is not None:
            result.update(self.load_average.to_dict())
        return result


class CpuCollector:
    """Converts /proc/stat counters into utilization percentages.

    Each sample() diffs the fresh counters against the checkpoint left by
    the previous call, then replaces that checkpoint. The first call after
    a cold start (no checkpoint, or one that cannot be restored) reports
    only the load average.

    Calls on one instance must not overlap.
    """

    def __init__(
        self,
        config: Config,
        store: CheckpointStore,
        system_info: SystemInfo | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.system_info = system_info or SystemInfo(config.system.proc_dir)
        self._clock = clock or datetime.now
        self.checkpoint: CpuCounterSnapshot | None = None

    def sample(self) -> CpuSample:
        """Take one sample. Counter source failures only skip the utilization part."""
        result = CpuSample()

        try:
            result.utilization = self._sample_utilization()
        except CounterSourceUnavailable as e:
            log.warning("counter_source_unavailable", error=str(e))
            result.error = str(e)

        if not self.config.cpu.skip_load_average:
            try:
                result.load_average = read_load_average(self.system_info.num_processors())
            except OSError as e:
                log.warning("load_average_unavailable", error=str(e))

        return result

    def _sample_utilization(self) -> CpuUtilizationReport | None:
        key = self.config.cpu.checkpoint_key
        current = read_cpu_counters(
            self.system_info.proc_counter_source_path(), now=self._clock()
        )
        previous = self._restore(key)

        report = None
        if previous is not None:
            report = current.diff(previous)
        else:
            log.info("cold_start", checkpoint=key)

        self.store.remember(key, current.to_checkpoint())
        self.checkpoint = current
        return report

    def _restore(self, key: str) -> CpuCounterSnapshot | None:
        data = self.store.recall(key)
        if data is None:
            return None
        try:
            return CpuCounterSnapshot.from_checkpoint(data)
        except MalformedCheckpoint as e:
            log.warning("checkpoint_discarded", checkpoint=key, error=str(e))
            return None
