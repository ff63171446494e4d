"""Runs the CPU and process engines together."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from host_sampler.checkpoint import CheckpointStore
from host_sampler.config import Config
from host_sampler.cpu import CpuCollector, CpuSample
from host_sampler.processes import ProcessCollector, ProcessReport
from host_sampler.proctable import ProcessTable, ProcessTableUnavailable
from host_sampler.sysinfo import SystemInfo

log = structlog.get_logger()


@dataclass
class SampleResult:
    """Outcome of one pass over all enabled engines."""

    cpu: CpuSample | None = None
    processes: ProcessReport | None = None
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary."""
        return {
            "cpu": self.cpu.to_dict() if self.cpu is not None else None,
            "processes": self.processes.to_dict() if self.processes is not None else None,
            "errors": dict(self.errors),
        }


class Sampler:
    """One CpuCollector and one ProcessCollector sharing a checkpoint store.

    A failure in one engine never affects the other.
    """

    def __init__(
        self,
        config: Config,
        store: CheckpointStore,
        *,
        system_info: SystemInfo | None = None,
        process_table: ProcessTable | None = None,
    ):
        self.config = config
        self.system_info = system_info or SystemInfo(config.system.proc_dir)
        self.cpu = CpuCollector(config, store, self.system_info)
        self.processes = ProcessCollector(config, store, self.system_info, process_table)

    def sample_once(self) -> SampleResult:
        """Run each enabled engine once."""
        result = SampleResult()

        if self.config.cpu.enabled:
            result.cpu = self.cpu.sample()
            if result.cpu.error:
                result.errors["cpu"] = result.cpu.error

        if self.config.processes.enabled:
            try:
                result.processes = self.processes.sample()
            except ProcessTableUnavailable as e:
                log.error("process_table_unavailable", error=str(e))
                result.errors["processes"] = str(e)

        return result

    def run(
        self,
        interval: float,
        count: int | None = None,
        on_result: Callable[[SampleResult], None] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> int:
        """Sample every interval seconds, count times or until interrupted.

        Returns the number of samples taken.
        """
        sleep = sleep or time.sleep
        taken = 0
        while count is None or taken < count:
            started = time.monotonic()
            result = self.sample_once()
            taken += 1
            if on_result is not None:
                on_result(result)
            if count is not None and taken >= count:
                break
            sleep(max(0.0, interval - (time.monotonic() - started)))
        return taken
