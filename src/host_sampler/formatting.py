"""Formatting utilities for CLI output."""

from host_sampler.cpu import CpuSample
from host_sampler.processes import ProcessGroupSummary


def format_percentage(value: float | int | None) -> str:
    """Format a percentage for table views.

    Returns "-" when there is no value (e.g. interval too short).
    """
    if value is None:
        return "-"
    if isinstance(value, int):
        return f"{value}%"
    return f"{value:.1f}%"


def format_megabytes(value: float) -> str:
    """Format memory in megabytes, switching to gigabytes above 1024."""
    if value >= 1024:
        return f"{value / 1024:.1f}G"
    return f"{value:.1f}M"


def format_rate(value: float | None) -> str:
    """Format a per-second rate."""
    if value is None:
        return "-"
    return f"{value:.1f}/s"


def cpu_lines(sample: CpuSample) -> list[str]:
    """Render a CPU sample as output lines."""
    lines = []
    u = sample.utilization
    if u is not None:
        parts = [
            f"user {format_percentage(u.user)}",
            f"system {format_percentage(u.system)}",
            f"idle {format_percentage(u.idle)}",
            f"iowait {format_percentage(u.io_wait)}",
        ]
        if u.steal is not None:
            parts.append(f"steal {format_percentage(u.steal)}")
        lines.append("CPU: " + ", ".join(parts))
        lines.append(
            f"Interrupts: {format_rate(u.interrupts_per_second)}  "
            f"running {u.procs_running}, blocked {u.procs_blocked}"
        )
    elif sample.error is None:
        lines.append("CPU: baseline stored, utilization available on next sample")

    la = sample.load_average
    if la is not None:
        lines.append(
            f"Load (per CPU): {la.last_minute:.2f} {la.last_five_minutes:.2f} "
            f"{la.last_fifteen_minutes:.2f}"
        )
    return lines


def group_table(groups: list[ProcessGroupSummary], command_width: int = 20) -> list[str]:
    """Render process groups as a fixed-width table."""
    lines = [f"{'Command':{command_width}}  {'Count':>5}  {'CPU':>7}  {'Memory':>8}"]
    lines.append("-" * (command_width + 28))
    for g in groups:
        lines.append(
            f"{g.command_name[:command_width]:{command_width}}  {g.count:>5}  "
            f"{format_percentage(g.cpu_percentage):>7}  {format_megabytes(g.memory_megabytes):>8}"
        )
    return lines
