"""Host metrics sampler: CPU utilization and per-process usage from kernel counters."""
