"""Configuration system for host-sampler."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from host_sampler.storage import SCHEMA_VERSION_KEY


@dataclass
class CpuConfig:
    """CPU utilization engine configuration."""

    enabled: bool = True
    # Load average lookup can be costly on some platforms
    skip_load_average: bool = False
    checkpoint_key: str = "cpu_stats"


@dataclass
class ProcessesConfig:
    """Process aggregation engine configuration.

    Per-process CPU percentages are only computed when at least
    min_interval_seconds of wall-clock time separate two samples.
    """

    enabled: bool = True
    checkpoint_key: str = "process_cpu_checkpoint"
    min_interval_seconds: float = 1.0
    fallback_ticks_per_second: int = 100  # Used when /proc/timer_list is unavailable
    default_page_size: int = 4096  # Bytes, used when the page size query fails
    top: int = 10  # Groups shown by the CLI


@dataclass
class SystemConfig:
    """Host and runtime configuration."""

    proc_dir: str = "/proc"
    sample_interval: float = 60.0  # Seconds between samples in watch mode
    checkpoint_scope: str = ""  # Namespace for checkpoint keys
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    cpu: CpuConfig = field(default_factory=CpuConfig)
    processes: ProcessesConfig = field(default_factory=ProcessesConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "host-sampler"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "host-sampler"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "host-sampler"

    @property
    def db_path(self) -> Path:
        """Checkpoint database path."""
        return self.data_dir / "checkpoints.db"

    @property
    def log_path(self) -> Path:
        """Sampler log path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "sampler.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ["cpu", "processes", "system"]:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            cpu=_load_cpu_config(data.get("cpu", {})),
            processes=_load_processes_config(data.get("processes", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _load_cpu_config(data: dict) -> CpuConfig:
    """Load CPU config from TOML data."""
    d = CpuConfig()
    checkpoint_key = data.get("checkpoint_key", d.checkpoint_key)
    if not checkpoint_key:
        raise ValueError("cpu.checkpoint_key must not be empty")
    if checkpoint_key == SCHEMA_VERSION_KEY:
        raise ValueError(f"cpu.checkpoint_key must not be '{SCHEMA_VERSION_KEY}'")

    return CpuConfig(
        enabled=data.get("enabled", d.enabled),
        skip_load_average=data.get("skip_load_average", d.skip_load_average),
        checkpoint_key=checkpoint_key,
    )


def _load_processes_config(data: dict) -> ProcessesConfig:
    """Load processes config from TOML data, using dataclass defaults for missing fields."""
    d = ProcessesConfig()

    checkpoint_key = data.get("checkpoint_key", d.checkpoint_key)
    min_interval_seconds = data.get("min_interval_seconds", d.min_interval_seconds)
    fallback_ticks = data.get("fallback_ticks_per_second", d.fallback_ticks_per_second)
    default_page_size = data.get("default_page_size", d.default_page_size)
    top = data.get("top", d.top)

    if not checkpoint_key:
        raise ValueError("processes.checkpoint_key must not be empty")
    if checkpoint_key == SCHEMA_VERSION_KEY:
        raise ValueError(f"processes.checkpoint_key must not be '{SCHEMA_VERSION_KEY}'")
    if min_interval_seconds < 0:
        raise ValueError(f"min_interval_seconds must be >= 0, got {min_interval_seconds}")
    if fallback_ticks < 1:
        raise ValueError(f"fallback_ticks_per_second must be >= 1, got {fallback_ticks}")
    if default_page_size < 1:
        raise ValueError(f"default_page_size must be >= 1, got {default_page_size}")
    if top < 1:
        raise ValueError(f"top must be >= 1, got {top}")

    return ProcessesConfig(
        enabled=data.get("enabled", d.enabled),
        checkpoint_key=checkpoint_key,
        min_interval_seconds=min_interval_seconds,
        fallback_ticks_per_second=fallback_ticks,
        default_page_size=default_page_size,
        top=top,
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    sample_interval = data.get("sample_interval", d.sample_interval)
    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")

    return SystemConfig(
        proc_dir=data.get("proc_dir", d.proc_dir),
        sample_interval=sample_interval,
        checkpoint_scope=data.get("checkpoint_scope", d.checkpoint_scope),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )
