"""CLI commands for host-sampler."""

import click


def _load_config():
    """Load config, turning validation errors into a clean exit."""
    from host_sampler.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e


def _open_store(config):
    """Initialize the checkpoint database and return (connection, store)."""
    from host_sampler.storage import SqliteCheckpointStore, get_connection, init_database

    init_database(config.db_path)
    conn = get_connection(config.db_path)
    return conn, SqliteCheckpointStore(conn, scope=config.system.checkpoint_scope)


def _echo_result(result, config, as_json: bool) -> None:
    """Print one SampleResult."""
    import json

    from host_sampler import logging as hlog
    from host_sampler.formatting import cpu_lines, group_table

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if "cpu" in result.errors:
        hlog.counter_source_unavailable(result.errors["cpu"])
    if "processes" in result.errors:
        hlog.sample_failed("processes", result.errors["processes"])

    if result.cpu is not None:
        for line in cpu_lines(result.cpu):
            click.echo(line)

    if config.processes.enabled and "processes" not in result.errors:
        if result.processes is None:
            hlog.cold_start("processes")
        else:
            click.echo()
            for line in group_table(result.processes.top(config.processes.top)):
                click.echo(line)


@click.group()
@click.version_option(package_name="host-sampler")
def main() -> None:
    """Sample host CPU and per-process usage from kernel counters."""
    pass


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--cpu/--no-cpu", default=None, help="Enable or disable CPU utilization")
@click.option(
    "--processes/--no-processes", default=None, help="Enable or disable process aggregation"
)
@click.option("--skip-load-average", is_flag=True, help="Don't read the load average")
def sample(
    as_json: bool, cpu: bool | None, processes: bool | None, skip_load_average: bool
) -> None:
    """Take one sample, diffing against the last stored checkpoint."""
    from host_sampler.logging import configure
    from host_sampler.sampler import Sampler

    config = _load_config()
    if cpu is not None:
        config.cpu.enabled = cpu
    if processes is not None:
        config.processes.enabled = processes
    if skip_load_average:
        config.cpu.skip_load_average = True

    configure(config)
    conn, store = _open_store(config)
    try:
        result = Sampler(config, store).sample_once()
    finally:
        conn.close()

    _echo_result(result, config, as_json)


@main.command()
@click.option("--interval", "-i", type=float, default=None, help="Seconds between samples")
@click.option("--count", "-n", type=int, default=None, help="Stop after this many samples")
@click.option("--json", "as_json", is_flag=True, help="Print each report as JSON")
def watch(interval: float | None, count: int | None, as_json: bool) -> None:
    """Sample repeatedly at a fixed interval."""
    from host_sampler import logging as hlog
    from host_sampler.sampler import Sampler

    config = _load_config()
    interval = interval or config.system.sample_interval
    if interval <= 0:
        raise click.BadParameter("interval must be > 0", param_hint="--interval")

    hlog.configure(config)
    conn, store = _open_store(config)
    sampler = Sampler(config, store)
    taken = 0

    def on_result(result) -> None:
        nonlocal taken
        taken += 1
        _echo_result(result, config, as_json)

    hlog.sampling_started(interval)
    try:
        sampler.run(interval, count=count, on_result=on_result)
    except KeyboardInterrupt:
        pass
    finally:
        conn.close()
        hlog.sampling_stopped(taken)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def info(as_json: bool) -> None:
    """Show host information used for normalization."""
    import json

    from host_sampler.sysinfo import SystemInfo

    config = _load_config()
    data = SystemInfo(config.system.proc_dir).to_dict()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    for key, value in data.items():
        click.echo(f"{key}: {value if value is not None else 'unknown'}")


@main.group()
def checkpoints() -> None:
    """Inspect or clear stored checkpoints."""
    pass


@checkpoints.command("list")
def checkpoints_list() -> None:
    """List stored checkpoints."""
    from datetime import datetime

    from host_sampler.storage import DatabaseNotAvailable, SqliteCheckpointStore, require_database

    config = _load_config()
    try:
        with require_database(config.db_path) as conn:
            store = SqliteCheckpointStore(conn, scope=config.system.checkpoint_scope)
            entries = store.list_checkpoints()
            if not entries:
                click.echo("No checkpoints stored.")
                return
            click.echo(f"{'Key':30}  {'Updated':19}")
            click.echo("-" * 51)
            for entry in entries:
                updated = datetime.fromtimestamp(entry["updated_at"]).strftime("%Y-%m-%d %H:%M:%S")
                click.echo(f"{entry['key'][:30]:30}  {updated}")
    except DatabaseNotAvailable:
        return


@checkpoints.command("clear")
@click.argument("key", required=False)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def checkpoints_clear(key: str | None, force: bool) -> None:
    """Delete one checkpoint, or all of them, forcing a cold start."""
    from host_sampler import logging as hlog
    from host_sampler.storage import SqliteCheckpointStore, require_database

    config = _load_config()
    with require_database(config.db_path, exit_on_missing=True) as conn:
        store = SqliteCheckpointStore(conn, scope=config.system.checkpoint_scope)
        keys = [key] if key else [e["key"] for e in store.list_checkpoints()]
        if not keys:
            click.echo("No checkpoints stored.")
            return

        if not force:
            click.confirm(f"Delete {len(keys)} checkpoint(s)?", abort=True)

        for k in keys:
            if store.forget(k):
                hlog.checkpoint_cleared(k)
            else:
                click.echo(f"No checkpoint named {k}", err=True)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[cpu]")
    click.echo(f"  enabled = {cfg.cpu.enabled}")
    click.echo(f"  skip_load_average = {cfg.cpu.skip_load_average}")
    click.echo(f"  checkpoint_key = {cfg.cpu.checkpoint_key}")
    click.echo()
    click.echo("[processes]")
    click.echo(f"  enabled = {cfg.processes.enabled}")
    click.echo(f"  checkpoint_key = {cfg.processes.checkpoint_key}")
    click.echo(f"  min_interval_seconds = {cfg.processes.min_interval_seconds}")
    click.echo(f"  top = {cfg.processes.top}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  proc_dir = {cfg.system.proc_dir}")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  checkpoint_scope = {cfg.system.checkpoint_scope!r}")


@config.command("init")
def config_init() -> None:
    """Write a default config file if none exists."""
    from host_sampler import logging as hlog
    from host_sampler.config import Config

    cfg = Config()
    if cfg.config_path.exists():
        click.echo(f"Config already exists at {cfg.config_path}")
        return
    cfg.save()
    hlog.config_created(str(cfg.config_path))


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from host_sampler.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
