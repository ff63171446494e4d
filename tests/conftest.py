"""Shared test fixtures for host-sampler."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from host_sampler.config import Config
from host_sampler.proctable import ProcessRecord
from host_sampler.storage import SqliteCheckpointStore, get_connection, init_database
from host_sampler.sysinfo import SystemInfo

START = datetime(2026, 1, 23, 12, 0, 0)


class MemoryStore:
    """Dict-backed checkpoint store."""

    def __init__(self):
        self.data: dict = {}
        self.writes = 0

    def remember(self, key, value):
        self.data[key] = dict(value)
        self.writes += 1

    def recall(self, key):
        return self.data.get(key)


class FakeSystemInfo(SystemInfo):
    """SystemInfo with a settable processor count."""

    def __init__(self, proc_dir: Path, processors: int | None = 4):
        super().__init__(proc_dir)
        self.processors = processors

    def num_processors(self) -> int | None:
        return self.processors


class FakeProcessTable:
    """Returns a prepared process list per call, or raises when given an exception."""

    def __init__(self, *snapshots):
        self._snapshots = list(snapshots)
        self.calls = 0

    def list_processes(self) -> list[ProcessRecord]:
        self.calls += 1
        snapshot = self._snapshots.pop(0)
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot


class StepClock:
    """Returns start + each offset in turn (seconds)."""

    def __init__(self, start: datetime, *offsets: float):
        self._times = [start + timedelta(seconds=o) for o in offsets]

    def __call__(self) -> datetime:
        return self._times.pop(0)


@pytest.fixture
def t0() -> datetime:
    """The time a step clock starts from."""
    return START


@pytest.fixture
def step_clock(t0: datetime):
    """Factory for clocks returning t0 + each given offset in turn."""

    def factory(*offsets: float) -> StepClock:
        return StepClock(t0, *offsets)

    return factory


@pytest.fixture
def make_record():
    """Factory for ProcessRecords."""

    def factory(
        pid: int,
        command_name: str = "httpd",
        cpu_ticks: int = 0,
        resident_pages: int | None = None,
        command_line: str | None = None,
    ) -> ProcessRecord:
        return ProcessRecord(
            pid=pid,
            command_name=command_name,
            command_line=command_line if command_line is not None else f"/usr/sbin/{command_name}",
            cpu_ticks=cpu_ticks,
            resident_pages=resident_pages,
        )

    return factory


@pytest.fixture
def fake_table():
    """Factory for process tables returning the given snapshots in order."""
    return FakeProcessTable


@pytest.fixture
def proc_dir(tmp_path: Path) -> Path:
    """An empty fake /proc directory."""
    path = tmp_path / "proc"
    path.mkdir()
    return path


@pytest.fixture
def write_stat(proc_dir: Path):
    """Writes a minimal /proc/stat into the fake /proc."""

    def write(cpu: str, intr: int = 0, running: int = 1, blocked: int = 0) -> None:
        (proc_dir / "stat").write_text(
            f"cpu  {cpu}\n"
            f"cpu0 {cpu}\n"
            f"intr {intr} 0 0 0\n"
            "ctxt 123456\n"
            "btime 1706000000\n"
            f"procs_running {running}\n"
            f"procs_blocked {blocked}\n"
        )

    return write


@pytest.fixture
def write_jiffies(proc_dir: Path):
    """Writes a minimal /proc/timer_list into the fake /proc."""

    def write(jiffies: int) -> None:
        (proc_dir / "timer_list").write_text(
            f"Timer List Version: v0.9\nnow at 1000 nsecs\njiffies: {jiffies}\n"
        )

    return write


@pytest.fixture
def config(proc_dir: Path) -> Config:
    """Default config pointed at the fake /proc."""
    cfg = Config()
    cfg.system.proc_dir = str(proc_dir)
    return cfg


@pytest.fixture
def system_info(proc_dir: Path) -> FakeSystemInfo:
    """Host info for the fake /proc with four processors."""
    return FakeSystemInfo(proc_dir, processors=4)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


@pytest.fixture
def sqlite_store(initialized_db: Path):
    """A SqliteCheckpointStore on a fresh database."""
    conn = get_connection(initialized_db)
    yield SqliteCheckpointStore(conn)
    conn.close()
