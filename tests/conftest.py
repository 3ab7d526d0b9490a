# Copyright (c) Syntropy Systems
"""Pytest fixtures for ixcheck tests."""

import itertools
import os
import shlex
import sqlite3
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import yaml

if TYPE_CHECKING:
    from ixcheck.models.records import CandidateRecord

# Store original cwd at module load time
_original_cwd = Path.cwd()

# Stand-in for the study engine. Speaks the engine's stdout protocol and reads
# the study straight from the SQLite database named by -b. Behavior is chosen
# through environment variables so tests can monkeypatch it.
FAKE_ENGINE_SOURCE = r'''
import json
import os
import sqlite3
import sys
import time

args = sys.argv[1:]
mode = os.environ.get("FAKE_ENGINE_MODE", "ok")


def arg(flag, default=None):
    if flag in args:
        return args[args.index(flag) + 1]
    return default


if mode == "noprompt":
    print("engine starting without a prompt")
    sys.exit(3)

sys.stdout.write("Database Password: ")
sys.stdout.flush()
password = sys.stdin.readline().strip()
print("")

expected = os.environ.get("FAKE_ENGINE_PASSWORD")
if expected is not None and password != expected:
    print("$$ERROR=Bad database password")
    sys.exit(4)

if mode == "fail":
    print("$$ERROR=Could not open study database")
    sys.exit(2)
if mode == "fail_run" and "-p" not in args:
    print("$$ERROR=Study run failed in engine")
    sys.exit(2)
if mode == "crash":
    sys.exit(5)
if mode == "diagnostic":
    print("Segmentation fault at 0x0")
    sys.exit(0)
if mode == "slow":
    for _ in range(600):
        print("$$PROGRESS=working")
        sys.stdout.flush()
        time.sleep(0.1)
    sys.exit(0)

probe = "-p" in args
study_key = int(args[-1])
conn = sqlite3.connect(arg("-b"))
conn.row_factory = sqlite3.Row

study = conn.execute(
    "SELECT name, study_lock, lock_count FROM study WHERE study_key = ?", (study_key,)
).fetchone()
if study is None:
    print("$$ERROR=Study not found")
    sys.exit(1)
if study["study_lock"] != 2 or str(study["lock_count"]) != arg("-l"):
    print("$$ERROR=Study lock does not match")
    sys.exit(1)

quiet = {q.strip() for q in os.environ.get("FAKE_ENGINE_QUIET", "").split(",") if q.strip()}


def call_sign(source_key):
    row = conn.execute("SELECT record FROM source WHERE source_key = ?", (source_key,)).fetchone()
    return json.loads(row["record"]).get("call_sign", "")


scenarios = conn.execute(
    "SELECT scenario_key FROM scenario WHERE study_key = ? ORDER BY scenario_key",
    (study_key,),
).fetchall()
print("$$RUNCOUNT=%d" % len(scenarios))

if probe:
    for scenario in scenarios:
        items = conn.execute(
            "SELECT source_key, is_desired, is_undesired FROM scenario_source "
            "WHERE scenario_key = ? ORDER BY position",
            (scenario["scenario_key"],),
        ).fetchall()
        desireds = [i["source_key"] for i in items if i["is_desired"]]
        undesireds = [i["source_key"] for i in items if i["is_undesired"]]
        for d in desireds:
            for u in undesireds:
                d_call = call_sign(d)
                u_call = call_sign(u)
                flag = 0 if (u_call in quiet or d_call + ">" + u_call in quiet) else 1
                print("$$RESULT=%d,%d,%d" % (d, u, flag))
else:
    out_dir = os.path.join(arg("-o"), os.environ.get("FAKE_ENGINE_DATABASE_ID", "local"), study["name"])
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, "summary.csv")
    with open(path, "w") as f:
        f.write("scenarios,%d\n" % len(scenarios))
    print("$$FILE=" + path)
    print("$$REPORT=Engine run complete, %d scenarios" % len(scenarios))
    log_path = arg("-g")
    if log_path:
        with open(log_path, "a") as f:
            f.write("engine run finished\n")
'''


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_engine(temp_dir: Path) -> Path:
    """Write the fake engine script and return its path."""
    path = temp_dir / "fake_engine.py"
    path.write_text(FAKE_ENGINE_SOURCE)
    return path


@pytest.fixture
def ixcheck_project(temp_dir: Path, fake_engine: Path) -> Generator[Path, None, None]:
    """Create a temporary ixcheck project wired to the fake engine."""
    from ixcheck.db import init_db

    ixcheck_dir = temp_dir / ".ixcheck"
    ixcheck_dir.mkdir()
    (ixcheck_dir / "work").mkdir()
    (ixcheck_dir / "out").mkdir()

    config = {
        "engine_command": f"{shlex.quote(sys.executable)} {shlex.quote(str(fake_engine))}",
        "max_engine_processes": 2,
        "status_interval": 0,
        "admission_poll_interval": 0.05,
        "kill_grace_period": 1,
    }
    with (ixcheck_dir / "config.yaml").open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    # Initialize database
    db_path = ixcheck_dir / "ixcheck.db"
    init_db(db_path)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(ixcheck_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from ixcheck.db import get_connection

    db_path = ixcheck_project / ".ixcheck" / "ixcheck.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def clean_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset fake engine behavior to a normal successful run."""
    for name in (
        "FAKE_ENGINE_MODE",
        "FAKE_ENGINE_QUIET",
        "FAKE_ENGINE_PASSWORD",
        "FAKE_ENGINE_DATABASE_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_record() -> Callable[..., "CandidateRecord"]:
    """Factory for station records with unique ids and facility ids."""
    from ixcheck.models.records import parse_record

    counter = itertools.count(1)

    def _make(call_sign: str, channel: int, **fields: object) -> "CandidateRecord":
        n = next(counter)
        data: dict[str, object] = {
            "kind": "current",
            "record_id": f"R{n:04d}",
            "facility_id": 1000 + n,
            "call_sign": call_sign,
            "channel": channel,
            "service": "DT",
            "status": "LIC",
            "state": "PA",
            "city": f"Town {n}",
            "latitude": 40.0,
            "longitude": -75.0,
            "arn": f"ARN{n:07d}",
            "file_number": f"BLCDT-{n:07d}",
        }
        data.update(fields)
        if data["kind"] == "user":
            data.setdefault("user_record_id", n)
        return parse_record(data)

    return _make


@pytest.fixture
def load_station_data(db_connection: sqlite3.Connection) -> Callable[..., int]:
    """Insert records as a new station data set and return its key."""
    from ixcheck.db import create_station_data, immediate_transaction
    from ixcheck.stations import insert_records

    def _load(records: list["CandidateRecord"], name: str = "test data") -> int:
        with immediate_transaction(db_connection):
            key = create_station_data(db_connection, name)
            insert_records(db_connection, key, records)
        return key

    return _load
