# Copyright (c) Syntropy Systems
"""Tests for the study engine process driver."""

import itertools
import sys
import threading
from pathlib import Path

import pytest

from ixcheck.cancel import CancellationToken
from ixcheck.engine import (
    START_FAILED,
    EngineProcess,
    EngineSettings,
    build_engine_argv,
    parse_probe_result,
)
from ixcheck.errors import BuildAbortedError, EngineProcessError
from ixcheck.models.study import ProbeResult

# Emits one of every message kind after a normal handshake.
PROTOCOL_SCRIPT = r'''
import sys
sys.stdout.write("Enter PASSWORD: ")
sys.stdout.flush()
sys.stdin.readline()
print("first line is skipped")
print("")
print("$$FILE=/tmp/out/a.csv")
print("$$outfile=/tmp/out/b.csv")
print("$$REPORT=line one")
print("$$Report=line two")
print("$$RUNCOUNT=3")
print("$$RESULT=10,11,1")
print("$$RESULT=10,12,0")
print("$$FUTURE=ignored")
print("$$no separator")
print("")
'''


def _settings(temp_dir: Path, debug: bool = False) -> EngineSettings:
    return EngineSettings(
        engine_argv=["tvstudy-engine"],
        working_dir=temp_dir / "work",
        output_root=temp_dir / "out",
        db_host="localhost",
        db_name="ixcheck.db",
        db_user="ixcheck",
        max_processes=2,
        debug=debug,
    )


def _fake(fake_engine: Path) -> list[str]:
    return [sys.executable, str(fake_engine)]


class RecordingStatus:
    """Status reporter that keeps every message."""

    def __init__(self) -> None:
        self.statuses: list[str] = []
        self.shown: list[str] = []

    def report_status(self, message: str) -> None:
        self.statuses.append(message)

    def log_message(self, message: str) -> None:
        pass

    def show_message(self, message: str) -> None:
        self.shown.append(message)


class TestEngineArgv:
    """Tests for engine argument construction."""

    def test_probe_argv(self, temp_dir: Path) -> None:
        argv = build_engine_argv(_settings(temp_dir), 12, 5, probe=True)

        assert argv == [
            "tvstudy-engine",
            "-w", str(temp_dir / "work"),
            "-o", str(temp_dir / "out"),
            "-i",
            "-h", "localhost",
            "-b", "ixcheck.db",
            "-u", "ixcheck",
            "-l", "5",
            "-k",
            "-p",
            "12",
        ]

    def test_full_run_argv(self, temp_dir: Path) -> None:
        log_path = temp_dir / "log.txt"
        argv = build_engine_argv(
            _settings(temp_dir, debug=True),
            12,
            7,
            log_path=log_path,
            log_start=1234,
            file_codes="IX",
            map_codes="M",
        )

        assert argv[:2] == ["tvstudy-engine", "-d"]
        assert argv[argv.index("-s") + 1] == "-i"
        assert argv[argv.index("-g") + 1] == str(log_path)
        assert argv[argv.index("-t") + 1] == "1234"
        assert argv[-7:] == ["-m", "2", "-f", "IX", "-e", "M", "12"]
        assert "-p" not in argv
        assert not any('"' in arg for arg in argv)


class TestProbeResult:
    """Tests for probe result parsing."""

    def test_parse(self) -> None:
        assert parse_probe_result("4, 9, 1") == ProbeResult(4, 9, True)
        assert parse_probe_result("4,9,0") == ProbeResult(4, 9, False)

    @pytest.mark.parametrize("value", ["4,9", "4,9,2", "a,b,1"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_probe_result(value)


class TestEngineProcess:
    """Tests for running engine processes."""

    def test_protocol_messages(self, temp_dir: Path) -> None:
        """Sentinel keys are case-insensitive and unknown keys are ignored."""
        script = temp_dir / "protocol.py"
        script.write_text(PROTOCOL_SCRIPT)
        status = RecordingStatus()

        result = EngineProcess(
            [sys.executable, str(script)],
            temp_dir / "work",
            status=status,
            run_total=3,
            status_interval=0,
        ).run()

        assert result.success
        assert result.output_files == ["/tmp/out/a.csv", "/tmp/out/b.csv"]
        assert result.report_lines == ["line one", "line two"]
        assert result.probe_results == [ProbeResult(10, 11, True), ProbeResult(10, 12, False)]
        assert status.statuses[-1] == "Study running, run complete"

    def test_password_is_sent(
        self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch
    ) -> None:
        monkeypatch.setenv("FAKE_ENGINE_MODE", "diagnostic")
        monkeypatch.setenv("FAKE_ENGINE_PASSWORD", "secret")

        result = EngineProcess(_fake(fake_engine), temp_dir / "work", password="wrong").run()

        assert result.errors == ["Bad database password"]
        assert result.exit_code == 4

    def test_no_prompt(self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_ENGINE_MODE", "noprompt")

        with pytest.raises(EngineProcessError, match=START_FAILED):
            EngineProcess(_fake(fake_engine), temp_dir / "work").run()

    def test_error_message(self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_ENGINE_MODE", "fail")

        result = EngineProcess(_fake(fake_engine), temp_dir / "work").run()

        assert not result.success
        assert result.exit_code == 2
        assert result.errors == ["Could not open study database"]

    def test_nonzero_exit(self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_ENGINE_MODE", "crash")

        result = EngineProcess(_fake(fake_engine), temp_dir / "work").run()

        assert result.exit_code == 5
        assert result.errors == ["Study engine failed with exit code 5."]

    def test_diagnostic_line_fails_run(
        self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch
    ) -> None:
        """Unexpected output fails the run even with a zero exit code."""
        monkeypatch.setenv("FAKE_ENGINE_MODE", "diagnostic")

        result = EngineProcess(_fake(fake_engine), temp_dir / "work").run()

        assert result.exit_code == 0
        assert result.errors == ["Segmentation fault at 0x0"]
        assert not result.success

    def test_cancel_kills_engine(
        self, temp_dir: Path, fake_engine: Path, clean_engine_env, monkeypatch
    ) -> None:
        monkeypatch.setenv("FAKE_ENGINE_MODE", "slow")
        token = CancellationToken()
        process = EngineProcess(
            _fake(fake_engine), temp_dir / "work", token=token, kill_grace_period=1
        )
        timer = threading.Timer(0.5, token.cancel)
        timer.start()

        try:
            result = process.run()
        finally:
            timer.cancel()

        assert result.aborted
        assert not result.success
        assert result.errors == ["Study run aborted."]

    def test_cancel_before_start(self, temp_dir: Path, fake_engine: Path) -> None:
        token = CancellationToken()
        token.cancel()
        process = EngineProcess(_fake(fake_engine), temp_dir / "work", token=token)

        with pytest.raises(BuildAbortedError):
            process.run()
        assert process.pid is None

    def test_spawn_failure(self, temp_dir: Path) -> None:
        process = EngineProcess([str(temp_dir / "no-such-engine")], temp_dir / "work")

        with pytest.raises(EngineProcessError, match="Could not start process"):
            process.run()

    def test_run_count_status(self, temp_dir: Path, monkeypatch) -> None:
        """Progress counts finished items, then reports the run complete."""
        clock = itertools.count()
        monkeypatch.setattr("ixcheck.errors.time.monotonic", lambda: float(next(clock)))
        script = temp_dir / "progress.py"
        script.write_text(
            "import sys\n"
            "sys.stdout.write('Enter PASSWORD: ')\n"
            "sys.stdout.flush()\n"
            "sys.stdin.readline()\n"
            "print('')\n"
            "print('$$RUNCOUNT=2')\n"
            "print('$$RUNCOUNT=1')\n"
            "print('$$RUNCOUNT=0')\n"
        )
        status = RecordingStatus()

        EngineProcess(
            [sys.executable, str(script)],
            temp_dir / "work",
            status=status,
            status_label="Checking",
            run_total=3,
            status_interval=0,
        ).run()

        assert status.statuses == [
            "Checking, 0 of 3 items done",
            "Checking, 2 of 3 items done",
            "Checking, run complete",
            "Checking, run complete",
        ]
