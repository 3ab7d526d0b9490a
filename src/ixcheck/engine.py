# Copyright (c) Syntropy Systems
"""Study engine process driver with orphan prevention.

The engine is an external executable. It prompts for the database password
on its merged stdout/stderr, then writes log lines. Lines starting with the
message sentinel carry key=value messages: output files, report text, run
counts, probe results, errors, and progress. Anything else that is not blank
is an unexpected diagnostic and fails the run.
"""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from ixcheck.cancel import CancellationToken
from ixcheck.config import (
    IxCheckConfig,
    get_db_password,
    get_db_path,
    get_output_root,
    get_working_dir,
)
from ixcheck.errors import EngineProcessError, StatusReporter, ThrottledStatus
from ixcheck.models.study import ProbeResult

logger = logging.getLogger(__name__)

SENTINEL = "$$"

KEY_FILE = "file"
KEY_OUTFILE = "outfile"
KEY_REPORT = "report"
KEY_RUNCOUNT = "runcount"
KEY_RESULT = "result"
KEY_ERROR = "error"
KEY_PROGRESS = "progress"

PROMPT = "password"
READ_SIZE = 100

START_FAILED = "Could not start study engine run."


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so the engine dies when this process dies.

    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        return


@dataclass
class EngineSettings:
    """Where and how the engine runs."""

    engine_argv: list[str]
    working_dir: Path
    output_root: Path
    db_host: str
    db_name: str
    db_user: str
    db_password: str = ""
    max_processes: int = 1
    debug: bool = False
    kill_grace_period: float = 10.0
    status_interval: float = 2.95

    @classmethod
    def from_config(cls, config: IxCheckConfig, ixcheck_dir: Path) -> EngineSettings:
        return cls(
            engine_argv=config.engine_argv_prefix(),
            working_dir=get_working_dir(config, ixcheck_dir),
            output_root=get_output_root(config, ixcheck_dir),
            db_host=config.db_host,
            db_name=config.db_name or str(get_db_path(ixcheck_dir)),
            db_user=config.db_user,
            db_password=get_db_password(),
            max_processes=max(1, config.engine_process_count()),
            debug=config.debug,
            kill_grace_period=float(config.kill_grace_period),
            status_interval=config.status_interval,
        )


def build_engine_argv(
    settings: EngineSettings,
    study_key: int,
    lock_generation: int,
    *,
    probe: bool = False,
    log_path: Path | None = None,
    log_start: int | None = None,
    file_codes: str = "",
    map_codes: str = "",
) -> list[str]:
    """Engine argument vector. Order is fixed and positional.

    A full run writes output files and a log; a probe run (-p) writes
    neither and reports RESULT messages instead.
    """
    argv = list(settings.engine_argv)
    if settings.debug:
        argv.append("-d")
    argv += ["-w", str(settings.working_dir), "-o", str(settings.output_root)]
    if probe:
        argv.append("-i")
    else:
        argv += ["-s", "-i"]
        if log_path is not None:
            argv += ["-g", str(log_path)]
    if log_start:
        argv += ["-t", str(log_start)]
    argv += [
        "-h", settings.db_host,
        "-b", settings.db_name,
        "-u", settings.db_user,
        "-l", str(lock_generation),
        "-k",
    ]
    if probe:
        argv.append("-p")
    else:
        argv += [
            "-m", str(settings.max_processes),
            "-f", file_codes,
            "-e", map_codes,
        ]
    argv.append(str(study_key))
    return argv


@dataclass
class EngineResult:
    """Everything collected from one engine run."""

    exit_code: int | None = None
    output_files: list[str] = field(default_factory=list)
    report_lines: list[str] = field(default_factory=list)
    probe_results: list[ProbeResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.errors and not self.aborted


def parse_probe_result(value: str) -> ProbeResult:
    """Parse "desired_key,undesired_key,0|1"."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 3 or parts[2] not in ("0", "1"):
        msg = f"Invalid probe result '{value}'"
        raise ValueError(msg)
    return ProbeResult(
        desired_key=int(parts[0]),
        undesired_key=int(parts[1]),
        causes_interference=parts[2] == "1",
    )


class EngineProcess:
    """Runs one engine invocation with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Merges stdout/stderr into one protocol stream
    - Polls the cancellation token once per output line
    - Provides graceful and forceful termination
    """

    argv: list[str]
    workdir: Path
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None

    def __init__(
        self,
        argv: list[str],
        workdir: Path,
        password: str = "",
        token: CancellationToken | None = None,
        status: StatusReporter | None = None,
        status_label: str = "Study running",
        run_total: int = 0,
        status_interval: float = 2.95,
        kill_grace_period: float = 10.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.argv = argv
        self.workdir = workdir
        self.password = password
        self.token = token or CancellationToken()
        self.status = status
        self.status_label = status_label
        self.run_total = run_total
        self.kill_grace_period = kill_grace_period
        self._throttled = ThrottledStatus(status, status_interval)

        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None

    def start(self) -> None:
        """Start the engine process. Spawn failures raise EngineProcessError."""
        logger.debug("starting engine: %s", " ".join(self.argv))
        try:
            self.workdir.mkdir(parents=True, exist_ok=True)
            self._process = subprocess.Popen(  # noqa: S603
                self.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self.env,
                cwd=str(self.workdir),
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError as e:
            msg = f"Could not start process:\n{e}"
            raise EngineProcessError(msg) from e

    def run(self) -> EngineResult:
        """Start the engine, authenticate, and read its output until it exits."""
        self.token.check()
        if self._process is None:
            self.start()
        process = self._process
        assert process is not None
        assert process.stdout is not None

        self._handshake(process)

        result = EngineResult()
        done = 0
        running = 0
        skip_line = True

        for raw in iter(process.stdout.readline, b""):
            if self.token.cancelled:
                logger.info("engine run cancelled, killing pid %d", process.pid)
                result.aborted = True
                result.errors.append("Study run aborted.")
                result.exit_code = self.kill(self.kill_grace_period)
                return result

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if skip_line:
                skip_line = False
                continue

            if not line.startswith(SENTINEL):
                if line.strip():
                    result.errors.append(line)
                continue

            key, sep, value = line[len(SENTINEL):].partition("=")
            if not sep:
                continue
            key = key.strip().lower()

            if key in (KEY_FILE, KEY_OUTFILE):
                result.output_files.append(value)
            elif key == KEY_REPORT:
                result.report_lines.append(value)
            elif key == KEY_RUNCOUNT:
                done += running
                try:
                    running = int(value.strip())
                except ValueError:
                    running = 0
                if done < self.run_total:
                    message = f"{self.status_label}, {done} of {self.run_total} items done"
                else:
                    message = f"{self.status_label}, run complete"
                self._throttled.report_status(message)
            elif key == KEY_RESULT:
                try:
                    result.probe_results.append(parse_probe_result(value))
                except ValueError as e:
                    result.errors.append(str(e))
            elif key == KEY_ERROR:
                result.errors.append(value)
            elif key == KEY_PROGRESS:
                self._throttled.show_message(value)
            else:
                logger.debug("ignoring engine message %s", key)

        result.exit_code = self.wait()
        if result.exit_code != 0:
            logger.info("engine exited with code %d", result.exit_code)
            if not result.errors:
                result.errors.append(f"Study engine failed with exit code {result.exit_code}.")
        elif self.status is not None:
            self.status.report_status(f"{self.status_label}, run complete")
        return result

    def _handshake(self, process: subprocess.Popen[bytes]) -> None:
        """Read until the password prompt appears, then answer it."""
        stdout = process.stdout
        stdin = process.stdin
        assert stdout is not None
        assert stdin is not None

        received = ""
        while PROMPT not in received.lower():
            chunk = self._read_chunk(stdout)
            if not chunk:
                self.kill(0)
                raise EngineProcessError(START_FAILED)
            received += chunk.decode("utf-8", errors="replace")

        try:
            stdin.write(self.password.encode() + b"\n")
            stdin.flush()
        except OSError as e:
            self.kill(0)
            raise EngineProcessError(START_FAILED) from e

    @staticmethod
    def _read_chunk(stream: IO[bytes]) -> bytes:
        read1 = getattr(stream, "read1", None)
        if read1 is not None:
            return read1(READ_SIZE)
        return stream.read(READ_SIZE)

    def wait(self) -> int:
        """Wait for the process to finish and return exit code."""
        if self._process is None:
            return self._exit_code or 0

        code = self._process.wait()
        self._exit_code = code
        self._cleanup()
        return code

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the engine process group.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def _cleanup(self) -> None:
        """Close the pipes."""
        if self._process is None:
            return
        for stream in (self._process.stdin, self._process.stdout):
            if stream is not None:
                with contextlib.suppress(OSError):
                    stream.close()

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code
