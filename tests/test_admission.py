# Copyright (c) Syntropy Systems
"""Tests for the engine admission gate."""

import threading
import time
from pathlib import Path

import pytest

from ixcheck.admission import AdmissionGate
from ixcheck.cancel import CancellationToken
from ixcheck.db import get_connection, init_db
from ixcheck.errors import BuildAbortedError

VANISHED_PID = 999_999


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    path = temp_dir / "gate.db"
    init_db(path)
    return path


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached")
        time.sleep(0.01)


def _insert_slot(db_path: Path, pid: int, weight: float, admitted: bool, seen_at: float) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO admission_slot (pid, weight, admitted, seen_at) VALUES (?, ?, ?, ?)",
            (pid, weight, int(admitted), seen_at),
        )
    finally:
        conn.close()


class TestAdmissionGate:
    """Tests for weighted admission."""

    def test_weight_limits_concurrency(self, db_path: Path) -> None:
        gate = AdmissionGate(db_path, max_processes=2, poll_interval=0.01)
        first = gate.acquire()
        gate.acquire()
        assert gate.load == pytest.approx(1.0)

        admitted = threading.Event()

        def third() -> None:
            gate.acquire()
            admitted.set()

        thread = threading.Thread(target=third)
        thread.start()
        _wait_for(lambda: gate.waiting == 1)
        assert not admitted.is_set()

        gate.release(first)
        thread.join(timeout=5)
        assert admitted.is_set()
        assert gate.load == pytest.approx(1.0)

    def test_gates_on_one_database_share_the_load(self, db_path: Path) -> None:
        """Separate gate objects, as in separate processes, see each other's slots."""
        gate_a = AdmissionGate(db_path, max_processes=1, poll_interval=0.01)
        gate_b = AdmissionGate(db_path, max_processes=1, poll_interval=0.01)
        held = gate_a.acquire()

        assert gate_b.load == pytest.approx(1.0)

        admitted = threading.Event()

        def second() -> None:
            with gate_b.admitted():
                admitted.set()

        thread = threading.Thread(target=second)
        thread.start()
        _wait_for(lambda: gate_b.waiting == 1)
        assert not admitted.is_set()

        gate_a.release(held)
        thread.join(timeout=5)
        assert admitted.is_set()
        assert gate_a.load == pytest.approx(0.0)

    def test_fifo_order(self, db_path: Path) -> None:
        """The oldest waiter is admitted first."""
        gate = AdmissionGate(db_path, max_processes=1, poll_interval=0.01)
        held = gate.acquire()
        order: list[str] = []

        def waiter(name: str) -> None:
            with gate.admitted():
                order.append(name)

        first = threading.Thread(target=waiter, args=("first",))
        first.start()
        _wait_for(lambda: gate.waiting == 1)
        second = threading.Thread(target=waiter, args=("second",))
        second.start()
        _wait_for(lambda: gate.waiting == 2)

        gate.release(held)
        first.join(timeout=5)
        second.join(timeout=5)

        assert order == ["first", "second"]
        assert gate.load == pytest.approx(0.0)

    def test_cancel_while_waiting(self, db_path: Path) -> None:
        gate = AdmissionGate(db_path, max_processes=1, poll_interval=0.01)
        gate.acquire()
        token = CancellationToken()
        timer = threading.Timer(0.1, token.cancel)
        timer.start()

        with pytest.raises(BuildAbortedError, match="waiting to start"):
            gate.acquire(token)

        assert gate.waiting == 0

    def test_stale_waiter_is_dropped(self, db_path: Path) -> None:
        """A waiter that stopped polling does not block newer ones."""
        _insert_slot(db_path, pid=1, weight=1.0, admitted=False, seen_at=time.time() - 10)
        gate = AdmissionGate(db_path, max_processes=1, poll_interval=0.01, stale_after=0.05)

        gate.acquire()

        assert gate.waiting == 0
        assert gate.load == pytest.approx(1.0)

    def test_vanished_holder_is_reclaimed(
        self, db_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            "ixcheck.admission.psutil.pid_exists", lambda pid: pid != VANISHED_PID
        )
        _insert_slot(db_path, pid=VANISHED_PID, weight=1.0, admitted=True, seen_at=time.time())
        gate = AdmissionGate(db_path, max_processes=1, poll_interval=0.01)

        gate.acquire()

        assert gate.load == pytest.approx(1.0)

    def test_admitted_releases_on_error(self, db_path: Path) -> None:
        gate = AdmissionGate(db_path, max_processes=1)

        with pytest.raises(RuntimeError):
            with gate.admitted():
                raise RuntimeError("boom")

        assert gate.load == pytest.approx(0.0)
