# Copyright (c) Syntropy Systems
"""Tests for the study lock state machine."""

import sqlite3
import threading
from pathlib import Path

import pytest

from ixcheck import locks
from ixcheck.db import get_connection
from ixcheck.errors import LockConflictError
from ixcheck.models.study import LockState, StudyLock


def _new_study(conn: sqlite3.Connection, name: str = "study") -> int:
    cursor = conn.execute(
        "INSERT INTO study (name, template_key, station_data_key) VALUES (?, 1, 1)",
        (name,),
    )
    return cursor.lastrowid or 0


def _set_lock(conn: sqlite3.Connection, study_key: int, state: LockState, generation: int) -> None:
    conn.execute(
        "UPDATE study SET study_lock = ?, lock_count = ? WHERE study_key = ?",
        (int(state), generation, study_key),
    )


class TestTransitions:
    """Tests for the basic build lock cycle."""

    def test_build_cycle(self, db_connection: sqlite3.Connection) -> None:
        """Test NONE -> EDIT -> RUN_EXCLUSIVE -> EDIT -> RUN_EXCLUSIVE -> NONE."""
        key = _new_study(db_connection)

        lock = locks.open_for_edit(db_connection, key)
        assert lock == StudyLock(state=LockState.EDIT, generation=1)

        lock = locks.change_lock(db_connection, key, lock, LockState.RUN_EXCLUSIVE)
        lock = locks.change_lock(db_connection, key, lock, LockState.EDIT)
        lock = locks.change_lock(db_connection, key, lock, LockState.RUN_EXCLUSIVE)
        lock = locks.release(db_connection, key, lock)

        assert lock.state == LockState.NONE
        assert lock.generation == 5
        assert locks.read_lock(db_connection, key) == lock

    def test_open_for_edit_requires_unlocked(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)
        locks.open_for_edit(db_connection, key)

        with pytest.raises(LockConflictError, match="in use"):
            locks.open_for_edit(db_connection, key)

    def test_missing_study(self, db_connection: sqlite3.Connection) -> None:
        assert locks.read_lock(db_connection, 999) is None
        with pytest.raises(LockConflictError, match="deleted"):
            locks.open_for_edit(db_connection, 999)

    def test_probe_acquire_checks_generation(self, db_connection: sqlite3.Connection) -> None:
        """A stale generation fails; the held one succeeds and bumps it by one."""
        key = _new_study(db_connection)
        _set_lock(db_connection, key, LockState.EDIT, 5)

        stale = StudyLock(state=LockState.EDIT, generation=4)
        with pytest.raises(LockConflictError, match="modified"):
            locks.change_lock(db_connection, key, stale, LockState.RUN_EXCLUSIVE)

        current = locks.read_lock(db_connection, key)
        assert current == StudyLock(state=LockState.EDIT, generation=5)

        held = StudyLock(state=LockState.EDIT, generation=5)
        new_lock = locks.change_lock(db_connection, key, held, LockState.RUN_EXCLUSIVE)
        assert new_lock.generation == 6
        assert locks.read_lock(db_connection, key) == new_lock

    def test_state_mismatch(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)
        _set_lock(db_connection, key, LockState.ADMIN, 3)

        held = StudyLock(state=LockState.EDIT, generation=3)
        with pytest.raises(LockConflictError):
            locks.release(db_connection, key, held)


class TestSharedLock:
    """Tests for RUN_SHARED holders."""

    def test_last_release_clears(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)

        first = locks.acquire_shared(db_connection, key)
        second = locks.acquire_shared(db_connection, key)
        assert second.share_count == 2

        after_first = locks.release(db_connection, key, first)
        assert after_first.state == LockState.RUN_SHARED
        assert after_first.share_count == 1

        after_second = locks.release(db_connection, key, second)
        assert after_second.state == LockState.NONE

        generations = [first.generation, second.generation, after_first.generation, after_second.generation]
        assert generations == sorted(set(generations))

    def test_shared_blocked_by_edit(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)
        locks.open_for_edit(db_connection, key)

        with pytest.raises(LockConflictError):
            locks.acquire_shared(db_connection, key)


class TestForceAndDelete:
    """Tests for recovery and deletion."""

    def test_force_release_invalidates_holder(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)
        held = locks.open_for_edit(db_connection, key)

        locks.force_release(db_connection, key)

        with pytest.raises(LockConflictError):
            locks.change_lock(db_connection, key, held, LockState.RUN_EXCLUSIVE)
        assert locks.read_lock(db_connection, key).state == LockState.NONE

    def test_delete_requires_held_lock(self, db_connection: sqlite3.Connection) -> None:
        key = _new_study(db_connection)
        held = locks.open_for_edit(db_connection, key)

        with pytest.raises(LockConflictError):
            locks.delete_study(db_connection, key, None)

        locks.delete_study(db_connection, key, held)
        assert locks.read_lock(db_connection, key) is None

    def test_delete_missing_study_is_noop(self, db_connection: sqlite3.Connection) -> None:
        locks.delete_study(db_connection, 12345, None)


class TestConcurrency:
    """Tests for concurrent compare-and-swap."""

    def test_exactly_one_wins(self, ixcheck_project: Path) -> None:
        """Of many CAS attempts from one snapshot, exactly one succeeds."""
        db_path = ixcheck_project / ".ixcheck" / "ixcheck.db"
        setup = get_connection(db_path)
        try:
            key = _new_study(setup)
            held = locks.open_for_edit(setup, key)
        finally:
            setup.close()

        results: list[str] = []
        barrier = threading.Barrier(4)

        def attempt() -> None:
            conn = get_connection(db_path)
            try:
                barrier.wait()
                locks.change_lock(conn, key, held, LockState.RUN_EXCLUSIVE)
                results.append("ok")
            except LockConflictError:
                results.append("conflict")
            finally:
                conn.close()

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == 3
