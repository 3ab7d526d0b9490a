# Copyright (c) Syntropy Systems
"""Study lock state machine.

Every transition reads the persisted (state, generation) pair, compares it to
what the caller holds, writes the new state and bumps the generation, all under
a BEGIN IMMEDIATE transaction plus an in-process mutex. A holder whose snapshot
is stale fails its next transition with LockConflictError. Failures are never
retried here.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Optional

from ixcheck.db import immediate_transaction
from ixcheck.errors import LockConflictError
from ixcheck.models.study import LockState, StudyLock

logger = logging.getLogger(__name__)

LOCK_MODIFIED = "Could not update study lock, the lock was modified."
STUDY_DELETED = "Could not update study lock, the study was deleted."

_mutex = threading.Lock()


def _read(conn: sqlite3.Connection, study_key: int) -> Optional[StudyLock]:
    row = conn.execute(
        "SELECT study_lock, lock_count, share_count FROM study WHERE study_key = ?",
        (study_key,),
    ).fetchone()
    if row is None:
        return None
    return StudyLock(
        state=LockState(row["study_lock"]),
        generation=row["lock_count"],
        share_count=row["share_count"],
    )


def _write(
    conn: sqlite3.Connection, study_key: int, state: LockState, share_count: int = 0
) -> None:
    conn.execute(
        """
        UPDATE study
        SET study_lock = ?, lock_count = lock_count + 1, share_count = ?
        WHERE study_key = ?
        """,
        (int(state), share_count, study_key),
    )


def read_lock(conn: sqlite3.Connection, study_key: int) -> Optional[StudyLock]:
    """Get the persisted lock for a study, None if the study does not exist."""
    return _read(conn, study_key)


def open_for_edit(conn: sqlite3.Connection, study_key: int) -> StudyLock:
    """NONE -> EDIT, taken when a build starts."""
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            raise LockConflictError(STUDY_DELETED)
        if current.state != LockState.NONE:
            msg = f"Study is in use ({current.state.name.lower()} lock held)."
            raise LockConflictError(msg)
        _write(conn, study_key, LockState.EDIT)

    new_lock = StudyLock(state=LockState.EDIT, generation=current.generation + 1)
    logger.debug("study %d locked for edit, generation %d", study_key, new_lock.generation)
    return new_lock


def change_lock(
    conn: sqlite3.Connection,
    study_key: int,
    held: StudyLock,
    new_state: LockState,
) -> StudyLock:
    """Compare-and-swap the lock from the held snapshot to new_state.

    Returns the new snapshot, with the generation incremented.
    """
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            raise LockConflictError(STUDY_DELETED)
        if current.state != held.state or current.generation != held.generation:
            logger.info(
                "lock conflict on study %d: held %s/%d, found %s/%d",
                study_key,
                held.state.name,
                held.generation,
                current.state.name,
                current.generation,
            )
            raise LockConflictError(LOCK_MODIFIED)
        _write(conn, study_key, new_state)

    return StudyLock(state=new_state, generation=held.generation + 1)


def acquire_shared(conn: sqlite3.Connection, study_key: int) -> StudyLock:
    """NONE -> RUN_SHARED, or add a holder to an existing shared lock."""
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            raise LockConflictError(STUDY_DELETED)
        if current.state == LockState.NONE:
            share_count = 1
        elif current.state == LockState.RUN_SHARED:
            share_count = current.share_count + 1
        else:
            raise LockConflictError(LOCK_MODIFIED)
        _write(conn, study_key, LockState.RUN_SHARED, share_count)

    return StudyLock(
        state=LockState.RUN_SHARED,
        generation=current.generation + 1,
        share_count=share_count,
    )


def release(conn: sqlite3.Connection, study_key: int, held: StudyLock) -> StudyLock:
    """Release a held lock back to NONE.

    A shared lock is only cleared when its last holder releases; earlier
    releases just decrement the share count. Shared holders are checked on
    state alone since every acquire moves the generation.
    """
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            raise LockConflictError(STUDY_DELETED)

        if held.state == LockState.RUN_SHARED:
            if current.state != LockState.RUN_SHARED:
                raise LockConflictError(LOCK_MODIFIED)
            if current.share_count > 1:
                share_count = current.share_count - 1
                _write(conn, study_key, LockState.RUN_SHARED, share_count)
                return StudyLock(
                    state=LockState.RUN_SHARED,
                    generation=current.generation + 1,
                    share_count=share_count,
                )
        elif current.state != held.state or current.generation != held.generation:
            raise LockConflictError(LOCK_MODIFIED)

        _write(conn, study_key, LockState.NONE)

    return StudyLock(state=LockState.NONE, generation=current.generation + 1)


def force_release(conn: sqlite3.Connection, study_key: int) -> StudyLock:
    """Clear any lock regardless of holder. Used to recover a stuck study."""
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            raise LockConflictError(STUDY_DELETED)
        _write(conn, study_key, LockState.NONE)

    logger.warning(
        "forced release of %s lock on study %d", current.state.name, study_key
    )
    return StudyLock(state=LockState.NONE, generation=current.generation + 1)


def delete_study(
    conn: sqlite3.Connection, study_key: int, held: Optional[StudyLock]
) -> None:
    """Delete a study and everything in it.

    The caller must hold the current lock snapshot, or pass None to delete a
    study that is not locked at all.
    """
    with _mutex, immediate_transaction(conn):
        current = _read(conn, study_key)
        if current is None:
            return
        if held is None:
            if current.state != LockState.NONE:
                raise LockConflictError(LOCK_MODIFIED)
        elif current.generation != held.generation or current.state != held.state:
            raise LockConflictError(LOCK_MODIFIED)

        conn.execute(
            """
            DELETE FROM scenario_source WHERE scenario_key IN
                (SELECT scenario_key FROM scenario WHERE study_key = ?)
            """,
            (study_key,),
        )
        conn.execute("DELETE FROM scenario_pair WHERE study_key = ?", (study_key,))
        conn.execute("DELETE FROM scenario WHERE study_key = ?", (study_key,))
        conn.execute("DELETE FROM source WHERE study_key = ?", (study_key,))
        conn.execute("DELETE FROM study_parameter WHERE study_key = ?", (study_key,))
        conn.execute("DELETE FROM study WHERE study_key = ?", (study_key,))

    logger.debug("deleted study %d", study_key)
