# Copyright (c) Syntropy Systems
"""Weighted admission gate bounding concurrent engine work.

The load lives in the ixcheck database, so every process and thread working
against the same database shares one gate.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import psutil

from ixcheck.cancel import CancellationToken
from ixcheck.db import get_connection, immediate_transaction
from ixcheck.errors import BuildAbortedError

logger = logging.getLogger(__name__)

# Full load, with slack for float rounding when weights sum to 1.
MAX_LOAD = 1.001


def _process_alive(pid: int) -> bool:
    try:
        return psutil.pid_exists(pid)
    except (OSError, ValueError):
        return False


class AdmissionGate:
    """Limits how many builds run at once.

    Each admitted build adds 1/max_processes to the load and the gate admits
    while the load stays under MAX_LOAD. Waiters poll; the oldest live waiter
    goes first. A waiter that has not polled within stale_after seconds is
    dropped so a vanished caller cannot block the queue, and a slot held by a
    process that no longer exists is reclaimed.
    """

    def __init__(
        self,
        db_path: Path,
        max_processes: int,
        poll_interval: float = 0.5,
        stale_after: float = 2.0,
    ) -> None:
        self.db_path = db_path
        self.weight = 1.0 / max(1, max_processes)
        self.poll_interval = poll_interval
        self.stale_after = stale_after

    @property
    def load(self) -> float:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(weight), 0.0) AS load FROM admission_slot WHERE admitted = 1"
            ).fetchone()
            return float(row["load"])
        finally:
            conn.close()

    @property
    def waiting(self) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM admission_slot WHERE admitted = 0"
            ).fetchone()
            return int(row["n"])
        finally:
            conn.close()

    def _enqueue(self, conn: sqlite3.Connection) -> int:
        cursor = conn.execute(
            "INSERT INTO admission_slot (pid, weight, admitted, seen_at) VALUES (?, ?, 0, ?)",
            (os.getpid(), self.weight, time.time()),
        )
        return cursor.lastrowid or 0

    def _try_admit(self, conn: sqlite3.Connection, ticket: int) -> bool:
        """Admit ticket if it is first in line and the load allows it."""
        now = time.time()
        with immediate_transaction(conn):
            stale = conn.execute(
                "DELETE FROM admission_slot WHERE admitted = 0 AND seen_at < ? AND ticket != ?",
                (now - self.stale_after, ticket),
            )
            if stale.rowcount:
                logger.debug("dropped %d stale admission waiter(s)", stale.rowcount)

            holders = conn.execute(
                "SELECT ticket, pid FROM admission_slot WHERE admitted = 1"
            ).fetchall()
            for row in holders:
                if not _process_alive(row["pid"]):
                    logger.warning("reclaiming admission slot of vanished pid %d", row["pid"])
                    conn.execute("DELETE FROM admission_slot WHERE ticket = ?", (row["ticket"],))

            seen = conn.execute(
                "UPDATE admission_slot SET seen_at = ? WHERE ticket = ?", (now, ticket)
            )
            if seen.rowcount == 0:
                # Dropped as stale while not polling; rejoin at the same place.
                conn.execute(
                    "INSERT INTO admission_slot (ticket, pid, weight, admitted, seen_at) "
                    "VALUES (?, ?, ?, 0, ?)",
                    (ticket, os.getpid(), self.weight, now),
                )

            first = conn.execute(
                "SELECT MIN(ticket) AS ticket FROM admission_slot WHERE admitted = 0"
            ).fetchone()["ticket"]
            if first != ticket:
                return False
            load = conn.execute(
                "SELECT COALESCE(SUM(weight), 0.0) AS load FROM admission_slot WHERE admitted = 1"
            ).fetchone()["load"]
            if load + self.weight > MAX_LOAD:
                return False
            conn.execute("UPDATE admission_slot SET admitted = 1 WHERE ticket = ?", (ticket,))
            return True

    def acquire(self, token: CancellationToken | None = None) -> int:
        """Block until admitted and return the slot ticket.

        Raises BuildAbortedError if cancelled while waiting.
        """
        conn = get_connection(self.db_path)
        try:
            ticket = self._enqueue(conn)
            admitted = False
            try:
                while not self._try_admit(conn, ticket):
                    if token is None:
                        time.sleep(self.poll_interval)
                    elif token.wait(self.poll_interval):
                        raise BuildAbortedError("Study run aborted while waiting to start.")
                admitted = True
            finally:
                if not admitted:
                    conn.execute(
                        "DELETE FROM admission_slot WHERE ticket = ? AND admitted = 0", (ticket,)
                    )
        finally:
            conn.close()

        logger.debug("admitted ticket %d, weight %.3f", ticket, self.weight)
        return ticket

    def release(self, ticket: int) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM admission_slot WHERE ticket = ?", (ticket,))
        finally:
            conn.close()

    @contextmanager
    def admitted(self, token: CancellationToken | None = None) -> Iterator[int]:
        """Hold an admission slot for the duration of the block."""
        ticket = self.acquire(token)
        try:
            yield ticket
        finally:
            self.release(ticket)
