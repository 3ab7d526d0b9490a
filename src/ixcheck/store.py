# Copyright (c) Syntropy Systems
"""Study document store: sources, scenarios, pairs, and parameters.

Edits are written through to the database as they are made, so the engine
sees the current state as soon as the study lock allows it to run.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from ixcheck import locks
from ixcheck.db import (
    get_station_data,
    get_template,
    get_template_parameters,
    immediate_transaction,
    utcnow,
)
from ixcheck.errors import ConfigurationError, LockConflictError
from ixcheck.models.records import CandidateRecord, dump_record, parse_record
from ixcheck.models.study import (
    LockState,
    Scenario,
    ScenarioPair,
    ScenarioSource,
    ScenarioType,
    StudyLock,
)

logger = logging.getLogger(__name__)

PARAM_CELL_SIZE = "cell_size"
PARAM_PROFILE_PPK = "profile_ppk"


def _unique_study_name(conn: sqlite3.Connection, name: str) -> str:
    candidate = name
    n = 1
    while conn.execute("SELECT 1 FROM study WHERE name = ?", (candidate,)).fetchone():
        n += 1
        candidate = f"{name} ({n})"
    return candidate


class StudyDocument:
    """A study open for editing, tied to the lock snapshot its holder owns."""

    conn: sqlite3.Connection
    study_key: int
    name: str
    lock: StudyLock

    def __init__(
        self, conn: sqlite3.Connection, study_key: int, name: str, lock: StudyLock
    ) -> None:
        self.conn = conn
        self.study_key = study_key
        self.name = name
        self.lock = lock
        self._source_keys: dict[str, int] = {}

    @classmethod
    def create(
        cls,
        conn: sqlite3.Connection,
        name: str,
        template_key: int,
        station_data_key: int,
        description: Optional[str] = None,
    ) -> StudyDocument:
        """Create a study from a template and lock it for edit."""
        template = get_template(conn, template_key)
        if template is None or not template["is_locked"]:
            msg = "Cannot build study, missing or invalid template selection."
            raise ConfigurationError(msg)
        if get_station_data(conn, station_data_key) is None:
            msg = "Cannot build study, missing or invalid station data selection."
            raise ConfigurationError(msg)

        parameters = get_template_parameters(conn, template_key)
        with immediate_transaction(conn):
            unique_name = _unique_study_name(conn, name)
            cursor = conn.execute(
                """
                INSERT INTO study (name, description, template_key, station_data_key)
                VALUES (?, ?, ?, ?)
                """,
                (unique_name, description, template_key, station_data_key),
            )
            study_key = cursor.lastrowid or 0
            conn.executemany(
                "INSERT INTO study_parameter (study_key, name, value) VALUES (?, ?, ?)",
                [(study_key, k, v) for k, v in parameters.items()],
            )

        lock = locks.open_for_edit(conn, study_key)
        logger.info("created study %s (key %d)", unique_name, study_key)
        return cls(conn, study_key, unique_name, lock)

    # --- Lock helpers ---

    def change_lock(self, new_state: LockState) -> StudyLock:
        """Move this document's lock to new_state, tracking the new generation."""
        self.lock = locks.change_lock(self.conn, self.study_key, self.lock, new_state)
        return self.lock

    def _check_edit_lock(self) -> None:
        current = locks.read_lock(self.conn, self.study_key)
        if current is None:
            raise LockConflictError(locks.STUDY_DELETED)
        if current.state != LockState.EDIT or current.generation != self.lock.generation:
            raise LockConflictError(locks.LOCK_MODIFIED)

    # --- Parameters ---

    def get_parameter(self, name: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM study_parameter WHERE study_key = ? AND name = ?",
            (self.study_key, name),
        ).fetchone()
        return row["value"] if row else None

    def set_parameter(self, name: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT INTO study_parameter (study_key, name, value) VALUES (?, ?, ?)
            ON CONFLICT (study_key, name) DO UPDATE SET value = excluded.value
            """,
            (self.study_key, name, value),
        )

    # --- Sources ---

    def add_source(self, record: CandidateRecord, is_proposal: bool = False) -> int:
        """Add a record to the study, or return the key it already has."""
        existing = self._source_keys.get(record.key)
        if existing is not None:
            return existing

        row = self.conn.execute(
            "SELECT source_key FROM source WHERE study_key = ? AND record_key = ?",
            (self.study_key, record.key),
        ).fetchone()
        if row is not None:
            source_key = int(row["source_key"])
        else:
            cursor = self.conn.execute(
                """
                INSERT INTO source (study_key, record_key, record, is_proposal)
                VALUES (?, ?, ?, ?)
                """,
                (self.study_key, record.key, dump_record(record), int(is_proposal)),
            )
            source_key = cursor.lastrowid or 0
        self._source_keys[record.key] = source_key
        return source_key

    def get_source(self, source_key: int) -> Optional[CandidateRecord]:
        row = self.conn.execute(
            "SELECT record FROM source WHERE source_key = ? AND study_key = ?",
            (source_key, self.study_key),
        ).fetchone()
        if row is None:
            return None
        return parse_record(row["record"])

    def is_proposal(self, source_key: int) -> bool:
        row = self.conn.execute(
            "SELECT is_proposal FROM source WHERE source_key = ?",
            (source_key,),
        ).fetchone()
        return bool(row and row["is_proposal"])

    def mark_pre_baseline(self, source_key: int) -> None:
        self.conn.execute(
            "UPDATE source SET is_pre_baseline = 1 WHERE source_key = ?",
            (source_key,),
        )

    def is_pre_baseline(self, source_key: int) -> bool:
        row = self.conn.execute(
            "SELECT is_pre_baseline FROM source WHERE source_key = ?",
            (source_key,),
        ).fetchone()
        return bool(row and row["is_pre_baseline"])

    # --- Scenarios ---

    def add_scenario(
        self,
        name: str,
        description: str,
        scenario_type: ScenarioType,
        sources: list[ScenarioSource],
        parent_key: Optional[int] = None,
        is_permanent: bool = False,
    ) -> Scenario:
        """Add a scenario, as a child of parent_key when given."""
        cursor = self.conn.execute(
            """
            INSERT INTO scenario (study_key, parent_key, name, description, scenario_type, is_permanent)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                self.study_key,
                parent_key,
                name,
                description,
                scenario_type.value,
                int(is_permanent),
            ),
        )
        scenario = Scenario(
            key=cursor.lastrowid or 0,
            name=name,
            description=description,
            scenario_type=scenario_type,
            sources=list(sources),
            parent_key=parent_key,
            is_permanent=is_permanent,
        )
        self._write_scenario_sources(scenario.key, scenario.sources)
        return scenario

    def _write_scenario_sources(self, scenario_key: int, sources: list[ScenarioSource]) -> None:
        self.conn.executemany(
            """
            INSERT INTO scenario_source
                (scenario_key, position, source_key, is_desired, is_undesired, is_permanent)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    scenario_key,
                    position,
                    item.source_key,
                    int(item.is_desired),
                    int(item.is_undesired),
                    int(item.is_permanent),
                )
                for position, item in enumerate(sources)
            ],
        )

    def update_scenario_sources(self, scenario: Scenario) -> None:
        """Rewrite a scenario's source list from the in-memory copy."""
        self.conn.execute(
            "DELETE FROM scenario_source WHERE scenario_key = ?",
            (scenario.key,),
        )
        self._write_scenario_sources(scenario.key, scenario.sources)

    def get_scenario(self, scenario_key: int) -> Optional[Scenario]:
        row = self.conn.execute(
            "SELECT * FROM scenario WHERE scenario_key = ? AND study_key = ?",
            (scenario_key, self.study_key),
        ).fetchone()
        if row is None:
            return None
        return self._scenario_from_row(row)

    def _scenario_from_row(self, row: sqlite3.Row) -> Scenario:
        source_rows = self.conn.execute(
            """
            SELECT source_key, is_desired, is_undesired, is_permanent
            FROM scenario_source WHERE scenario_key = ? ORDER BY position
            """,
            (row["scenario_key"],),
        ).fetchall()
        return Scenario(
            key=row["scenario_key"],
            name=row["name"],
            description=row["description"] or "",
            scenario_type=ScenarioType(row["scenario_type"]),
            sources=[
                ScenarioSource(
                    source_key=r["source_key"],
                    is_desired=bool(r["is_desired"]),
                    is_undesired=bool(r["is_undesired"]),
                    is_permanent=bool(r["is_permanent"]),
                )
                for r in source_rows
            ],
            parent_key=row["parent_key"],
            is_permanent=bool(row["is_permanent"]),
        )

    def scenarios(self, parent_key: Optional[int] = None) -> list[Scenario]:
        """Top-level scenarios, or the children of parent_key, in creation order."""
        if parent_key is None:
            rows = self.conn.execute(
                """
                SELECT * FROM scenario WHERE study_key = ? AND parent_key IS NULL
                ORDER BY scenario_key
                """,
                (self.study_key,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM scenario WHERE parent_key = ? ORDER BY scenario_key",
                (parent_key,),
            ).fetchall()
        return [self._scenario_from_row(row) for row in rows]

    def child_count(self, scenario_key: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM scenario WHERE parent_key = ?",
            (scenario_key,),
        ).fetchone()
        return int(row["n"])

    def remove_child_scenarios(self, parent_key: int) -> None:
        """Remove all children of a scenario and any pairs that refer to them."""
        child_keys = [
            r["scenario_key"]
            for r in self.conn.execute(
                "SELECT scenario_key FROM scenario WHERE parent_key = ?",
                (parent_key,),
            ).fetchall()
        ]
        for key in child_keys:
            self._delete_scenario_rows(key)

    def remove_scenario(self, scenario_key: int) -> None:
        """Remove a scenario along with its children and pairs."""
        self.remove_child_scenarios(scenario_key)
        self._delete_scenario_rows(scenario_key)

    def _delete_scenario_rows(self, scenario_key: int) -> None:
        self.conn.execute(
            "DELETE FROM scenario_pair WHERE before_key = ? OR after_key = ?",
            (scenario_key, scenario_key),
        )
        self.conn.execute("DELETE FROM scenario_source WHERE scenario_key = ?", (scenario_key,))
        self.conn.execute("DELETE FROM scenario WHERE scenario_key = ?", (scenario_key,))

    # --- Pairs ---

    def add_pair(self, pair: ScenarioPair) -> None:
        self.conn.execute(
            """
            INSERT INTO scenario_pair
                (study_key, name, description, before_key, before_desired, after_key, after_desired)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.study_key,
                pair.name,
                pair.description,
                pair.before_key,
                pair.before_desired,
                pair.after_key,
                pair.after_desired,
            ),
        )

    def pairs(self) -> list[ScenarioPair]:
        rows = self.conn.execute(
            "SELECT * FROM scenario_pair WHERE study_key = ? ORDER BY pair_key",
            (self.study_key,),
        ).fetchall()
        return [
            ScenarioPair(
                name=r["name"],
                description=r["description"] or "",
                before_key=r["before_key"],
                before_desired=r["before_desired"],
                after_key=r["after_key"],
                after_desired=r["after_desired"],
            )
            for r in rows
        ]

    # --- Save / delete ---

    def save(self, report: Optional[str] = None) -> None:
        """Record the study as saved, with the report text when given.

        Requires the EDIT lock this document holds.
        """
        self._check_edit_lock()
        if report is None:
            self.conn.execute(
                "UPDATE study SET saved_at = ? WHERE study_key = ?",
                (utcnow(), self.study_key),
            )
        else:
            self.conn.execute(
                "UPDATE study SET saved_at = ?, report = ? WHERE study_key = ?",
                (utcnow(), report, self.study_key),
            )

    def get_report(self) -> Optional[str]:
        row = self.conn.execute(
            "SELECT report FROM study WHERE study_key = ?",
            (self.study_key,),
        ).fetchone()
        return row["report"] if row else None

    def delete(self) -> None:
        """Delete the study using the held lock snapshot."""
        locks.delete_study(self.conn, self.study_key, self.lock)
