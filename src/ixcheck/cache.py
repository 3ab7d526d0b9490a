# Copyright (c) Syntropy Systems
"""Disk-backed run result cache.

Each run reserves a sequential name, an output directory
<output_root>/<database_id>/<name>/, and an ix_check_status row holding the
configuration fingerprint. Index rows and directories are created together
and maintenance repairs any pair that has come apart.
"""
from __future__ import annotations

import logging
import shutil
import sqlite3
from decimal import Decimal, InvalidOperation
from pathlib import Path

from pydantic import ValidationError

from ixcheck.db import immediate_transaction, utc_days_ago, utcnow
from ixcheck.errors import CacheInconsistencyError
from ixcheck.models.cache import (
    CacheReport,
    MaintenanceReport,
    RunCacheEntry,
    RunIndexStatus,
    RunStatusIndex,
)
from ixcheck.models.records import BaselineRecord, UserRecord
from ixcheck.models.study import StudyConfiguration

logger = logging.getLogger(__name__)

STUDY_NAME_PREFIX = "IxCheck"
INDEX_FILE_NAME = "index.json"


def _canonical_number(value: str) -> str:
    try:
        number = Decimal(value)
    except InvalidOperation:
        return value.strip()
    return format(number.normalize(), "f")


def _flag(value: bool) -> str:
    return "Y" if value else "N"


def fingerprint(config: StudyConfiguration) -> str:
    """Stable key over every configuration field that affects run output.

    Equal fingerprints mean interchangeable results.
    """
    target = config.target
    parts: list[str] = []

    if isinstance(target, UserRecord):
        parts.append(f"U#I{target.user_record_id}")
    elif isinstance(target, BaselineRecord):
        parts.append(f"{config.station_data_key}#B{target.record_id}")
    else:
        parts.append(f"{config.station_data_key}#I{target.record_id}")

    if config.did_set_before:
        parts.append("#B" + (config.before.key if config.before is not None else "-"))
    if config.replication_channel is not None:
        parts.append(f"#C{config.replication_channel}")

    parts.append(f"#T{config.template_key}")
    parts.append(f"#E{config.station_data_key}")
    parts.append(f"#O{config.file_output_codes}")
    parts.append(f"#M{config.map_output_codes}")
    if config.cell_size is not None:
        parts.append("#S" + _canonical_number(config.cell_size))
    if config.profile_ppk is not None:
        parts.append("#P" + _canonical_number(config.profile_ppk))

    parts.append(
        "#F"
        + _flag(config.exclude_apps)
        + _flag(config.exclude_pending)
        + _flag(config.include_foreign)
        + _flag(config.protect_pre_baseline)
        + _flag(config.protect_baseline_from_lptv)
        + _flag(config.protects_lptv_from_class_a)
        + _flag(config.cp_excludes_baseline)
        + _flag(config.exclude_post_transition)
    )

    if config.filing_cutoff_date is not None:
        parts.append("#D" + config.filing_cutoff_date.strftime("%Y%m%d"))
    if config.baseline_date is not None:
        parts.append("#L" + config.baseline_date.strftime("%Y%m%d"))
    if config.exclude_commands:
        parts.append("#X" + ":".join(sorted(c.upper() for c in config.exclude_commands)))
    if config.include_user_records:
        parts.append("#A" + ":".join(str(uid) for uid in config.include_user_records))

    return "".join(parts)


# --- Status index document ---

def write_status_index(directory: Path, index: RunStatusIndex) -> Path:
    """Write index.json into a run directory, replacing any earlier version."""
    index.updated_at = utcnow()
    path = directory / INDEX_FILE_NAME
    tmp_path = directory / (INDEX_FILE_NAME + ".tmp")
    tmp_path.write_text(index.model_dump_json(indent=2))
    tmp_path.replace(path)
    return path


def read_status_index(directory: Path) -> RunStatusIndex | None:
    path = directory / INDEX_FILE_NAME
    if not path.exists():
        return None
    try:
        return RunStatusIndex.model_validate_json(path.read_text())
    except ValidationError:
        logger.warning("unreadable status index %s", path)
        return None


def _directory_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        if item.is_file():
            try:
                total += item.stat().st_size
            except OSError:
                continue
    return total


class ResultCache:
    """Run cache for one database."""

    def __init__(self, conn: sqlite3.Connection, output_root: Path, database_id: str) -> None:
        self.conn = conn
        self.output_root = output_root
        self.database_id = database_id
        self.current: RunCacheEntry | None = None

    @property
    def cache_dir(self) -> Path:
        return self.output_root / self.database_id

    def directory_for(self, study_name: str) -> Path:
        return self.cache_dir / study_name

    def _entry(self, row: sqlite3.Row) -> RunCacheEntry:
        return RunCacheEntry(
            fingerprint=row["study_id"],
            study_name=row["study_name"],
            run_timestamp=row["run_date"],
            output_directory=str(self.directory_for(row["study_name"])),
        )

    def reserve(self, config: StudyConfiguration) -> RunCacheEntry:
        """Allocate a new run name, create its directory, and index it.

        All three happen under one write transaction, before any engine run,
        so even a crashed run leaves an indexed directory behind.
        """
        study_id = fingerprint(config)
        with immediate_transaction(self.conn):
            self.conn.execute("UPDATE ix_check_name_sequence SET name_key = name_key + 1")
            row = self.conn.execute("SELECT name_key FROM ix_check_name_sequence").fetchone()
            study_name = f"{STUDY_NAME_PREFIX}{row['name_key']}"
            directory = self.directory_for(study_name)
            directory.mkdir(parents=True, exist_ok=True)
            run_date = utcnow()
            self.conn.execute(
                "INSERT INTO ix_check_status (study_name, study_id, run_date) VALUES (?, ?, ?)",
                (study_name, study_id, run_date),
            )

        write_status_index(
            directory,
            RunStatusIndex(study_name=study_name, description=config.description),
        )
        logger.info("reserved run %s", study_name)
        self.current = RunCacheEntry(
            fingerprint=study_id,
            study_name=study_name,
            run_timestamp=run_date,
            output_directory=str(directory),
        )
        return self.current

    def past_runs(self, config: StudyConfiguration) -> list[RunCacheEntry]:
        """Earlier runs with the same fingerprint, most recent first.

        Also points current at the newest of them, or None when there are none.
        """
        rows = self.conn.execute(
            """
            SELECT study_name, study_id, run_date FROM ix_check_status
            WHERE study_id = ?
            ORDER BY run_date DESC, rowid DESC
            """,
            (fingerprint(config),),
        ).fetchall()
        entries = [self._entry(row) for row in rows]
        self.current = entries[0] if entries else None
        return entries

    def all_runs(self) -> list[RunCacheEntry]:
        rows = self.conn.execute(
            """
            SELECT study_name, study_id, run_date FROM ix_check_status
            ORDER BY run_date DESC, rowid DESC
            """
        ).fetchall()
        return [self._entry(row) for row in rows]

    def status_for(self, entry: RunCacheEntry) -> RunStatusIndex | None:
        return read_status_index(Path(entry.output_directory))

    # --- Maintenance ---

    def _output_names(self) -> set[str]:
        if not self.cache_dir.is_dir():
            return set()
        return {p.name for p in self.cache_dir.iterdir() if p.is_dir()}

    def _reconcile(self, report: MaintenanceReport) -> set[str]:
        """Drop index rows without directories. Returns directories without rows.

        Must run inside a write transaction, so no reservation can land
        between listing directories and reading the index.
        """
        outputs = self._output_names()
        names = [r["study_name"] for r in self.conn.execute("SELECT study_name FROM ix_check_status")]

        missing = [name for name in names if name not in outputs]
        for name in missing:
            logger.info(
                "cache repair: %s",
                CacheInconsistencyError(f"index entry {name} has no output directory"),
            )
            self.conn.execute("DELETE FROM ix_check_status WHERE study_name = ?", (name,))
        report.index_removed += len(missing)

        return outputs - set(names)

    def _delete_directories(self, orphans: set[str], report: MaintenanceReport) -> None:
        for name in sorted(orphans):
            logger.info(
                "cache repair: %s",
                CacheInconsistencyError(f"output directory {name} is not in the index"),
            )
            try:
                shutil.rmtree(self.directory_for(name))
            except OSError as e:
                report.errors.append(f"Could not delete {name}: {e}")
                continue
            report.directories_deleted += 1

    def cleanup(self) -> MaintenanceReport:
        """Reconcile index and directories in both directions."""
        report = MaintenanceReport()
        with immediate_transaction(self.conn):
            orphans = self._reconcile(report)
        self._delete_directories(orphans, report)
        return report

    def delete(self, days: int) -> MaintenanceReport:
        """Purge runs at least `days` old, then reconcile.

        Directories orphaned by the purge go in the same pass, so days=0
        empties the cache.
        """
        report = MaintenanceReport()
        with immediate_transaction(self.conn):
            cursor = self.conn.execute(
                "DELETE FROM ix_check_status WHERE run_date <= ?",
                (utc_days_ago(days),),
            )
            report.index_removed += cursor.rowcount
            orphans = self._reconcile(report)
        self._delete_directories(orphans, report)
        logger.info(
            "cache delete (%d days): %d index entries, %d directories",
            days,
            report.index_removed,
            report.directories_deleted,
        )
        return report

    def report(self) -> CacheReport:
        """Index row count, output directory count, and storage used."""
        result = CacheReport()
        try:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM ix_check_status").fetchone()
            result.index_count = int(row["n"])
        except sqlite3.Error as e:
            result.errors.append(str(e))

        for name in self._output_names():
            result.directory_count += 1
            result.bytes_used += _directory_size(self.directory_for(name))
        return result

    def mark_running(self, entry: RunCacheEntry, description: str | None = None) -> None:
        write_status_index(
            Path(entry.output_directory),
            RunStatusIndex(
                study_name=entry.study_name,
                description=description,
                status=RunIndexStatus.RUNNING,
                message="Study running...",
            ),
        )

    def mark_final(
        self,
        entry: RunCacheEntry,
        success: bool,
        message: str,
        report: str | None = None,
        output_files: list[str] | None = None,
        description: str | None = None,
    ) -> None:
        """Replace the in-progress status document with a terminal one."""
        index = RunStatusIndex(
            study_name=entry.study_name,
            description=description,
            status=RunIndexStatus.COMPLETE if success else RunIndexStatus.FAILED,
            message=message,
            report=report,
            output_files=output_files or [],
        )
        write_status_index(Path(entry.output_directory), index)
