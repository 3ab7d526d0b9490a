# Copyright (c) Syntropy Systems
"""Station record queries over the current, baseline, and user record tables."""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import yaml
from pydantic import ValidationError

from ixcheck.db import create_station_data, immediate_transaction
from ixcheck.errors import SearchError
from ixcheck.models.records import (
    BaselineRecord,
    CandidateRecord,
    Country,
    RecordStatus,
    UserRecord,
    dump_record,
    parse_record,
)

logger = logging.getLogger(__name__)

# Status types included when pending records are excluded.
NON_PENDING_STATUSES = (RecordStatus.LIC, RecordStatus.CP)


@dataclass(frozen=True)
class RecordQuery:
    """Merged two-mask channel query.

    Digital records match on digital_channels, analog records on
    analog_channels.
    """

    digital_channels: frozenset[int]
    analog_channels: frozenset[int]
    include_pending: bool = True
    include_foreign: bool = False
    facility_id: int | None = None


@dataclass(frozen=True)
class BaselineQuery:
    """Baseline table query over one channel set."""

    channels: frozenset[int]
    include_foreign: bool = False
    facility_id: int | None = None


@dataclass
class BaselineIndex:
    """Baseline and pre-transition channels by facility id."""

    index: dict[int, int] = field(default_factory=dict)
    pre_index: dict[int, int] = field(default_factory=dict)
    has_ca: bool = False
    has_mx: bool = False


class StationDataSource(Protocol):
    """Station record query service a build searches against."""

    def find_records(self, query: RecordQuery) -> list[CandidateRecord]: ...

    def find_baseline_records(self, query: BaselineQuery) -> list[CandidateRecord]: ...

    def find_user_records(self, user_record_ids: tuple[int, ...]) -> list[CandidateRecord]: ...

    def get_baseline_index(self) -> BaselineIndex: ...


def _in_clause(values: frozenset[int]) -> tuple[str, list[int]]:
    ordered = sorted(values)
    return "(" + ",".join("?" for _ in ordered) + ")", ordered


class SQLiteStationData:
    """Station data source backed by the tv_record and tv_baseline tables."""

    def __init__(self, conn: sqlite3.Connection, station_data_key: int) -> None:
        self.conn = conn
        self.station_data_key = station_data_key

    def _parse_rows(self, rows: list[sqlite3.Row]) -> list[CandidateRecord]:
        records: list[CandidateRecord] = []
        for row in rows:
            try:
                records.append(parse_record(row["record"]))
            except ValidationError as e:
                msg = f"Invalid station record {row['record_id']}: {e}"
                raise SearchError(msg) from e
        return records

    def find_records(self, query: RecordQuery) -> list[CandidateRecord]:
        clauses = ["station_data_key = ?"]
        params: list[object] = [self.station_data_key]

        if not query.include_pending:
            clauses.append(
                "status IN (" + ",".join("?" for _ in NON_PENDING_STATUSES) + ")"
            )
            params.extend(s.value for s in NON_PENDING_STATUSES)

        if not query.include_foreign:
            if query.facility_id is not None:
                clauses.append("(country = ? OR facility_id = ?)")
                params.extend([Country.US.value, query.facility_id])
            else:
                clauses.append("country = ?")
                params.append(Country.US.value)

        channel_terms: list[str] = []
        if query.digital_channels:
            sql, values = _in_clause(query.digital_channels)
            channel_terms.append(f"(is_digital = 1 AND channel IN {sql})")
            params.extend(values)
        if query.analog_channels:
            sql, values = _in_clause(query.analog_channels)
            channel_terms.append(f"(is_digital = 0 AND channel IN {sql})")
            params.extend(values)
        if not channel_terms:
            return []
        clauses.append("(" + " OR ".join(channel_terms) + ")")

        try:
            rows = self.conn.execute(
                "SELECT record_id, record FROM tv_record WHERE "
                + " AND ".join(clauses)
                + " ORDER BY record_id",
                params,
            ).fetchall()
        except sqlite3.Error as e:
            msg = f"Station record query failed: {e}"
            raise SearchError(msg) from e
        return self._parse_rows(rows)

    def find_baseline_records(self, query: BaselineQuery) -> list[CandidateRecord]:
        if not query.channels:
            return []
        clauses = ["station_data_key = ?"]
        params: list[object] = [self.station_data_key]

        if not query.include_foreign:
            if query.facility_id is not None:
                clauses.append("(country = ? OR facility_id = ?)")
                params.extend([Country.US.value, query.facility_id])
            else:
                clauses.append("country = ?")
                params.append(Country.US.value)

        sql, values = _in_clause(query.channels)
        clauses.append(f"channel IN {sql}")
        params.extend(values)

        try:
            rows = self.conn.execute(
                "SELECT record_id, record FROM tv_baseline WHERE "
                + " AND ".join(clauses)
                + " ORDER BY record_id",
                params,
            ).fetchall()
        except sqlite3.Error as e:
            msg = f"Baseline record query failed: {e}"
            raise SearchError(msg) from e
        return self._parse_rows(rows)

    def find_user_records(self, user_record_ids: tuple[int, ...]) -> list[CandidateRecord]:
        if not user_record_ids:
            return []
        sql, values = _in_clause(frozenset(user_record_ids))
        try:
            rows = self.conn.execute(
                "SELECT user_record_id AS record_id, record FROM user_record "
                f"WHERE user_record_id IN {sql} ORDER BY user_record_id",
                values,
            ).fetchall()
        except sqlite3.Error as e:
            msg = f"User record query failed: {e}"
            raise SearchError(msg) from e
        return self._parse_rows(rows)

    def get_record(self, kind: str, record_id: str) -> CandidateRecord | None:
        """Look up one record by kind ("current", "baseline", or "user") and id."""
        if kind == "user":
            try:
                user_id = int(record_id)
            except ValueError:
                return None
            records = self.find_user_records((user_id,))
            return records[0] if records else None

        table = "tv_baseline" if kind == "baseline" else "tv_record"
        try:
            rows = self.conn.execute(
                f"SELECT record_id, record FROM {table} "
                "WHERE station_data_key = ? AND record_id = ?",
                (self.station_data_key, record_id),
            ).fetchall()
        except sqlite3.Error as e:
            msg = f"Station record query failed: {e}"
            raise SearchError(msg) from e
        records = self._parse_rows(rows)
        return records[0] if records else None

    def get_baseline_index(self) -> BaselineIndex:
        try:
            rows = self.conn.execute(
                """
                SELECT facility_id, channel, pre_transition_channel, country
                FROM tv_baseline WHERE station_data_key = ?
                """,
                (self.station_data_key,),
            ).fetchall()
        except sqlite3.Error as e:
            msg = f"Baseline index query failed: {e}"
            raise SearchError(msg) from e

        result = BaselineIndex()
        for row in rows:
            result.index[row["facility_id"]] = row["channel"]
            if row["pre_transition_channel"]:
                result.pre_index[row["facility_id"]] = row["pre_transition_channel"]
            if row["country"] == Country.CA.value:
                result.has_ca = True
            elif row["country"] == Country.MX.value:
                result.has_mx = True
        return result


# --- Import ---

def insert_records(
    conn: sqlite3.Connection,
    station_data_key: int,
    records: list[CandidateRecord],
    pre_transition_channels: dict[str, int] | None = None,
) -> int:
    """Insert records into the table matching their kind. Returns the count."""
    pre_transition_channels = pre_transition_channels or {}
    count = 0
    for record in records:
        payload = dump_record(record)
        if isinstance(record, UserRecord):
            conn.execute(
                "INSERT OR REPLACE INTO user_record (user_record_id, record) VALUES (?, ?)",
                (record.user_record_id, payload),
            )
        elif isinstance(record, BaselineRecord):
            conn.execute(
                """
                INSERT OR REPLACE INTO tv_baseline
                    (station_data_key, record_id, facility_id, channel,
                     pre_transition_channel, country, record)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    station_data_key,
                    record.record_id,
                    record.facility_id,
                    record.channel,
                    pre_transition_channels.get(record.record_id),
                    record.country.value,
                    payload,
                ),
            )
        else:
            conn.execute(
                """
                INSERT OR REPLACE INTO tv_record
                    (station_data_key, record_id, facility_id, channel, is_digital,
                     status, country, record)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    station_data_key,
                    record.record_id,
                    record.facility_id,
                    record.channel,
                    int(record.service.is_digital),
                    record.status.value,
                    record.country.value,
                    payload,
                ),
            )
        count += 1
    return count


def import_station_file(conn: sqlite3.Connection, path: Path, name: str | None = None) -> tuple[int, int]:
    """Import a YAML or JSON station file as a new station data set.

    The file holds a list of records (or {"records": [...]}). Baseline entries
    may carry a "pre_transition_channel" key. Returns (station_data_key, count).
    """
    with path.open() as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("records", [])
    if not isinstance(data, list):
        msg = f"{path} does not contain a list of records"
        raise ValueError(msg)

    records: list[CandidateRecord] = []
    pre_channels: dict[str, int] = {}
    for item in data:
        if not isinstance(item, dict):
            msg = f"{path} contains a non-mapping record entry"
            raise ValueError(msg)
        pre = item.pop("pre_transition_channel", None)
        record = parse_record(item)
        if pre is not None:
            pre_channels[record.record_id] = int(pre)
        records.append(record)

    with immediate_transaction(conn):
        station_data_key = create_station_data(conn, name or path.stem)
        count = insert_records(conn, station_data_key, records, pre_channels)
    logger.info("imported %d records from %s as station data %d", count, path, station_data_key)
    return station_data_key, count
