# Copyright (c) Syntropy Systems
"""Study configuration files.

A study file is YAML naming the proposal and the build options:

    station_data: 1
    target: {kind: current, record_id: "12345"}
    before: {kind: baseline, record_id: "B678"}
    file_output_codes: "IX"
    map_output_codes: "M"
    exclude_commands: ["$callsign=KABC"]

Records are given as a reference (kind and record_id only), looked up in the
station data, or inline with every record field. Listing "before" at all, even
as null, marks it as explicitly set.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional, cast

import yaml
from pydantic import ValidationError

from ixcheck.errors import ConfigurationError
from ixcheck.models.base import JSONObject, JSONValue
from ixcheck.models.records import CandidateRecord, parse_record
from ixcheck.models.study import StudyConfiguration
from ixcheck.stations import SQLiteStationData

_REFERENCE_KEYS = {"kind", "record_id"}


def _resolve_record(
    value: JSONValue, station_data: SQLiteStationData, field_name: str
) -> CandidateRecord:
    if isinstance(value, (str, int)):
        value = {"kind": "current", "record_id": str(value)}
    if not isinstance(value, dict):
        msg = f"Study file '{field_name}' must be a record or record reference"
        raise ConfigurationError(msg)

    if set(value) <= _REFERENCE_KEYS:
        kind = str(value.get("kind", "current"))
        record_id = str(value.get("record_id", ""))
        record = station_data.get_record(kind, record_id)
        if record is None:
            msg = f"Cannot build study, {kind} record '{record_id}' not found."
            raise ConfigurationError(msg)
        return record

    try:
        return parse_record(value)
    except ValidationError as e:
        msg = f"Invalid {field_name} record in study file: {e}"
        raise ConfigurationError(msg) from e


def parse_study_data(data: JSONObject, conn: sqlite3.Connection) -> StudyConfiguration:
    """Validate study file data into a configuration, resolving record references."""
    data = dict(data)
    if "station_data" in data:
        data["station_data_key"] = data.pop("station_data")
    if "template" in data:
        data["template_key"] = data.pop("template")

    station_data_key = data.get("station_data_key")
    if not isinstance(station_data_key, int):
        msg = "Study file must set 'station_data' to a station data key"
        raise ConfigurationError(msg)
    if "target" not in data:
        msg = "Study file must have a 'target' field"
        raise ConfigurationError(msg)

    station_data = SQLiteStationData(conn, station_data_key)
    fields = cast("dict[str, object]", data)
    fields["target"] = _resolve_record(data["target"], station_data, "target")
    if "before" in data:
        fields["did_set_before"] = True
        before = data["before"]
        fields["before"] = (
            None if before is None else _resolve_record(before, station_data, "before")
        )

    try:
        return StudyConfiguration.model_validate(fields)
    except ValidationError as e:
        msg = f"Invalid study file: {e}"
        raise ConfigurationError(msg) from e


def load_study_file(
    path: Path,
    conn: sqlite3.Connection,
    description: Optional[str] = None,
) -> StudyConfiguration:
    """Load a study configuration from a YAML file."""
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        msg = f"Could not read study file {path}: {e}"
        raise ConfigurationError(msg) from e

    if not isinstance(data, dict):
        msg = f"Study file {path} must contain a mapping"
        raise ConfigurationError(msg)
    if description is not None:
        data["description"] = description
    return parse_study_data(cast("JSONObject", data), conn)
