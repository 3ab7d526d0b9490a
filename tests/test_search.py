# Copyright (c) Syntropy Systems
"""Tests for the record search and filter pipeline."""

import sqlite3
from datetime import date
from pathlib import Path

import pytest

from ixcheck.errors import ConfigurationError
from ixcheck.models.study import StudyConfiguration
from ixcheck.search import (
    DEFAULT_RULES,
    BuildContext,
    IxRule,
    RecordSearch,
    channel_band,
    load_rules,
    search_channels,
)
from ixcheck.stations import SQLiteStationData


def _search(conn: sqlite3.Connection, station_data_key: int, proposal, **fields) -> RecordSearch:
    data = {
        "target": proposal,
        "station_data_key": station_data_key,
        "file_output_codes": "IX",
        "map_output_codes": "M",
    }
    data.update(fields)
    config = StudyConfiguration.model_validate(data)
    station_data = SQLiteStationData(conn, station_data_key)
    context = BuildContext(baseline_index=station_data.get_baseline_index())
    return RecordSearch(config, proposal, station_data, context)


def _calls(records) -> list[str]:
    return [r.call_sign for r in records]


class TestChannels:
    """Tests for rule-driven channel reach."""

    def test_bands(self) -> None:
        assert [channel_band(c) for c in (2, 4, 5, 6, 7, 13, 14, 51)] == [0, 0, 1, 1, 2, 2, 3, 3]

    def test_interference_search(self) -> None:
        digital, analog = search_channels(DEFAULT_RULES, 30, True)

        assert digital == {29, 30, 31}
        assert analog == {22, 23, 26, 27, 28, 29, 30, 31, 32, 33, 34, 37, 38, 44, 45}

    def test_protected_search_reverses_deltas(self) -> None:
        _, analog = search_channels(DEFAULT_RULES, 30, False)

        assert {15, 16} <= analog
        assert not {44, 45} & analog

    def test_band_edges(self) -> None:
        digital, analog = search_channels(DEFAULT_RULES, 5, True)

        assert digital == {5, 6}
        assert analog == {5, 6}

    def test_channel_limits(self) -> None:
        digital, _ = search_channels(DEFAULT_RULES, 51, True)
        assert digital == {50, 51}


class TestLoadRules:
    """Tests for rule table files."""

    def test_list(self, temp_dir: Path) -> None:
        path = temp_dir / "rules.yaml"
        path.write_text(
            "- channel_delta: 0\n  distance: 250\n"
            "- channel_delta: 2\n  distance: 90\n  analog_only: true\n"
        )

        assert load_rules(path) == (IxRule(0, 250.0), IxRule(2, 90.0, analog_only=True))

    def test_mapping(self, temp_dir: Path) -> None:
        path = temp_dir / "rules.yaml"
        path.write_text("rules:\n  - {channel_delta: -1, distance: 100}\n")

        assert load_rules(path) == (IxRule(-1, 100.0),)

    @pytest.mark.parametrize(
        "text",
        ["[]\n", "rules: 3\n", "- [1, 2]\n", "- {channel_delta: x, distance: 1}\n", "- {distance: 1}\n"],
    )
    def test_invalid(self, temp_dir: Path, text: str) -> None:
        path = temp_dir / "rules.yaml"
        path.write_text(text)

        with pytest.raises(ConfigurationError):
            load_rules(path)


class TestDesiredList:
    """Tests for finding records the proposal may interfere with."""

    @pytest.fixture
    def proposal(self, make_record):
        return make_record("KPRO", 30, status="APP", facility_id=500)

    @pytest.fixture
    def station_key(self, load_station_data, make_record, proposal) -> int:
        return load_station_data(
            [
                proposal,
                make_record("WDES", 30, latitude=41.0),
                make_record("WADJ", 31, latitude=40.5),
                make_record("WFAR", 30, latitude=45.0),
                make_record("WLOW", 30, service="LD", latitude=40.2),
                make_record("KPRO", 30, facility_id=500, latitude=40.01),
                make_record("WSTA", 30, status="STA", latitude=40.3),
                make_record("WAPP", 31, status="APP", latitude=40.4),
            ]
        )

    def test_finds_and_sorts(self, db_connection, station_key, proposal) -> None:
        """Far, LPTV, MX, and STA records are left out; the rest sort by channel."""
        found = _search(db_connection, station_key, proposal).make_desired_list()

        assert _calls(found.records) == ["WDES", "WADJ", "WAPP"]
        assert found.detected_before is None

    def test_excludes_applications(self, db_connection, station_key, proposal) -> None:
        found = _search(db_connection, station_key, proposal, exclude_apps=True).make_desired_list()
        assert _calls(found.records) == ["WDES", "WADJ"]

    def test_explicit_exclusions(self, db_connection, station_key, proposal) -> None:
        search = _search(
            db_connection, station_key, proposal, exclude_commands=["$callsign=wdes"]
        )

        found = search.make_desired_list()

        assert _calls(found.records) == ["WADJ", "WAPP"]
        assert _calls(search.context.excluded_records.values()) == ["WDES"]

    def test_lptv_protected_when_proposal_is_lptv(
        self, db_connection, load_station_data, make_record
    ) -> None:
        proposal = make_record("KLPT", 30, service="LD", status="APP")
        key = load_station_data([make_record("WLOW", 30, service="LD", latitude=40.2)])

        found = _search(db_connection, key, proposal).make_desired_list()

        assert _calls(found.records) == ["WLOW"]

    def test_detects_baseline_before(self, db_connection, load_station_data, make_record, proposal) -> None:
        key = load_station_data(
            [make_record("KPRO", 30, kind="baseline", status="BL", facility_id=500)]
        )

        found = _search(db_connection, key, proposal).make_desired_list()

        assert found.records == []
        assert found.detected_before is not None
        assert found.detected_before.facility_id == 500

    def test_before_not_detected_when_set(
        self, db_connection, load_station_data, make_record, proposal
    ) -> None:
        key = load_station_data(
            [make_record("KPRO", 30, kind="baseline", status="BL", facility_id=500)]
        )

        found = _search(db_connection, key, proposal, did_set_before=True).make_desired_list()

        assert found.detected_before is None

    def test_licensed_facility_hides_its_baseline(
        self, db_connection, load_station_data, make_record, proposal
    ) -> None:
        key = load_station_data(
            [
                make_record("WADJ", 31, latitude=40.5, facility_id=900),
                make_record("WADJ", 31, kind="baseline", status="BL", facility_id=900, latitude=40.5),
                make_record("WBAS", 31, kind="baseline", status="BL", facility_id=901, latitude=40.6),
            ]
        )

        found = _search(db_connection, key, proposal).make_desired_list()

        assert [(r.call_sign, r.kind) for r in found.records] == [
            ("WADJ", "current"),
            ("WBAS", "baseline"),
        ]

    def test_pre_baseline_records(self, db_connection, load_station_data, make_record, proposal) -> None:
        """Records predating the baseline off their baseline channel need the protect option."""
        key = load_station_data(
            [
                make_record("WOLD", 30, latitude=40.5, facility_id=777, sequence_date=date(2015, 1, 1)),
                make_record("WOLD", 25, kind="baseline", status="BL", facility_id=777),
            ]
        )
        baseline_date = date(2017, 4, 13)

        default = _search(db_connection, key, proposal, baseline_date=baseline_date)
        protected = _search(
            db_connection, key, proposal, baseline_date=baseline_date, protect_pre_baseline=True
        )

        assert default.make_desired_list().records == []
        assert _calls(protected.make_desired_list().records) == ["WOLD"]

    def test_search_is_memoized(self, db_connection, station_key, proposal) -> None:
        search = _search(db_connection, station_key, proposal)
        first = search.channel_search(30, False)

        assert search.channel_search(30, False) is first


class TestUndesiredList:
    """Tests for finding records that may interfere with a desired."""

    def test_undesireds(self, db_connection, load_station_data, make_record) -> None:
        proposal = make_record("KPRO", 30, status="APP", facility_id=500)
        desired = make_record("WDES", 30, latitude=41.0, facility_id=600)
        key = load_station_data(
            [
                proposal,
                desired,
                make_record("KUND", 30, latitude=42.0),
                make_record("WDES", 31, latitude=41.0, facility_id=600, status="APP"),
                make_record("KPRO", 31, facility_id=500, status="CP"),
                make_record("KLOW", 30, service="LD", latitude=41.5),
                make_record("KFAR", 30, latitude=46.0),
            ]
        )

        found = _search(db_connection, key, proposal).make_undesired_list(desired)

        assert _calls(found.records) == ["KUND"]
        assert not found.desired_is_pre_baseline

    def test_user_records(self, db_connection, load_station_data, make_record) -> None:
        proposal = make_record("KPRO", 30, status="APP")
        desired = make_record("WDES", 30, latitude=41.0)
        user = make_record("KUSR", 30, kind="user", latitude=42.0)
        key = load_station_data([proposal, desired])

        search = _search(db_connection, key, proposal, include_user_records=[user.user_record_id])
        search.context.user_records = [user]
        found = search.make_undesired_list(desired)

        assert _calls(found.records) == ["KUSR"]
        assert search.context.included_user_records == {user.user_record_id: user}

    def test_analog_desired_finds_digital_taboo_records(
        self, db_connection, load_station_data, make_record
    ) -> None:
        """Analog-only rules follow the desired's modulation, not the found record's."""
        proposal = make_record("KPRO", 30, status="APP", latitude=45.0)
        desired = make_record("WTRN", 30, service="TX", latitude=40.0)
        taboo = make_record("KLOW", 32, service="LD", latitude=40.3)
        key = load_station_data([proposal, desired, taboo])
        search = _search(db_connection, key, proposal)

        assert search.records_match_rules(desired, taboo)
        assert _calls(search.make_undesired_list(desired).records) == ["KLOW"]

    def test_digital_desired_skips_analog_only_channels(
        self, db_connection, load_station_data, make_record
    ) -> None:
        proposal = make_record("KPRO", 30, status="APP", latitude=45.0)
        desired = make_record("WLOW", 30, service="LD", latitude=40.0)
        taboo = make_record("KTRN", 32, service="TX", latitude=40.3)
        key = load_station_data([proposal, desired, taboo])

        found = _search(db_connection, key, proposal).make_undesired_list(desired)

        assert found.records == []
