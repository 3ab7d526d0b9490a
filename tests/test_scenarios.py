# Copyright (c) Syntropy Systems
"""Tests for the MX scenario combination builder."""

import sqlite3

import pytest

from ixcheck.cancel import CancellationToken
from ixcheck.errors import BuildAbortedError, CombinatorialExplosionError, ConfigurationError
from ixcheck.models.study import ScenarioSource, ScenarioType, Undesired
from ixcheck.scenarios import (
    MX_HIGH_WARNING,
    ScenarioBuilder,
    check_mx_count,
    compute_exclusions,
    enumerate_leaves,
)
from ixcheck.store import StudyDocument


class RecordingStatus:
    """Status reporter that keeps every message."""

    def __init__(self) -> None:
        self.logged: list[str] = []

    def report_status(self, message: str) -> None:
        pass

    def log_message(self, message: str) -> None:
        self.logged.append(message)

    def show_message(self, message: str) -> None:
        pass


def _undesireds(make_record, specs):
    """Build Undesired entries from (call_sign, facility_id, causes) tuples."""
    return [
        Undesired(
            record=make_record(call, 30, facility_id=facility),
            source_key=100 + i,
            causes_interference=causes,
        )
        for i, (call, facility, causes) in enumerate(specs)
    ]


def _included(flags: tuple[bool, ...]) -> set[int]:
    return {i for i, flag in enumerate(flags) if flag}


@pytest.fixture
def document(db_connection: sqlite3.Connection, load_station_data) -> StudyDocument:
    key = load_station_data([])
    return StudyDocument.create(db_connection, "Scenario test", 1, key)


class TestEnumerateLeaves:
    """Tests for the combination tree."""

    def test_mx_pair_both_interfering(self, make_record) -> None:
        """Two MX interferers give one leaf each."""
        undesireds = _undesireds(make_record, [("KUND", 7, True), ("KALT", 7, True)])
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0}, {1}]
        assert analysis.mx_count == 1
        assert undesireds[0].excludes == [1]
        assert undesireds[1].excludes == []

    def test_quiet_mx_group_is_not_branched(self, make_record) -> None:
        """A group where nothing interferes keeps its first entry only."""
        undesireds = _undesireds(make_record, [("KUND", 7, False), ("KALT", 7, False)])
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0}]
        assert analysis.mx_count == 0

    def test_quiet_partner_after_interferer(self, make_record) -> None:
        """The quiet partner is dropped once the interferer is left out."""
        undesireds = _undesireds(make_record, [("KUND", 7, True), ("KALT", 7, False)])
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0}, set()]

    def test_quiet_partner_before_interferer(self, make_record) -> None:
        undesireds = _undesireds(make_record, [("KALT", 7, False), ("KUND", 7, True)])
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0}, {1}]

    def test_quiet_rest_of_group(self, make_record) -> None:
        """With the interferer left out, the quiet rest of its group is not branched."""
        undesireds = _undesireds(
            make_record, [("KUND", 7, True), ("KALT", 7, False), ("KOTH", 7, False)]
        )
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0}, {1}]

    def test_lone_entries(self, make_record) -> None:
        """Entries with no MX partner are in every leaf only if they interfere."""
        undesireds = _undesireds(
            make_record,
            [("KONE", 1, True), ("KTWO", 2, False), ("KUND", 7, True), ("KALT", 7, True)],
        )
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert leaves == [{0, 2}, {0, 3}]

    def test_leaf_set_properties(self, make_record) -> None:
        undesireds = _undesireds(
            make_record,
            [
                ("KA1", 7, True),
                ("KB1", 8, True),
                ("KA2", 7, False),
                ("KQ1", 9, False),
                ("KB2", 8, True),
                ("KA3", 7, True),
            ],
        )
        analysis = compute_exclusions(undesireds)

        leaves = [_included(f) for f in enumerate_leaves(undesireds, analysis)]

        assert len(leaves) == len({frozenset(leaf) for leaf in leaves})
        for included in leaves:
            for i in included:
                assert not (analysis.excludes[i] & included)
            assert 3 not in included
        interfering = {i for i, und in enumerate(undesireds) if und.causes_interference}
        assert interfering <= set().union(*leaves)

    def test_deterministic(self, make_record) -> None:
        undesireds = _undesireds(
            make_record, [("KA1", 7, True), ("KB1", 8, True), ("KA2", 7, True), ("KB2", 8, False)]
        )
        analysis = compute_exclusions(undesireds)

        first = list(enumerate_leaves(undesireds, analysis))
        second = list(enumerate_leaves(undesireds, analysis))

        assert first == second

    def test_cancelled(self, make_record) -> None:
        undesireds = _undesireds(make_record, [("KUND", 7, True), ("KALT", 7, True)])
        analysis = compute_exclusions(undesireds)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(BuildAbortedError):
            list(enumerate_leaves(undesireds, analysis, token))


class TestMxCount:
    """Tests for MX count limits."""

    def test_warns_above_fifteen(self) -> None:
        status = RecordingStatus()
        check_mx_count(15, status)
        assert status.logged == []

        check_mx_count(16, status)
        assert status.logged == [MX_HIGH_WARNING]

    def test_aborts_above_eighteen(self) -> None:
        check_mx_count(18)
        with pytest.raises(CombinatorialExplosionError):
            check_mx_count(19)


class TestScenarioBuilder:
    """Tests for writing scenarios into a study."""

    def _setup(self, document: StudyDocument, make_record, undesired_specs):
        proposal_key = document.add_source(make_record("KPRO", 30, status="APP"), is_proposal=True)
        desired_key = document.add_source(make_record("WDES", 30, latitude=41.0))
        undesireds = []
        for call, facility, causes in undesired_specs:
            record = make_record(call, 30, facility_id=facility, latitude=42.0)
            undesireds.append(
                Undesired(record=record, source_key=document.add_source(record), causes_interference=causes)
            )
        sources = [ScenarioSource(desired_key, True, False, True)] + [
            ScenarioSource(u.source_key, False, u.causes_interference, False) for u in undesireds
        ]
        build = document.add_scenario("WDES_LIC", "Build", ScenarioType.DEFAULT, sources)
        return proposal_key, desired_key, undesireds, build

    def test_interference_pairs(self, document: StudyDocument, make_record) -> None:
        """Each leaf gets a before/after pair with the proposal only in the after."""
        proposal_key, desired_key, undesireds, build = self._setup(
            document, make_record, [("KUND", 7, True), ("KALT", 7, True)]
        )
        builder = ScenarioBuilder(document, proposal_key)

        built = builder.build_interference(desired_key, "WDES", undesireds, build)

        assert built == 2
        children = document.scenarios(build.key)
        assert [c.name for c in children] == [
            "IX_WDES_LIC_#1_before",
            "IX_WDES_LIC_#1_after",
            "IX_WDES_LIC_#2_before",
            "IX_WDES_LIC_#2_after",
        ]
        before, after = children[0], children[1]
        assert [s.source_key for s in before.sources] == [desired_key, undesireds[0].source_key]
        assert [s.source_key for s in after.sources] == [
            desired_key,
            proposal_key,
            undesireds[0].source_key,
        ]
        assert after.sources[0].is_desired
        assert after.sources[1].is_undesired

        pairs = document.pairs()
        assert len(pairs) == 2
        assert pairs[0].before_key == before.key
        assert pairs[0].after_key == after.key
        assert pairs[0].before_desired == desired_key

        mx_keys = {undesireds[0].source_key, undesireds[1].source_key}
        for child in children:
            assert not mx_keys <= {s.source_key for s in child.sources}

    def test_before_record_is_swapped(self, document: StudyDocument, make_record) -> None:
        proposal_key, desired_key, undesireds, build = self._setup(
            document, make_record, [("KUND", 7, True)]
        )
        before_key = document.add_source(make_record("KPRO", 29, status="LIC"))
        builder = ScenarioBuilder(document, proposal_key)

        assert builder.build_interference(desired_key, "WDES", undesireds, build, before_key) == 1

        before, after = document.scenarios(build.key)
        assert [s.source_key for s in before.sources][:2] == [desired_key, before_key]
        assert [s.source_key for s in after.sources][:2] == [desired_key, proposal_key]
        assert before_key not in {s.source_key for s in after.sources}

    def test_rebuild_replaces_children(self, document: StudyDocument, make_record) -> None:
        proposal_key, desired_key, undesireds, build = self._setup(
            document, make_record, [("KUND", 7, True), ("KALT", 7, True)]
        )
        builder = ScenarioBuilder(document, proposal_key)

        builder.build_interference(desired_key, "WDES", undesireds, build)
        builder.build_interference(desired_key, "WDES", undesireds, build)

        assert document.child_count(build.key) == 4
        assert len(document.pairs()) == 2

    def test_coverage(self, document: StudyDocument, make_record) -> None:
        proposal_key, _, undesireds, build = self._setup(
            document, make_record, [("KUND", 7, True), ("KALT", 7, True)]
        )
        proposal_scenario = document.add_scenario(
            "Proposal",
            "Proposal",
            ScenarioType.PROPOSAL,
            [ScenarioSource(proposal_key, True, False, True)],
            is_permanent=True,
        )
        builder = ScenarioBuilder(document, proposal_key)

        assert builder.build_coverage(proposal_scenario, undesireds, build) == 2

        children = document.scenarios(build.key)
        assert [c.name for c in children] == ["MX_#1", "MX_#2"]
        assert all(c.sources[0].source_key == proposal_key for c in children)
        assert {p.before_key for p in document.pairs()} == {proposal_scenario.key}

    def test_too_many_mx_records(self, document: StudyDocument, make_record) -> None:
        """Nineteen interfering MX pairs abort the build before anything is written."""
        specs = [(f"K{i:03d}", 5000 + i // 2, True) for i in range(38)]
        proposal_key, desired_key, undesireds, build = self._setup(document, make_record, specs)
        builder = ScenarioBuilder(document, proposal_key)

        with pytest.raises(CombinatorialExplosionError, match="MX record count is too high"):
            builder.build_interference(desired_key, "WDES", undesireds, build)

        assert document.child_count(build.key) == 0
        assert document.pairs() == []


class TestBuildFromScenario:
    """Tests for rebuilding from an edited list scenario."""

    def test_rebuild(self, document: StudyDocument, make_record) -> None:
        """The undesired flag on each entry is taken as causes-interference."""
        proposal_key = document.add_source(make_record("KPRO", 30, status="APP"), is_proposal=True)
        document.add_scenario(
            "Proposal",
            "Proposal",
            ScenarioType.PROPOSAL,
            [ScenarioSource(proposal_key, True, False, True)],
            is_permanent=True,
        )
        desired_key = document.add_source(make_record("WDES", 30, latitude=41.0))
        u1 = document.add_source(make_record("KUND", 30, facility_id=7, latitude=42.0))
        u2 = document.add_source(make_record("KALT", 30, facility_id=7, latitude=42.0))
        build = document.add_scenario(
            "WDES_LIC",
            "Build",
            ScenarioType.DEFAULT,
            [
                ScenarioSource(desired_key, True, False, True),
                ScenarioSource(u1, False, True, False),
                ScenarioSource(u2, False, False, False),
            ],
        )

        built = ScenarioBuilder(document, 0).build_from_scenario(build)

        assert built == 2
        assert document.child_count(build.key) == 4

    def test_rejects_child_scenario(self, document: StudyDocument, make_record) -> None:
        proposal_key = document.add_source(make_record("KPRO", 30), is_proposal=True)
        top = document.add_scenario(
            "Proposal",
            "Proposal",
            ScenarioType.PROPOSAL,
            [ScenarioSource(proposal_key, True, False, True)],
        )
        child = document.add_scenario(
            "Child",
            "",
            ScenarioType.DEFAULT,
            [ScenarioSource(proposal_key, True, False, True)],
            parent_key=top.key,
        )

        with pytest.raises(ConfigurationError, match="invalid study or scenario"):
            ScenarioBuilder(document, 0).build_from_scenario(child)
