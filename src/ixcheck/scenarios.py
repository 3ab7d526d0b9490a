# Copyright (c) Syntropy Systems
"""MX-aware scenario combination builder.

Undesireds that are mutually exclusive (MX) can never operate together, so a
desired record is studied in one scenario per valid combination of its
undesireds. Combinations come from a binary decision tree with one level per
undesired: include it (and force out every later MX partner), or leave it
out. Groups of MX records where nothing causes interference are not branched.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from ixcheck.cancel import CancellationToken
from ixcheck.errors import CombinatorialExplosionError, ConfigurationError, StatusReporter
from ixcheck.models.records import DEFAULT_KM_PER_DEGREE, BaselineRecord, are_records_mx
from ixcheck.models.study import (
    Scenario,
    ScenarioPair,
    ScenarioSource,
    ScenarioType,
    Undesired,
)
from ixcheck.store import StudyDocument

logger = logging.getLogger(__name__)

MX_WARN_COUNT = 15
MX_ABORT_COUNT = 18

MX_TOO_HIGH = "MX record count is too high, aborting study build."
MX_HIGH_WARNING = "**High MX record count, build and run times may be long"


@dataclass(frozen=True)
class MxAnalysis:
    """MX relationships within one undesired list.

    excludes[i] holds the later entries MX to entry i.
    """

    excludes: tuple[frozenset[int], ...]
    mx_count: int


def compute_exclusions(
    undesireds: Sequence[Undesired], km_per_degree: float = DEFAULT_KM_PER_DEGREE
) -> MxAnalysis:
    """Find MX pairs and count the MX groups that matter.

    An entry counts toward mx_count when it excludes at least one later entry
    and either it or one of those causes interference. The excludes lists are
    also stored back onto the Undesired objects.
    """
    count = len(undesireds)
    later: list[set[int]] = [set() for _ in range(count)]
    mx_count = 0

    for i in range(count):
        causes = undesireds[i].causes_interference
        for j in range(i + 1, count):
            if are_records_mx(undesireds[i].record, undesireds[j].record, km_per_degree):
                later[i].add(j)
                if undesireds[j].causes_interference:
                    causes = True
        if later[i] and causes:
            mx_count += 1

    for i, und in enumerate(undesireds):
        und.excludes = sorted(later[i])

    return MxAnalysis(
        excludes=tuple(frozenset(s) for s in later),
        mx_count=mx_count,
    )


def check_mx_count(
    mx_count: int,
    status: StatusReporter | None = None,
    warn_count: int = MX_WARN_COUNT,
    abort_count: int = MX_ABORT_COUNT,
) -> None:
    """Abort when the scenario count would explode, warn when it gets large."""
    if mx_count > abort_count:
        raise CombinatorialExplosionError(MX_TOO_HIGH)
    if mx_count > warn_count:
        logger.warning("high MX record count: %d", mx_count)
        if status is not None:
            status.log_message(MX_HIGH_WARNING)


def _with(flags: tuple[bool, ...], changes: dict[int, bool]) -> tuple[bool, ...]:
    return tuple(changes.get(i, flag) for i, flag in enumerate(flags))


def enumerate_leaves(
    undesireds: Sequence[Undesired],
    analysis: MxAnalysis,
    token: CancellationToken | None = None,
) -> Iterator[tuple[bool, ...]]:
    """Yield each valid inclusion vector, depth first, include branch first.

    At level i, an entry already forced out by an earlier partner stays out.
    An included entry with later MX partners forces out those still in. The
    tree only branches when that newly excluded something and the entry or
    one of the newly excluded causes interference: include i with its
    partners out, or leave i out with the partners restored. Otherwise i
    stays in and no branch is made. An entry with no later partners is
    dropped unless it causes interference. No leaf ever includes two MX
    partners.
    """
    count = len(undesireds)
    stack: list[tuple[tuple[bool, ...], int]] = [(tuple([True] * count), 0)]

    while stack:
        if token is not None:
            token.check()
        flags, i = stack.pop()

        if i == count:
            yield flags
            continue

        causes = undesireds[i].causes_interference
        excludes = analysis.excludes[i]
        if not flags[i] or not excludes:
            if not causes:
                flags = _with(flags, {i: False})
            stack.append((flags, i + 1))
            continue

        newly = [j for j in sorted(excludes) if flags[j]]
        included = _with(flags, {j: False for j in newly})
        if not newly or not (causes or any(undesireds[j].causes_interference for j in newly)):
            stack.append((included, i + 1))
            continue

        stack.append((_with(flags, {i: False}), i + 1))
        stack.append((included, i + 1))


class ScenarioBuilder:
    """Writes combination scenarios and their before/after pairs into a study.

    New scenarios are children of a build scenario, the list scenario holding
    a desired and all of its candidate undesireds.
    """

    def __init__(
        self,
        document: StudyDocument,
        proposal_key: int,
        token: CancellationToken | None = None,
        status: StatusReporter | None = None,
        km_per_degree: float = DEFAULT_KM_PER_DEGREE,
        warn_count: int = MX_WARN_COUNT,
        abort_count: int = MX_ABORT_COUNT,
    ) -> None:
        self.document = document
        self.proposal_key = proposal_key
        self.token = token
        self.status = status
        self.km_per_degree = km_per_degree
        self.warn_count = warn_count
        self.abort_count = abort_count

    def build_interference(
        self,
        desired_key: int,
        desired_label: str,
        undesireds: Sequence[Undesired],
        build_scenario: Scenario,
        before_key: int | None = None,
    ) -> int:
        """Build before/after pairs measuring the proposal's added interference.

        The before scenario holds the proposal's "before" record when there
        is one, the after scenario swaps it for the proposal. Returns the
        number of pairs built.
        """
        analysis = self._prepare(undesireds, build_scenario)
        built = 0
        for flags in enumerate_leaves(undesireds, analysis, self.token):
            built += 1
            name = f"IX_{build_scenario.name}_#{built}"
            desc = f"Interference to {desired_label}, scenario {built}"

            sources = [ScenarioSource(desired_key, True, False, True)]
            if before_key is not None:
                sources.append(ScenarioSource(before_key, False, True, True))
            sources.extend(self._flagged(undesireds, flags))
            before = self.document.add_scenario(
                name + "_before",
                desc + ", before",
                ScenarioType.INTERFERENCE,
                sources,
                parent_key=build_scenario.key,
            )

            after_sources = list(sources)
            if before_key is not None:
                del after_sources[1]
            after_sources.insert(1, ScenarioSource(self.proposal_key, False, True, True))
            after = self.document.add_scenario(
                name + "_after",
                desc + ", after",
                ScenarioType.INTERFERENCE,
                after_sources,
                parent_key=build_scenario.key,
            )

            self.document.add_pair(
                ScenarioPair(name, desc, before.key, desired_key, after.key, desired_key)
            )

        logger.debug("built %d interference pairs under %s", built, build_scenario.name)
        return built

    def build_coverage(
        self,
        proposal_scenario: Scenario,
        undesireds: Sequence[Undesired],
        build_scenario: Scenario,
    ) -> int:
        """Build scenarios measuring interference the proposal receives.

        Every pair compares against the constant proposal scenario, which has
        the proposal and no undesireds.
        """
        analysis = self._prepare(undesireds, build_scenario)
        built = 0
        for flags in enumerate_leaves(undesireds, analysis, self.token):
            built += 1
            name = f"MX_#{built}"
            desc = f"Interference to proposal, scenario {built}"
            sources = [ScenarioSource(self.proposal_key, True, False, True)]
            sources.extend(self._flagged(undesireds, flags))
            after = self.document.add_scenario(
                name,
                desc,
                ScenarioType.INTERFERENCE,
                sources,
                parent_key=build_scenario.key,
            )
            self.document.add_pair(
                ScenarioPair(
                    name,
                    desc,
                    proposal_scenario.key,
                    self.proposal_key,
                    after.key,
                    self.proposal_key,
                )
            )

        logger.debug("built %d coverage scenarios", built)
        return built

    def build_from_scenario(self, scenario: Scenario) -> int:
        """Rebuild combination scenarios from an existing list scenario.

        The scenario must be a top-level default scenario with exactly one
        desired. Every other entry becomes an undesired, and its undesired
        flag is taken as whether it causes interference.
        """
        top_level = self.document.scenarios()
        if scenario.parent_key is not None or len(top_level) < 2 or (
            scenario.scenario_type != ScenarioType.DEFAULT
        ):
            msg = "Cannot build interference scenarios, invalid study or scenario."
            raise ConfigurationError(msg)

        proposal_scenario = top_level[0]
        proposal_key: int | None = None
        before_key: int | None = None
        valid = proposal_scenario.scenario_type == ScenarioType.PROPOSAL
        for item in proposal_scenario.sources:
            if self.document.is_proposal(item.source_key):
                if proposal_key is not None:
                    valid = False
                proposal_key = item.source_key
            else:
                if before_key is not None:
                    valid = False
                before_key = item.source_key
        if not valid or proposal_key is None:
            msg = "Cannot build interference scenarios, invalid study."
            raise ConfigurationError(msg)

        desired_key: int | None = None
        undesireds: list[Undesired] = []
        for item in scenario.sources:
            record = self.document.get_source(item.source_key)
            if record is None:
                continue
            if item.is_desired:
                if desired_key is not None:
                    desired_key = None
                    break
                desired_key = item.source_key
            else:
                undesireds.append(
                    Undesired(
                        record=record,
                        source_key=item.source_key,
                        causes_interference=item.is_undesired,
                    )
                )
        if desired_key is None:
            msg = "Cannot build interference scenarios, invalid scenario."
            raise ConfigurationError(msg)

        desired = self.document.get_source(desired_key)
        proposal = self.document.get_source(proposal_key)
        if desired is None or proposal is None:
            msg = "Cannot build interference scenarios, invalid study."
            raise ConfigurationError(msg)

        if before_key is not None and self.document.is_pre_baseline(desired_key):
            before = self.document.get_source(before_key)
            if isinstance(before, BaselineRecord):
                before_key = None

        self.proposal_key = proposal_key
        if are_records_mx(desired, proposal, self.km_per_degree):
            return self.build_coverage(proposal_scenario, undesireds, scenario)
        return self.build_interference(
            desired_key, desired.describe(), undesireds, scenario, before_key
        )

    def _prepare(self, undesireds: Sequence[Undesired], build_scenario: Scenario) -> MxAnalysis:
        analysis = compute_exclusions(undesireds, self.km_per_degree)
        check_mx_count(analysis.mx_count, self.status, self.warn_count, self.abort_count)
        self.document.remove_child_scenarios(build_scenario.key)
        return analysis

    @staticmethod
    def _flagged(
        undesireds: Sequence[Undesired], flags: tuple[bool, ...]
    ) -> list[ScenarioSource]:
        return [
            ScenarioSource(und.source_key, False, True, True)
            for und, flag in zip(undesireds, flags)
            if flag
        ]
