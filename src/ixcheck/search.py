# Copyright (c) Syntropy Systems
"""Record search and filter pipeline.

Finds the records a proposal may interfere with (desireds) and, for each of
those, the records that may interfere with it (undesireds). Channel reach
comes from the interference rule table, geometric reach from great-circle
distance against each rule's distance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from ixcheck.cancel import CancellationToken
from ixcheck.errors import ConfigurationError
from ixcheck.models.records import (
    DEFAULT_KM_PER_DEGREE,
    CandidateRecord,
    Country,
    GeoPoint,
    RecordStatus,
    UserRecord,
    are_records_mx,
)
from ixcheck.models.study import MAX_CHANNEL, MIN_CHANNEL, ExclusionLists, StudyConfiguration
from ixcheck.stations import BaselineIndex, BaselineQuery, RecordQuery, StationDataSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IxRule:
    """One interference rule.

    channel_delta is undesired channel minus desired channel. analog_only
    rules apply only when the desired record is analog.
    """

    channel_delta: int
    distance: float
    analog_only: bool = False


# Standard separation table, distances in kilometers.
DEFAULT_RULES: tuple[IxRule, ...] = (
    IxRule(0, 300.0),
    IxRule(-1, 110.0),
    IxRule(1, 110.0),
    IxRule(-2, 100.0, analog_only=True),
    IxRule(2, 100.0, analog_only=True),
    IxRule(-3, 100.0, analog_only=True),
    IxRule(3, 100.0, analog_only=True),
    IxRule(-4, 100.0, analog_only=True),
    IxRule(4, 100.0, analog_only=True),
    IxRule(-7, 100.0, analog_only=True),
    IxRule(7, 100.0, analog_only=True),
    IxRule(-8, 100.0, analog_only=True),
    IxRule(8, 100.0, analog_only=True),
    IxRule(14, 125.0, analog_only=True),
    IxRule(15, 125.0, analog_only=True),
)


def load_rules(path: Path) -> tuple[IxRule, ...]:
    """Load a rule table from YAML.

    The file holds a list of mappings with channel_delta, distance, and an
    optional analog_only flag, or a mapping with those under "rules".
    """
    with path.open() as f:
        data = yaml.safe_load(f)
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list) or not data:
        msg = f"Rule table {path} does not contain a list of rules."
        raise ConfigurationError(msg)

    rules: list[IxRule] = []
    for item in cast("list[object]", data):
        if not isinstance(item, dict):
            msg = f"Rule table {path} contains an invalid entry."
            raise ConfigurationError(msg)
        try:
            rules.append(
                IxRule(
                    channel_delta=int(item["channel_delta"]),
                    distance=float(item["distance"]),
                    analog_only=bool(item.get("analog_only", False)),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Rule table {path} contains an invalid entry: {item}"
            raise ConfigurationError(msg) from e
    return tuple(rules)


def channel_band(channel: int) -> int:
    """Band index. Bands are 2-4, 5-6, 7-13, and 14 up."""
    if channel < 5:
        return 0
    if channel < 7:
        return 1
    if channel < 14:
        return 2
    return 3


def same_band(a: int, b: int) -> bool:
    return channel_band(a) == channel_band(b)


def search_channels(
    rules: tuple[IxRule, ...] | list[IxRule],
    channel: int,
    is_ix_search: bool,
    min_channel: int = MIN_CHANNEL,
    max_channel: int = MAX_CHANNEL,
) -> tuple[frozenset[int], frozenset[int]]:
    """Channels reachable from channel under the rule table.

    An interference search (is_ix_search) looks for undesireds to a desired on
    channel, so rule deltas are added. A protected search looks for desireds
    to an undesired on channel, so deltas are subtracted. Returns
    (digital, analog) channel sets: digital records match only rules that are
    not analog-only, analog records match every rule.
    """
    digital: set[int] = set()
    analog: set[int] = set()
    for rule in rules:
        if is_ix_search:
            chan = channel + rule.channel_delta
        else:
            chan = channel - rule.channel_delta
        if chan < min_channel or chan > max_channel or not same_band(chan, channel):
            continue
        analog.add(chan)
        if not rule.analog_only:
            digital.add(chan)
    return frozenset(digital), frozenset(analog)


def _baseline_key(record: CandidateRecord) -> int:
    return record.facility_id * 100 + record.effective_channel


SearchKey = tuple[int, bool, bool | None]


@dataclass
class BuildContext:
    """Mutable state owned by one build.

    Searches are memoized by (channel, is_ix_search, desired_is_digital),
    the last being None for protected searches. The baseline excluded index
    holds facility_id * 100 + channel for every facility and channel already
    covered by a license (or a CP, when CPs exclude baselines), so a later
    baseline search does not bring them back.
    """

    token: CancellationToken = field(default_factory=CancellationToken)
    baseline_index: BaselineIndex | None = None
    user_records: list[CandidateRecord] = field(default_factory=list)
    search_cache: dict[SearchKey, list[CandidateRecord]] = field(default_factory=dict)
    baseline_cache: dict[SearchKey, list[CandidateRecord]] = field(default_factory=dict)
    baseline_excluded: set[int] = field(default_factory=set)
    excluded_records: dict[str, CandidateRecord] = field(default_factory=dict)
    included_user_records: dict[int, CandidateRecord] = field(default_factory=dict)


@dataclass
class DesiredSearch:
    records: list[CandidateRecord]
    detected_before: CandidateRecord | None = None


@dataclass
class UndesiredSearch:
    records: list[CandidateRecord]
    desired_is_pre_baseline: bool = False


def _sort_key(record: CandidateRecord) -> tuple[int, int, str, str]:
    return (
        record.country.sort_key,
        record.effective_channel,
        record.state.lower(),
        record.city.lower(),
    )


class RecordSearch:
    """Desired and undesired searches for one build.

    The proposal passed in is the record as studied, already moved to the
    replication channel when one is configured.
    """

    def __init__(
        self,
        config: StudyConfiguration,
        proposal: CandidateRecord,
        station_data: StationDataSource,
        context: BuildContext,
        rules: tuple[IxRule, ...] = DEFAULT_RULES,
        km_per_degree: float = DEFAULT_KM_PER_DEGREE,
        check_dts_distance: bool = False,
        min_channel: int = MIN_CHANNEL,
        max_channel: int = MAX_CHANNEL,
    ) -> None:
        self.config = config
        self.proposal = proposal
        self.station_data = station_data
        self.context = context
        self.rules = rules
        self.km_per_degree = km_per_degree
        self.check_dts_distance = check_dts_distance
        self.min_channel = min_channel
        self.max_channel = max_channel
        self._exclusions: ExclusionLists = config.exclusion_lists()

    # --- Channel searches ---

    def channel_search(
        self, channel: int, is_ix_search: bool, desired_is_digital: bool | None = None
    ) -> list[CandidateRecord]:
        """Current records reachable from channel, with exclusion filters applied.

        In a protected search the analog-only rules apply to analog found
        records. In an interference search they depend on the desired, so
        records of either modulation come back on the digital channel set
        for a digital desired and on the analog set for an analog one.
        """
        cache_key = (channel, is_ix_search, desired_is_digital if is_ix_search else None)
        cached = self.context.search_cache.get(cache_key)
        if cached is not None:
            return cached

        self.context.token.check()
        digital, analog = search_channels(
            self.rules, channel, is_ix_search, self.min_channel, self.max_channel
        )
        if is_ix_search and desired_is_digital is not None:
            channels = digital if desired_is_digital else analog
            digital, analog = channels, channels
        query = RecordQuery(
            digital_channels=digital,
            analog_channels=analog,
            include_pending=not self.config.exclude_pending,
            include_foreign=self.config.include_foreign,
            facility_id=self.proposal.facility_id,
        )
        found = self.station_data.find_records(query)

        cutoff = self.config.filing_cutoff_date
        proposal_is_lptv = self.proposal.is_lptv
        results: list[CandidateRecord] = []
        for record in found:
            if self.is_excluded(record):
                continue
            other_is_lptv = record.is_lptv
            if (
                cutoff is not None
                and (not proposal_is_lptv or other_is_lptv)
                and record.sequence_date is not None
                and record.sequence_date >= cutoff
            ):
                continue
            if not other_is_lptv and (
                record.status == RecordStatus.LIC
                or (self.config.cp_excludes_baseline and record.status == RecordStatus.CP)
            ):
                self.context.baseline_excluded.add(record.facility_id * 100 + record.channel)
            results.append(record)

        logger.debug(
            "channel search %d (%s): %d found, %d kept",
            channel,
            "ix" if is_ix_search else "protected",
            len(found),
            len(results),
        )
        self.context.search_cache[cache_key] = results
        return results

    def baseline_search(
        self, channel: int, is_ix_search: bool, desired_is_digital: bool | None = None
    ) -> list[CandidateRecord]:
        """Baseline records reachable from channel. Baselines are all digital.

        An analog desired is also reached on the analog-only rule channels.
        """
        cache_key = (channel, is_ix_search, desired_is_digital if is_ix_search else None)
        cached = self.context.baseline_cache.get(cache_key)
        if cached is not None:
            return cached

        self.context.token.check()
        digital, analog = search_channels(
            self.rules, channel, is_ix_search, self.min_channel, self.max_channel
        )
        if is_ix_search and desired_is_digital is False:
            digital = analog
        query = BaselineQuery(
            channels=digital,
            include_foreign=self.config.include_foreign,
            facility_id=self.proposal.facility_id,
        )
        results = [
            record
            for record in self.station_data.find_baseline_records(query)
            if not self.is_excluded(record)
        ]
        self.context.baseline_cache[cache_key] = results
        return results

    # --- Filters ---

    def is_excluded(self, record: CandidateRecord) -> bool:
        """Categorical and explicit exclusions. Explicit ones are tracked for the report."""
        config = self.config
        status = record.status

        if config.exclude_apps and status == RecordStatus.APP:
            return True
        if record.service.is_analog_class_a:
            return True
        if status in (RecordStatus.STA, RecordStatus.EXP, RecordStatus.AMD):
            return True

        index = self.context.baseline_index
        if (
            config.exclude_post_transition
            and not record.is_lptv
            and status != RecordStatus.LIC
            and config.baseline_date is not None
            and index is not None
            and record.sequence_date is not None
            and record.sequence_date >= config.baseline_date
        ):
            base_channel = index.index.get(record.facility_id)
            if base_channel == record.channel:
                pre_channel = index.pre_index.get(record.facility_id)
                if pre_channel is None or pre_channel != record.channel:
                    return True

        lists = self._exclusions
        if (
            (record.arn and record.arn.upper() in lists.arns)
            or record.facility_id in lists.facility_ids
            or (record.call_sign and record.call_sign.upper() in lists.call_signs)
        ):
            self.context.excluded_records[record.arn or record.key] = record
            return True

        return False

    def is_pre_baseline(self, record: CandidateRecord) -> bool:
        """True for a non-LPTV record that predates the baseline and is off its baseline channel.

        A channel-sharing host still on its pre-transition channel counts as
        pre-baseline whatever its date.
        """
        baseline_date = self.config.baseline_date
        index = self.context.baseline_index
        if record.is_lptv or baseline_date is None or index is None:
            return False
        base_channel = index.index.get(record.facility_id)
        if base_channel is not None and record.channel == base_channel:
            return False
        if record.sequence_date is not None and record.sequence_date < baseline_date:
            return True
        if record.is_sharing_host:
            pre_channel = index.pre_index.get(record.facility_id)
            if pre_channel is not None and pre_channel == record.channel:
                return True
        return False

    def records_match_rules(self, desired: CandidateRecord, undesired: CandidateRecord) -> bool:
        """Check whether any rule puts undesired within reach of desired."""
        desired_channel = desired.effective_channel
        undesired_channel = undesired.effective_channel
        delta = undesired_channel - desired_channel
        if not same_band(undesired_channel, desired_channel):
            return False

        if undesired.is_dts and self.check_dts_distance:
            undesired_points = [site.location for site in undesired.active_sites()]
        else:
            undesired_points = [undesired.location]

        if desired.is_dts:
            desired_points = [
                (site.location, site.rule_extra_distance) for site in desired.active_sites()
            ]
        else:
            desired_points = [(desired.location, desired.rule_extra_distance)]

        for rule in self.rules:
            if rule.channel_delta != delta:
                continue
            if rule.analog_only and desired.is_digital:
                continue
            if self._within(desired_points, undesired_points, rule.distance):
                return True
        return False

    def _within(
        self,
        desired_points: list[tuple[GeoPoint, float]],
        undesired_points: list[GeoPoint],
        distance: float,
    ) -> bool:
        for point, extra in desired_points:
            limit = distance + extra
            for other in undesired_points:
                if point.distance_to(other, self.km_per_degree) <= limit:
                    return True
        return False

    def _is_mx(self, a: CandidateRecord, b: CandidateRecord) -> bool:
        return are_records_mx(a, b, self.km_per_degree)

    def _country_has_baseline(self, country: Country) -> bool:
        index = self.context.baseline_index
        if country == Country.US:
            return True
        if index is None:
            return False
        if country == Country.CA:
            return index.has_ca
        return index.has_mx

    def _note_user_baseline_exclusion(self, record: CandidateRecord) -> None:
        if not record.is_lptv and (
            record.status == RecordStatus.LIC
            or (self.config.cp_excludes_baseline and record.status == RecordStatus.CP)
        ):
            self.context.baseline_excluded.add(record.facility_id * 100 + record.channel)

    def _include_user_record(self, record: CandidateRecord) -> None:
        if isinstance(record, UserRecord):
            self.context.included_user_records[record.user_record_id] = record

    # --- Lists ---

    def make_desired_list(self) -> DesiredSearch:
        """Records needing protection from the proposal, sorted for the report.

        Also detects the proposal's "before" record when none was set: the
        analog LPTV license a digital LPTV proposal flash-cuts from, or the
        facility's baseline on the proposal channel.
        """
        config = self.config
        proposal = self.proposal
        proposal_is_lptv = proposal.is_lptv
        proposal_is_sta_or_exp = proposal.status in (RecordStatus.STA, RecordStatus.EXP)
        proposal_is_class_a = proposal.service.is_class_a
        protect_lptv = config.protects_lptv_from_class_a
        detected_before: CandidateRecord | None = None

        def skip_lptv(record: CandidateRecord) -> bool:
            return (
                record.is_lptv
                and not proposal_is_lptv
                and not proposal_is_sta_or_exp
                and (not proposal_is_class_a or not protect_lptv)
            )

        results: list[CandidateRecord] = []
        for record in self.channel_search(proposal.channel, False):
            if (
                not config.did_set_before
                and proposal_is_lptv
                and proposal.is_digital
                and record.is_lptv
                and not record.is_digital
                and record.status == RecordStatus.LIC
                and record.facility_id == proposal.facility_id
                and record.channel == proposal.channel
            ):
                detected_before = record
                continue

            if skip_lptv(record):
                continue

            if (
                not record.is_lptv
                and config.baseline_date is not None
                and not config.protect_pre_baseline
                and self._country_has_baseline(record.country)
                and self.is_pre_baseline(record)
            ):
                continue

            if (
                record.key == proposal.key
                or self._is_mx(record, proposal)
                or not self.records_match_rules(record, proposal)
            ):
                continue
            results.append(record)

        for record in self.context.user_records:
            self._note_user_baseline_exclusion(record)
            if skip_lptv(record):
                continue
            if (
                record.key == proposal.key
                or self._is_mx(record, proposal)
                or not self.records_match_rules(record, proposal)
            ):
                continue
            self._include_user_record(record)
            results.append(record)

        if (
            not proposal_is_lptv or proposal_is_sta_or_exp or config.protect_baseline_from_lptv
        ) and not config.exclude_post_transition:
            for record in self.baseline_search(proposal.channel, False):
                if record.facility_id == proposal.facility_id and not proposal.is_drt:
                    if (
                        not config.did_set_before
                        and not proposal_is_lptv
                        and record.effective_channel == proposal.channel
                        and record.key != proposal.key
                    ):
                        detected_before = record
                    continue
                if _baseline_key(record) in self.context.baseline_excluded:
                    continue
                if not self.records_match_rules(record, proposal):
                    continue
                results.append(record)

        results.sort(key=_sort_key)
        return DesiredSearch(records=results, detected_before=detected_before)

    def make_undesired_list(self, desired: CandidateRecord) -> UndesiredSearch:
        """Records that may interfere with desired, excluding anything MX to it or the proposal.

        Pre-baseline records are left out unless desired is itself
        pre-baseline, and baselines are left out when it is.
        """
        config = self.config
        proposal = self.proposal
        desired_is_lptv = desired.is_lptv
        desired_is_pre_baseline = self.is_pre_baseline(desired)

        def keep(record: CandidateRecord) -> bool:
            if not desired_is_lptv and record.is_lptv:
                return False
            if (
                not record.is_lptv
                and not desired_is_pre_baseline
                and config.baseline_date is not None
                and self.is_pre_baseline(record)
            ):
                return False
            if record.key in (desired.key, proposal.key):
                return False
            if self._is_mx(record, desired) or self._is_mx(record, proposal):
                return False
            return self.records_match_rules(desired, record)

        found = self.channel_search(desired.channel, True, desired.is_digital)
        results: list[CandidateRecord] = [record for record in found if keep(record)]

        for record in self.context.user_records:
            if keep(record):
                self._include_user_record(record)
                results.append(record)

        if not desired_is_lptv and not desired_is_pre_baseline and not config.exclude_post_transition:
            for record in self.baseline_search(desired.channel, True, desired.is_digital):
                if _baseline_key(record) in self.context.baseline_excluded:
                    continue
                if record.facility_id in (desired.facility_id, proposal.facility_id):
                    continue
                if not self.records_match_rules(desired, record):
                    continue
                results.append(record)

        return UndesiredSearch(records=results, desired_is_pre_baseline=desired_is_pre_baseline)
