# Copyright (c) Syntropy Systems
"""Study configuration, scenario, and lock models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum

from pydantic import field_validator, model_validator

from ixcheck.errors import ConfigurationError

from .base import FrozenModel
from .records import CandidateRecord

MIN_CHANNEL = 2
MAX_CHANNEL = 51


def canonical_decimal(value: str | float | None, places: int) -> str | None:
    """Format a decimal setting with a fixed number of places.

    Blank values map to None, so "1", "1.0", and " 1.00 " all become "1.00"
    for two places.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation as e:
        msg = f"invalid decimal value '{value}'"
        raise ValueError(msg) from e
    if not number.is_finite():
        msg = f"invalid decimal value '{value}'"
        raise ValueError(msg)
    quantum = Decimal(1).scaleb(-places)
    return str(number.quantize(quantum))


@dataclass(frozen=True)
class ExclusionLists:
    """Parsed record exclusion commands."""

    arns: frozenset[str] = frozenset()
    facility_ids: frozenset[int] = frozenset()
    call_signs: frozenset[str] = frozenset()


def parse_exclusion_commands(commands: tuple[str, ...]) -> ExclusionLists:
    """Parse exclusion commands into ARN, facility id, and call sign sets.

    A bare entry is a literal ARN. Commands use a '$' prefix: "$arn=X",
    "$facilityid=N", or "$callsign=X". ARNs and call signs are compared
    upper-cased.
    """
    arns: set[str] = set()
    facility_ids: set[int] = set()
    call_signs: set[str] = set()

    for command in commands:
        if command.startswith("$"):
            name, sep, arg = command[1:].partition("=")
            name = name.strip().lower()
            arg = arg.strip() if sep else ""
        else:
            name = "arn"
            arg = command.strip()
            if not arg:
                continue

        bad = False
        if name == "arn":
            if arg:
                arns.add(arg.upper())
            else:
                bad = True
        elif name == "facilityid":
            try:
                facility_id = int(arg)
            except ValueError:
                facility_id = 0
            if facility_id > 0:
                facility_ids.add(facility_id)
            else:
                bad = True
        elif name == "callsign":
            if arg:
                call_signs.add(arg.upper())
            else:
                bad = True
        else:
            bad = True

        if bad:
            msg = f"Cannot build study, bad command '{command}' in exclusion list."
            raise ConfigurationError(msg)

    return ExclusionLists(
        arns=frozenset(arns),
        facility_ids=frozenset(facility_ids),
        call_signs=frozenset(call_signs),
    )


class StudyConfiguration(FrozenModel):
    """Everything that determines a study's results. Immutable once a build starts."""

    target: CandidateRecord
    before: CandidateRecord | None = None
    did_set_before: bool = False
    replication_channel: int | None = None
    template_key: int = 1
    station_data_key: int
    file_output_codes: str
    map_output_codes: str
    cell_size: str | None = None
    profile_ppk: str | None = None

    protect_pre_baseline: bool = False
    protect_baseline_from_lptv: bool = False
    protect_lptv_from_class_a: bool = False
    include_foreign: bool = False
    cp_excludes_baseline: bool = False
    exclude_apps: bool = False
    exclude_pending: bool = False
    exclude_post_transition: bool = False

    baseline_date: date | None = None
    filing_window_end_date: date | None = None
    filing_cutoff_date: date | None = None

    include_user_records: tuple[int, ...] = ()
    exclude_commands: tuple[str, ...] = ()

    study_name: str | None = None
    description: str | None = None
    build_full_study: bool = True

    @field_validator("cell_size", mode="before")
    @classmethod
    def _canonical_cell_size(cls, value: object) -> str | None:
        return canonical_decimal(value, 2)  # type: ignore[arg-type]

    @field_validator("profile_ppk", mode="before")
    @classmethod
    def _canonical_profile_ppk(cls, value: object) -> str | None:
        return canonical_decimal(value, 1)  # type: ignore[arg-type]

    @field_validator("include_user_records", mode="before")
    @classmethod
    def _sort_user_records(cls, value: object) -> tuple[int, ...]:
        if value is None:
            return ()
        return tuple(sorted({int(v) for v in value}))  # type: ignore[attr-defined]

    @field_validator("exclude_commands", mode="before")
    @classmethod
    def _sort_exclusions(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        return tuple(sorted({str(v).strip() for v in value if str(v).strip()}))  # type: ignore[attr-defined]

    @field_validator("study_name", "description", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @model_validator(mode="after")
    def _check_selections(self) -> StudyConfiguration:
        if self.template_key < 1:
            msg = "Cannot build study, missing or invalid template selection."
            raise ValueError(msg)
        if self.station_data_key < 1:
            msg = "Cannot build study, missing or invalid station data selection."
            raise ValueError(msg)
        if self.build_full_study:
            if not self.file_output_codes.strip():
                msg = "Cannot build study, missing or invalid output file settings."
                raise ValueError(msg)
            if not self.map_output_codes.strip():
                msg = "Cannot build study, missing or invalid map output settings."
                raise ValueError(msg)
        if self.replication_channel is not None and not (
            MIN_CHANNEL <= self.replication_channel <= MAX_CHANNEL
        ):
            msg = f"Replication channel must be in the range {MIN_CHANNEL} to {MAX_CHANNEL}."
            raise ValueError(msg)
        return self

    @property
    def protects_lptv_from_class_a(self) -> bool:
        """LPTV protection from Class A, forced on for late-filed Class A proposals."""
        if self.protect_lptv_from_class_a:
            return True
        if self.filing_window_end_date is None or not self.target.service.is_class_a:
            return False
        filed = self.target.sequence_date or date.today()
        return filed > self.filing_window_end_date

    def exclusion_lists(self) -> ExclusionLists:
        return parse_exclusion_commands(self.exclude_commands)

    def with_defaults(
        self,
        cell_size: str | None,
        cell_size_lptv: str | None,
        profile_ppk: str | None,
        profile_ppk_lptv: str | None,
    ) -> StudyConfiguration:
        """Fill in cell size and profile resolution from application defaults."""
        update: dict[str, str | None] = {}
        is_lptv = self.target.service.is_lptv
        if self.cell_size is None:
            update["cell_size"] = canonical_decimal(cell_size_lptv if is_lptv else cell_size, 2)
        if self.profile_ppk is None:
            update["profile_ppk"] = canonical_decimal(profile_ppk_lptv if is_lptv else profile_ppk, 1)
        if not update:
            return self
        return self.model_copy(update=update)


class ScenarioType(str, Enum):
    """Scenario types stored with each scenario."""

    DEFAULT = "default"
    PROPOSAL = "proposal"
    INTERFERENCE = "interference"


@dataclass(frozen=True)
class ScenarioSource:
    """One record's role in a scenario."""

    source_key: int
    is_desired: bool
    is_undesired: bool
    is_permanent: bool


@dataclass(frozen=True)
class ScenarioPair:
    """Before/after comparison of one desired record's service."""

    name: str
    description: str
    before_key: int
    before_desired: int
    after_key: int
    after_desired: int

    def __post_init__(self) -> None:
        if self.before_desired != self.after_desired:
            msg = "Scenario pair must compare the same desired record"
            raise ValueError(msg)


@dataclass
class Scenario:
    """Named set of sources, optionally with child scenarios."""

    key: int
    name: str
    description: str
    scenario_type: ScenarioType
    sources: list[ScenarioSource] = field(default_factory=list)
    parent_key: int | None = None
    is_permanent: bool = False

    def desired_count(self) -> int:
        return sum(1 for s in self.sources if s.is_desired)


class LockState(IntEnum):
    """Study lock states."""

    NONE = 0
    EDIT = 1
    RUN_EXCLUSIVE = 2
    RUN_SHARED = 3
    ADMIN = 4


class StudyLock(FrozenModel):
    """Snapshot of a study's persisted lock."""

    state: LockState = LockState.NONE
    generation: int = 0
    share_count: int = 0


@dataclass(frozen=True)
class ProbeResult:
    """Engine verdict on one desired/undesired pair."""

    desired_key: int
    undesired_key: int
    causes_interference: bool


@dataclass
class Undesired:
    """Candidate interferer to one protected record."""

    record: CandidateRecord
    source_key: int
    causes_interference: bool = False
    excludes: list[int] = field(default_factory=list)


@dataclass
class ProtectedStation:
    """Record needing protection, with its candidate undesireds."""

    record: CandidateRecord
    source_key: int
    receives_interference: bool = False
    is_pre_baseline: bool = False
    undesireds: list[Undesired] = field(default_factory=list)
    build_scenario: Scenario | None = None

    def undesired_for(self, source_key: int) -> Undesired | None:
        for und in self.undesireds:
            if und.source_key == source_key:
                return und
        return None

