# Copyright (c) Syntropy Systems
"""Pydantic models for station records consumed by the study build."""

from __future__ import annotations

import math
from datetime import date
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter
from typing_extensions import TypeAlias

from .base import FrozenModel

# Mean kilometers per degree of arc, used when a study does not set its own.
DEFAULT_KM_PER_DEGREE = 111.15

# Same-facility DRT records within this distance on the same channel are MX.
DRT_MX_DISTANCE = 30.0


class Service(str, Enum):
    """TV service codes."""

    DT = "DT"  # full-power digital
    DD = "DD"  # full-power digital DTS
    TV = "TV"  # full-power analog
    DC = "DC"  # Class A digital
    CA = "CA"  # Class A analog
    LD = "LD"  # low-power digital
    TX = "TX"  # low-power analog / translator

    @property
    def is_digital(self) -> bool:
        return self in (Service.DT, Service.DD, Service.DC, Service.LD)

    @property
    def is_lptv(self) -> bool:
        return self in (Service.LD, Service.TX)

    @property
    def is_class_a(self) -> bool:
        return self in (Service.DC, Service.CA)

    @property
    def is_analog_class_a(self) -> bool:
        return self is Service.CA

    @property
    def is_dts(self) -> bool:
        return self is Service.DD

    def digital_equivalent(self) -> Service:
        """Service a record takes on when replicated to a digital channel."""
        return {
            Service.TV: Service.DT,
            Service.CA: Service.DC,
            Service.TX: Service.LD,
        }.get(self, self)


class RecordStatus(str, Enum):
    """Record status types."""

    LIC = "LIC"
    CP = "CP"
    APP = "APP"
    STA = "STA"
    EXP = "EXP"
    AMD = "AMD"
    BL = "BL"
    OTHER = "OTHER"


class Country(str, Enum):
    """Countries that station records may belong to."""

    US = "US"
    CA = "CA"
    MX = "MX"

    @property
    def sort_key(self) -> int:
        return {"US": 1, "CA": 2, "MX": 3}[self.value]


class GeoPoint(FrozenModel):
    """Geographic point in decimal degrees, positive north and east."""

    latitude: float
    longitude: float

    def distance_to(self, other: GeoPoint, km_per_degree: float = DEFAULT_KM_PER_DEGREE) -> float:
        """Great-circle distance in kilometers by the spherical law of cosines."""
        lat1 = math.radians(self.latitude)
        lat2 = math.radians(other.latitude)
        delo = math.radians(other.longitude - self.longitude)
        if delo > math.pi:
            delo -= 2.0 * math.pi
        elif delo < -math.pi:
            delo += 2.0 * math.pi

        cosd = math.sin(lat1) * math.sin(lat2) + math.cos(lat1) * math.cos(lat2) * math.cos(delo)
        cosd = max(-1.0, min(1.0, cosd))
        return math.degrees(math.acos(cosd)) * km_per_degree


class TransmitterSite(FrozenModel):
    """One site of a distributed (DTS) facility. Site 0 is the reference point."""

    site_number: int
    latitude: float
    longitude: float
    rule_extra_distance: float = 0.0

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class _RecordBase(FrozenModel):
    record_id: str
    facility_id: int
    call_sign: str = ""
    channel: int
    service: Service
    status: RecordStatus
    country: Country = Country.US
    state: str = ""
    city: str = ""
    latitude: float
    longitude: float
    sequence_date: date | None = None
    arn: str = ""
    file_number: str = ""
    is_drt: bool = False
    is_sharing_host: bool = False
    replicate_to_channel: int = 0
    rule_extra_distance: float = 0.0
    dts_sites: tuple[TransmitterSite, ...] = ()

    @property
    def key(self) -> str:
        """Stable identity string, unique across record kinds."""
        return f"{self.kind}:{self.record_id}"  # type: ignore[attr-defined]

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)

    @property
    def effective_channel(self) -> int:
        """Channel the record operates on, after any baseline replication."""
        if self.replicate_to_channel > 0:
            return self.replicate_to_channel
        return self.channel

    @property
    def is_lptv(self) -> bool:
        return self.service.is_lptv

    @property
    def is_digital(self) -> bool:
        return self.service.is_digital

    @property
    def is_dts(self) -> bool:
        return self.service.is_dts and len(self.dts_sites) > 0

    def active_sites(self) -> list[TransmitterSite]:
        """DTS transmitter sites, skipping the site 0 reference point."""
        return [site for site in self.dts_sites if site.site_number > 0]

    def replicate(self, channel: int) -> _RecordBase:
        """Copy of this record moved to a digital replication channel."""
        return self.model_copy(
            update={
                "channel": channel,
                "replicate_to_channel": 0,
                "service": self.service.digital_equivalent(),
            }
        )

    def describe(self) -> str:
        """Short human-readable label used in scenario descriptions."""
        where = f"{self.city}, {self.state}" if self.city or self.state else ""
        parts = [self.call_sign or "UNKNOWN", str(self.channel), self.service.value, self.status.value]
        if where:
            parts.append(where)
        return " ".join(parts)

    def __str__(self) -> str:
        return self.describe()


class CurrentRecord(_RecordBase):
    """Record from the current station data tables."""

    kind: Literal["current"] = "current"


class BaselineRecord(_RecordBase):
    """Reference post-transition channel assignment for a facility."""

    kind: Literal["baseline"] = "baseline"
    status: RecordStatus = RecordStatus.BL


class UserRecord(_RecordBase):
    """Locally entered record included in a study by id."""

    kind: Literal["user"] = "user"
    user_record_id: int

    @property
    def key(self) -> str:
        return f"user:{self.user_record_id}"


CandidateRecord: TypeAlias = Annotated[
    Union[CurrentRecord, BaselineRecord, UserRecord],
    Field(discriminator="kind"),
]

_RECORD_ADAPTER: TypeAdapter[CandidateRecord] = TypeAdapter(CandidateRecord)


def parse_record(data: object) -> CandidateRecord:
    """Validate a dict (or JSON string) into the matching record kind."""
    if isinstance(data, (str, bytes)):
        return _RECORD_ADAPTER.validate_json(data)
    return _RECORD_ADAPTER.validate_python(data)


def dump_record(record: CandidateRecord) -> str:
    """Serialize a record to JSON, keeping the kind tag."""
    return _RECORD_ADAPTER.dump_json(record).decode()


def are_records_mx(
    a: CandidateRecord,
    b: CandidateRecord,
    km_per_degree: float = DEFAULT_KM_PER_DEGREE,
    mx_distance: float | None = None,
) -> bool:
    """Check if two records are mutually exclusive.

    Records for the same facility are MX, unless either is a DRT in which case
    they must share a channel and, with backup tests on, sit within 30 km.
    Backup tests (enabled by passing mx_distance) also treat same-channel
    records in the same country and city, or closer than mx_distance, as MX.
    """
    backup_tests = mx_distance is not None
    a_channel = a.effective_channel
    b_channel = b.effective_channel

    if a.facility_id == b.facility_id:
        if a.is_drt or b.is_drt:
            if a_channel != b_channel:
                return False
            return backup_tests and a.location.distance_to(b.location, km_per_degree) < DRT_MX_DISTANCE
        return True

    if not backup_tests:
        return False
    if a_channel != b_channel or a.country != b.country:
        return False
    if a.state.lower() == b.state.lower() and a.city.lower() == b.city.lower():
        return True
    return bool(mx_distance) and a.location.distance_to(b.location, km_per_degree) < mx_distance
