# Copyright (c) Syntropy Systems
"""Study report text."""
from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime

from ixcheck.models.records import DEFAULT_KM_PER_DEGREE, CandidateRecord, GeoPoint, UserRecord
from ixcheck.models.study import ProtectedStation, StudyConfiguration

TABLE_HEADER = (
    "IX   Call      Chan       Svc Status  City, State               File Number             Distance"
)


def _pad(text: str, width: int) -> str:
    return text.ljust(width)


def format_date(value: date) -> str:
    return value.strftime("%m/%d/%Y")


def elapsed_message(start_ms: int, message: str, now_ms: int | None = None) -> str:
    """Prefix a message with time since start_ms, matching engine log lines."""
    if start_ms <= 0:
        return message
    if now_ms is None:
        now_ms = int(datetime.now().timestamp() * 1000)
    elapsed = max(0, now_ms - start_ms)
    hours, rest = divmod(elapsed, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{hours:3d}:{minutes:02d}:{seconds:02d}.{millis:03d} - {message}"


def describe_proposal(
    proposal: CandidateRecord,
    station_data_name: str | None,
    before: CandidateRecord | None,
    did_set_before: bool,
    created: datetime | None = None,
) -> str:
    """Report preamble: creation time, station data, proposal, and its "before"."""
    created = created or datetime.now()
    lines = [
        "Study created: " + created.strftime("%Y.%m.%d %H:%M:%S"),
        "",
        f"Study build station data: {station_data_name or 'unknown'}",
        "",
        f"    Proposal: {proposal.describe()}",
    ]
    if proposal.file_number:
        lines.append(f" File number: {proposal.file_number}")
    lines.append(f" Facility ID: {proposal.facility_id}")
    if isinstance(proposal, UserRecord):
        lines.append(f" User record: {proposal.user_record_id}")
    else:
        lines.append(f"   Record ID: {proposal.record_id}")
    lines.append(f"     Country: {proposal.country.value}")
    if proposal.is_dts:
        lines.append(f"   Ref. lat.: {proposal.latitude}")
        lines.append(f"  Ref. long.: {proposal.longitude}")
        lines.append(f" # DTS sites: {len(proposal.active_sites())}")
    lines.append("")

    if before is not None:
        lines.append(
            f'Proposal "before": {before.call_sign} {before.channel} {before.service.value} '
            f"{before.status.value} {before.city}, {before.state}"
        )
        if before.file_number:
            lines.append(f"      File number: {before.file_number}")
        lines.append(f"      Facility ID: {before.facility_id}")
        lines.append(f"        Record ID: {before.record_id}")
        lines.append(f"          Country: {before.country.value}")
        lines.append("")
    elif did_set_before:
        lines.append('Proposal "before": (none)')
        lines.append("")

    return "\n".join(lines) + "\n"


def _record_line(label: str, width: int, record: CandidateRecord) -> str:
    return (
        f"{_pad(label, width)}{record.call_sign} {record.channel} {record.service.value} "
        f"{record.status.value} {record.city}, {record.state} {record.file_number}"
    )


def _station_row(
    station: ProtectedStation,
    reference: GeoPoint,
    km_per_degree: float,
    first: bool,
) -> str:
    record = station.record
    distance = record.location.distance_to(reference, km_per_degree)
    row = (
        ("Yes  " if station.receives_interference else "No   ")
        + _pad(record.call_sign, 10)
        + _pad(str(record.effective_channel), 11)
        + _pad(record.service.value, 4)
        + _pad(record.status.value, 8)
        + _pad(f"{record.city}, {record.state}", 26)
        + _pad(record.file_number, 24)
        + f"{distance:5.1f}"
    )
    if first:
        row += " km"
    return row


def build_summary(
    config: StudyConfiguration,
    proposal: CandidateRecord,
    protected: Iterable[ProtectedStation],
    included_user_records: Iterable[CandidateRecord] = (),
    excluded_records: Iterable[CandidateRecord] = (),
    km_per_degree: float = DEFAULT_KM_PER_DEGREE,
) -> str:
    """Build options, search options, record lists, and the protected station table."""
    lines: list[str] = []

    protect_lptv = config.protects_lptv_from_class_a
    if config.protect_pre_baseline or config.protect_baseline_from_lptv or protect_lptv:
        lines.append("Build options:")
        if config.protect_pre_baseline:
            lines.append("Protect pre-transition records not on baseline channel")
        if config.protect_baseline_from_lptv:
            lines.append("Protect baseline records from LPTV")
        if protect_lptv:
            lines.append("Protect LPTV records from Class A")
        lines.append("")

    if (
        config.exclude_apps
        or config.exclude_pending
        or config.filing_cutoff_date is not None
        or config.include_foreign
        or config.cp_excludes_baseline
        or config.exclude_post_transition
    ):
        lines.append("Search options:")
        if config.include_foreign:
            lines.append("Non-U.S. records included")
        if config.cp_excludes_baseline:
            lines.append("Baseline record excluded if station has CP")
        if config.exclude_apps:
            lines.append("All APP records excluded")
        if config.exclude_pending:
            lines.append("All pending records excluded")
        if config.exclude_post_transition:
            lines.append("All post-transition APP, CP, and baseline records excluded")
        if config.filing_cutoff_date is not None:
            which = "LPTV records" if proposal.is_lptv else "All records"
            lines.append(f"{which} on or after {format_date(config.filing_cutoff_date)} excluded")
        lines.append("")

    included = list(included_user_records)
    if included:
        lines.append("User records included:")
        for record in included:
            label = str(record.user_record_id) if isinstance(record, UserRecord) else record.record_id
            lines.append(_record_line(label, 8, record))
        lines.append("")

    excluded = list(excluded_records)
    if excluded:
        lines.append("Individual records excluded:")
        for record in excluded:
            lines.append(_record_line(record.arn, 14, record))
        lines.append("")

    stations = list(protected)
    if not stations:
        lines.append("No protected stations found.")
    else:
        lines.append("Stations potentially affected by proposal:")
        lines.append("")
        lines.append(TABLE_HEADER)
        for i, station in enumerate(stations):
            lines.append(_station_row(station, proposal.location, km_per_degree, i == 0))

    lines.append("")
    return "\n".join(lines) + "\n"
