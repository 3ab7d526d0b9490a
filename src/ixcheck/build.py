# Copyright (c) Syntropy Systems
"""Study build orchestration.

A build creates a study from its template, searches for protected stations,
probes the engine to find which ones the proposal actually affects, searches
for undesireds to each of those, probes again, and writes the MX combination
scenarios. A run does all of that inside an admission slot and then runs the
engine on the finished study, writing into a reserved cache directory.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path

from ixcheck import locks
from ixcheck.admission import AdmissionGate
from ixcheck.cache import ResultCache
from ixcheck.cancel import CancellationToken
from ixcheck.config import IxCheckConfig, get_db_path, resolve_path
from ixcheck.db import database_path, get_station_data
from ixcheck.engine import EngineProcess, EngineSettings, build_engine_argv
from ixcheck.errors import (
    BuildAbortedError,
    ErrorCollector,
    IxCheckError,
    LockConflictError,
    LoggingStatus,
    OperationResult,
    StatusReporter,
)
from ixcheck.models.cache import RunCacheEntry
from ixcheck.models.records import DEFAULT_KM_PER_DEGREE, BaselineRecord, CandidateRecord
from ixcheck.models.study import (
    MAX_CHANNEL,
    MIN_CHANNEL,
    LockState,
    ProtectedStation,
    Scenario,
    ScenarioSource,
    ScenarioType,
    StudyConfiguration,
    Undesired,
)
from ixcheck.probe import ProbeRunner
from ixcheck.report import build_summary, describe_proposal, elapsed_message
from ixcheck.scenarios import MX_ABORT_COUNT, MX_WARN_COUNT, ScenarioBuilder
from ixcheck.search import DEFAULT_RULES, BuildContext, IxRule, RecordSearch, load_rules
from ixcheck.stations import SQLiteStationData, StationDataSource
from ixcheck.store import PARAM_CELL_SIZE, PARAM_PROFILE_PPK, StudyDocument

logger = logging.getLogger(__name__)

COVERAGE_SCENARIO_NAME = "Coverage"
PROPOSAL_BUILD_SCENARIO_NAME = "Proposal"


def build_scenario_name(record: CandidateRecord) -> str:
    """List scenario name for a protected record: file number or call sign, then status."""
    if record.file_number:
        base = record.file_number[:22]
    else:
        base = record.call_sign or "UNKNOWN"
    return f"{base}_{record.status.value}"


class RunLog:
    """Status reporter that appends log lines to a run's log file.

    Everything is also forwarded to an outer reporter when one is given.
    """

    def __init__(self, path: Path, target: StatusReporter | None = None) -> None:
        self.path = path
        self.target = target

    def report_status(self, message: str) -> None:
        if self.target is not None:
            self.target.report_status(message)

    def log_message(self, message: str) -> None:
        with self.path.open("a") as f:
            f.write(message + "\n")
        if self.target is not None:
            self.target.log_message(message)

    def show_message(self, message: str) -> None:
        if self.target is not None:
            self.target.show_message(message)


@dataclass
class RunOutcome:
    """Result of a run, as the request layer sees it."""

    result: OperationResult
    message: str = ""
    entry: RunCacheEntry | None = None
    output_files: list[str] = field(default_factory=list)
    report: str = ""

    @property
    def success(self) -> bool:
        return self.result == OperationResult.SUCCESS


class StudyBuild:
    """Builds, and optionally runs, one interference check study."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: StudyConfiguration,
        settings: EngineSettings,
        station_data: StationDataSource | None = None,
        rules: tuple[IxRule, ...] = DEFAULT_RULES,
        status: StatusReporter | None = None,
        errors: ErrorCollector | None = None,
        token: CancellationToken | None = None,
        gate: AdmissionGate | None = None,
        km_per_degree: float = DEFAULT_KM_PER_DEGREE,
        check_dts_distance: bool = False,
        min_channel: int = MIN_CHANNEL,
        max_channel: int = MAX_CHANNEL,
        mx_warn_count: int = MX_WARN_COUNT,
        mx_abort_count: int = MX_ABORT_COUNT,
        log_file_name: str = "log.txt",
    ) -> None:
        self.conn = conn
        self.config = config
        self.settings = settings
        self.station_data = station_data or SQLiteStationData(conn, config.station_data_key)
        self.rules = rules
        self.status: StatusReporter = status or LoggingStatus()
        self.errors = errors or ErrorCollector()
        self.token = token or CancellationToken()
        self.gate = gate or AdmissionGate(database_path(conn), settings.max_processes)
        self.km_per_degree = km_per_degree
        self.check_dts_distance = check_dts_distance
        self.min_channel = min_channel
        self.max_channel = max_channel
        self.mx_warn_count = mx_warn_count
        self.mx_abort_count = mx_abort_count
        self.log_file_name = log_file_name

        if config.replication_channel is not None:
            self.proposal: CandidateRecord = config.target.replicate(config.replication_channel)  # type: ignore[assignment]
        else:
            self.proposal = config.target

        self.context = BuildContext(token=self.token)
        self.before: CandidateRecord | None = config.before if config.did_set_before else None
        self.protected: list[ProtectedStation] = []
        self.report = ""
        self.run_status_total = 0
        self.last_error: BaseException | None = None
        self._log_start = 0

    @classmethod
    def from_config(
        cls,
        conn: sqlite3.Connection,
        config: StudyConfiguration,
        app_config: IxCheckConfig,
        ixcheck_dir: Path,
        **kwargs: object,
    ) -> StudyBuild:
        """Build with engine settings, rules, and limits taken from the app config."""
        config = config.with_defaults(
            app_config.default_cell_size,
            app_config.default_cell_size_lptv,
            app_config.default_profile_ppk,
            app_config.default_profile_ppk_lptv,
        )
        rules = DEFAULT_RULES
        if app_config.rules_file:
            rules = load_rules(resolve_path(ixcheck_dir, app_config.rules_file))
        return cls(
            conn,
            config,
            EngineSettings.from_config(app_config, ixcheck_dir),
            rules=rules,
            km_per_degree=app_config.km_per_degree,
            check_dts_distance=app_config.check_dts_distance,
            min_channel=app_config.min_channel,
            max_channel=app_config.max_channel,
            mx_warn_count=app_config.mx_warn_count,
            mx_abort_count=app_config.mx_abort_count,
            log_file_name=app_config.log_file_name,
            gate=AdmissionGate(
                get_db_path(ixcheck_dir),
                max(1, app_config.engine_process_count()),
                app_config.admission_poll_interval,
                app_config.admission_stale_after,
            ),
            **kwargs,  # type: ignore[arg-type]
        )

    # --- Status helpers ---

    def _report_status(self, message: str) -> None:
        self.status.report_status(message)

    def _log(self, message: str) -> None:
        self.status.log_message(elapsed_message(self._log_start, message))

    def _flush_messages(self) -> None:
        if self.errors.has_messages() and not self.errors.has_errors():
            self.status.log_message(self.errors.messages())
            self.errors.clear_messages()

    def _fail(self, error: BaseException) -> None:
        self.last_error = error
        self.errors.report_error(str(error))

    # --- Build ---

    def build_study(self, study_name: str | None = None) -> StudyDocument | None:
        """Create and build the study.

        Returns the study still locked for edit, or None after reporting the
        error and deleting whatever was created.
        """
        if self._log_start == 0:
            self._log_start = int(time.time() * 1000)
        name = study_name or self.config.study_name or self.proposal.call_sign or "IxCheck"
        self._report_status("Building study...")
        self._log("Starting study build")

        try:
            document = StudyDocument.create(
                self.conn,
                name,
                self.config.template_key,
                self.config.station_data_key,
                self.config.description,
            )
        except IxCheckError as e:
            self._fail(e)
            return None

        try:
            self._build(document)
            self.token.check()
        except (IxCheckError, sqlite3.Error) as e:
            self._fail(e)
            self._delete(document)
            return None
        except Exception as e:
            logger.exception("study build failed")
            self._fail(e)
            self._delete(document)
            return None

        logger.info("built study %s (key %d)", document.name, document.study_key)
        return document

    def _delete(self, document: StudyDocument) -> None:
        try:
            document.delete()
        except LockConflictError as e:
            logger.warning("could not delete study %d: %s", document.study_key, e)

    def _build(self, document: StudyDocument) -> None:
        config = self.config
        proposal = self.proposal
        search = RecordSearch(
            config,
            proposal,
            self.station_data,
            self.context,
            rules=self.rules,
            km_per_degree=self.km_per_degree,
            check_dts_distance=self.check_dts_distance,
            min_channel=self.min_channel,
            max_channel=self.max_channel,
        )

        proposal_key = document.add_source(proposal, is_proposal=True)
        if config.cell_size is not None:
            document.set_parameter(PARAM_CELL_SIZE, config.cell_size)
        if config.profile_ppk is not None:
            document.set_parameter(PARAM_PROFILE_PPK, config.profile_ppk)

        before_key: int | None = None
        if self.before is not None:
            before_key = document.add_source(self.before)

        desireds: list[tuple[int, CandidateRecord]] = []
        if config.build_full_study:
            if config.baseline_date is not None:
                self.context.baseline_index = self.station_data.get_baseline_index()
                self.token.check()
            if config.include_user_records:
                self.context.user_records = self.station_data.find_user_records(
                    config.include_user_records
                )
                self.token.check()

            self._report_status("Searching for protected stations...")
            self._log("Searching for protected stations")
            found = search.make_desired_list()
            self.token.check()

            if not config.did_set_before and found.detected_before is not None:
                self.before = found.detected_before
                before_key = document.add_source(self.before)
                self.errors.report_message(f'Proposal "before" set to {self.before.describe()}')
            desireds = [(document.add_source(record), record) for record in found.records]
            self._flush_messages()

        items = [ScenarioSource(proposal_key, True, False, True)]
        if before_key is not None:
            items.append(ScenarioSource(before_key, True, False, True))
        proposal_scenario = document.add_scenario(
            COVERAGE_SCENARIO_NAME,
            "Coverage of proposal",
            ScenarioType.PROPOSAL,
            items,
            is_permanent=True,
        )

        if not config.build_full_study:
            self.report = self._preamble()
            document.save(self.report)
            self.run_status_total = self._count_run_items(document, proposal_scenario)
            return

        probe = ProbeRunner(document, self.settings, self.token, self.status, self._log_start)

        receiving: set[int] = set()
        if desireds:
            self._log(f"Found {len(desireds)} records")
            self._log("Checking proposal interference")
            probe_items = [ScenarioSource(key, True, False, False) for key, _ in desireds]
            probe_items.append(ScenarioSource(proposal_key, False, True, False))
            if before_key is not None:
                probe_items.append(ScenarioSource(before_key, False, True, False))
            results = probe.run_with_scenario(
                probe_items, "Checking proposal interference", len(desireds)
            )
            receiving = {r.desired_key for r in results if r.causes_interference}
            self._log(f"{len(receiving)} records with interference from proposal")
        else:
            self._log("No protected station records found")

        self._report_status("Searching for undesireds...")

        protected_map: dict[int, ProtectedStation] = {}
        for key, record in desireds:
            station = ProtectedStation(record=record, source_key=key)
            self.protected.append(station)
            if key not in receiving:
                continue
            station.receives_interference = True
            self._log(
                f"Searching for undesireds to {record.call_sign} {record.channel} {record.status.value}"
            )
            station.build_scenario = self._search_undesireds(
                document,
                search,
                station,
                build_scenario_name(record),
                f"Potential undesireds to {record.describe()}",
            )
            if station.undesireds:
                protected_map[key] = station

        self._log("Searching for undesireds to proposal")
        proposal_station = ProtectedStation(record=proposal, source_key=proposal_key)
        proposal_station.build_scenario = self._search_undesireds(
            document,
            search,
            proposal_station,
            PROPOSAL_BUILD_SCENARIO_NAME,
            "Potential undesireds to proposal",
        )
        if proposal_station.undesireds:
            protected_map[proposal_key] = proposal_station
        protected_count = len(receiving) + 1

        if protected_map:
            self._log("Checking undesired interference")
            results = probe.run("Checking undesired interference", protected_count)
            for result in results:
                if not result.causes_interference:
                    continue
                station = protected_map.get(result.desired_key)
                if station is None:
                    continue
                und = station.undesired_for(result.undesired_key)
                if und is not None:
                    und.causes_interference = True
            for station in protected_map.values():
                self._unflag_quiet_undesireds(document, station)

        self._report_status("Building interference scenarios...")
        builder = ScenarioBuilder(
            document,
            proposal_key,
            self.token,
            self.status,
            self.km_per_degree,
            self.mx_warn_count,
            self.mx_abort_count,
        )

        for station in self.protected:
            if not station.receives_interference or station.build_scenario is None:
                continue
            record = station.record
            self._log(f"Building IX scenarios for {record.call_sign} {record.channel} {record.status.value}")
            station_before = before_key
            if station.is_pre_baseline and isinstance(self.before, BaselineRecord):
                station_before = None
                self.errors.report_warning(
                    f'Baseline "before" not used for pre-baseline record {record.describe()}'
                )
            builder.build_interference(
                station.source_key,
                record.describe(),
                station.undesireds,
                station.build_scenario,
                station_before,
            )
        self._flush_messages()

        self._log("Building MX scenarios")
        assert proposal_station.build_scenario is not None
        builder.build_coverage(
            proposal_scenario, proposal_station.undesireds, proposal_station.build_scenario
        )

        self.report = self._preamble() + build_summary(
            config,
            proposal,
            self.protected,
            self.context.included_user_records.values(),
            self.context.excluded_records.values(),
            self.km_per_degree,
        )
        document.save(self.report)
        self.run_status_total = self._count_run_items(document, proposal_scenario)

    def _search_undesireds(
        self,
        document: StudyDocument,
        search: RecordSearch,
        station: ProtectedStation,
        name: str,
        description: str,
    ) -> Scenario:
        found = search.make_undesired_list(station.record)
        self.token.check()
        self._flush_messages()

        if found.desired_is_pre_baseline:
            station.is_pre_baseline = True
            document.mark_pre_baseline(station.source_key)

        station.undesireds = [
            Undesired(record=record, source_key=document.add_source(record))
            for record in found.records
        ]
        items = [ScenarioSource(station.source_key, True, False, True)]
        items.extend(ScenarioSource(u.source_key, False, True, False) for u in station.undesireds)
        return document.add_scenario(name, description, ScenarioType.DEFAULT, items)

    @staticmethod
    def _unflag_quiet_undesireds(document: StudyDocument, station: ProtectedStation) -> None:
        scenario = station.build_scenario
        if scenario is None:
            return
        updated: list[ScenarioSource] = []
        for item in scenario.sources:
            und = station.undesired_for(item.source_key)
            if und is not None and not und.causes_interference and item.is_undesired:
                item = ScenarioSource(item.source_key, item.is_desired, False, item.is_permanent)
            updated.append(item)
        scenario.sources = updated
        document.update_scenario_sources(scenario)

    @staticmethod
    def _count_run_items(document: StudyDocument, proposal_scenario: Scenario) -> int:
        total = 0
        for scenario in document.scenarios():
            if scenario.key == proposal_scenario.key:
                total += scenario.desired_count()
            else:
                total += document.child_count(scenario.key)
        return total

    def _preamble(self) -> str:
        row = get_station_data(self.conn, self.config.station_data_key)
        return describe_proposal(
            self.proposal,
            row["name"] if row is not None else None,
            self.before,
            self.config.did_set_before,
        )

    # --- Run ---

    def run_study(self, cache: ResultCache, entry: RunCacheEntry | None) -> RunOutcome:
        """Build and run the study into a reserved cache entry.

        The admission slot is released and the status index finalized on
        every path. A failed run keeps its output directory and log file.
        """
        if entry is None:
            error = IxCheckError("Cannot run study, output has not been reserved.")
            self._fail(error)
            return RunOutcome(OperationResult.CALLER_ERROR, str(error))

        out_dir = Path(entry.output_directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        outer_status = self.status
        self.status = RunLog(out_dir / self.log_file_name, outer_status)
        self._log_start = int(time.time() * 1000)

        outcome = RunOutcome(OperationResult.SUCCESS, entry=entry)
        try:
            with self.gate.admitted(self.token):
                cache.mark_running(entry, self.config.description)
                self._run_admitted(entry, out_dir, outcome)
        except BuildAbortedError as e:
            self._fail(e)
            outcome.result = OperationResult.INTERNAL_FAILURE
        except Exception as e:
            logger.exception("study run failed")
            self._fail(e)
            outcome.result = OperationResult.INTERNAL_FAILURE
        finally:
            self.status = outer_status

        if outcome.success:
            outcome.message = "Study complete."
        else:
            outcome.message = str(self.errors) or "Study run failed."
        outcome.report = self.report
        cache.mark_final(
            entry,
            outcome.success,
            outcome.message,
            report=self.report,
            output_files=outcome.output_files,
            description=self.config.description,
        )
        return outcome

    def _run_admitted(self, entry: RunCacheEntry, out_dir: Path, outcome: RunOutcome) -> None:
        document = self.build_study(entry.study_name)
        if document is None:
            error = self.last_error
            outcome.result = (
                OperationResult.for_error(error) if error is not None else OperationResult.INTERNAL_FAILURE
            )
            return

        self._report_status("Starting study run...")
        self._log("Starting study run")
        try:
            document.change_lock(LockState.RUN_EXCLUSIVE)
            argv = build_engine_argv(
                self.settings,
                document.study_key,
                document.lock.generation,
                log_path=out_dir / self.log_file_name,
                log_start=self._log_start,
                file_codes=self.config.file_output_codes,
                map_codes=self.config.map_output_codes,
            )
            process = EngineProcess(
                argv,
                self.settings.working_dir,
                password=self.settings.db_password,
                token=self.token,
                status=self.status,
                status_label="Study running",
                run_total=self.run_status_total,
                status_interval=self.settings.status_interval,
                kill_grace_period=self.settings.kill_grace_period,
            )
            result = process.run()
        except IxCheckError as e:
            self._fail(e)
            outcome.result = OperationResult.for_error(e)
            self._release_and_delete(document)
            return
        except Exception as e:
            logger.exception("engine run failed")
            self._fail(e)
            outcome.result = OperationResult.INTERNAL_FAILURE
            self._release_and_delete(document)
            return

        self._release_and_delete(document)

        outcome.output_files = [_relative_to(out_dir, path) for path in result.output_files]
        if result.report_lines:
            self.report += "\n".join(result.report_lines) + "\n"
        if not result.success:
            for line in result.errors:
                self.errors.report_error(line)
            if not result.errors:
                self.errors.report_error("Study run failed.")
            outcome.result = OperationResult.INTERNAL_FAILURE

    def _release_and_delete(self, document: StudyDocument) -> None:
        """Run studies are temporary; only their output is kept."""
        try:
            locks.delete_study(self.conn, document.study_key, document.lock)
        except LockConflictError as e:
            logger.warning("could not delete study %d: %s", document.study_key, e)


def _relative_to(directory: Path, path: str) -> str:
    try:
        return str(Path(path).relative_to(directory))
    except ValueError:
        return path
