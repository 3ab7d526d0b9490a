# Copyright (c) Syntropy Systems
"""Probe runs: cheap engine passes that classify which undesireds interfere."""
from __future__ import annotations

import logging

from ixcheck.cancel import CancellationToken
from ixcheck.engine import EngineProcess, EngineSettings, build_engine_argv
from ixcheck.errors import BuildAbortedError, EngineProcessError, StatusReporter
from ixcheck.models.study import LockState, ProbeResult, ScenarioSource, ScenarioType
from ixcheck.store import StudyDocument

logger = logging.getLogger(__name__)

PROBE_SCENARIO_NAME = "probe"


class ProbeRunner:
    """Runs the engine in probe mode against a study held for edit.

    The study is saved, the lock moved EDIT -> RUN_EXCLUSIVE against the
    generation this document holds, the engine run, and the lock moved back.
    Any failure raises and leaves the lock where it is; the caller deletes
    the study.
    """

    def __init__(
        self,
        document: StudyDocument,
        settings: EngineSettings,
        token: CancellationToken | None = None,
        status: StatusReporter | None = None,
        log_start: int | None = None,
    ) -> None:
        self.document = document
        self.settings = settings
        self.token = token or CancellationToken()
        self.status = status
        self.log_start = log_start

    def run(self, label: str, run_count: int) -> list[ProbeResult]:
        """Probe every scenario currently in the study."""
        self.document.save()
        self.token.check()

        self.document.change_lock(LockState.RUN_EXCLUSIVE)
        argv = build_engine_argv(
            self.settings,
            self.document.study_key,
            self.document.lock.generation,
            probe=True,
            log_start=self.log_start,
        )
        process = EngineProcess(
            argv,
            self.settings.working_dir,
            password=self.settings.db_password,
            token=self.token,
            status=self.status,
            status_label=label,
            run_total=run_count,
            status_interval=self.settings.status_interval,
            kill_grace_period=self.settings.kill_grace_period,
        )
        result = process.run()

        if result.aborted:
            raise BuildAbortedError("Study build aborted.")
        if not result.success:
            if self.status is not None:
                for line in result.errors[1:]:
                    self.status.log_message(line)
            message = result.errors[0] if result.errors else "Study engine probe run failed."
            raise EngineProcessError(message)

        self.document.change_lock(LockState.EDIT)
        logger.debug("%s: %d probe results", label, len(result.probe_results))
        return result.probe_results

    def run_with_scenario(
        self, sources: list[ScenarioSource], label: str, run_count: int
    ) -> list[ProbeResult]:
        """Probe with a throwaway scenario added for the duration of the run."""
        scenario = self.document.add_scenario(
            PROBE_SCENARIO_NAME, "", ScenarioType.DEFAULT, sources
        )
        results = self.run(label, run_count)
        self.document.remove_scenario(scenario.key)
        return results
