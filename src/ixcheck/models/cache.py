# Copyright (c) Syntropy Systems
"""Pydantic models for the run result cache."""

from __future__ import annotations

from enum import Enum

from pydantic import Field

from .base import IxBaseModel


class RunCacheEntry(IxBaseModel):
    """Index row for one reserved study run."""

    fingerprint: str
    study_name: str
    run_timestamp: str
    output_directory: str


class RunIndexStatus(str, Enum):
    """Lifecycle of the status document in a run's output directory."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class RunStatusIndex(IxBaseModel):
    """Status document written as index.json in each run directory."""

    study_name: str
    description: str | None = None
    status: RunIndexStatus = RunIndexStatus.QUEUED
    message: str = "Study queued, waiting to start..."
    report: str | None = None
    output_files: list[str] = Field(default_factory=list)
    updated_at: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status in (RunIndexStatus.COMPLETE, RunIndexStatus.FAILED)


class CacheReport(IxBaseModel):
    """Counts and storage used by one database's run cache."""

    index_count: int = 0
    directory_count: int = 0
    bytes_used: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def size_text(self) -> str:
        return format_size(self.bytes_used)


class MaintenanceReport(IxBaseModel):
    """Result of a cleanup or delete pass."""

    index_removed: int = 0
    directories_deleted: int = 0
    errors: list[str] = Field(default_factory=list)


def format_size(size: int) -> str:
    """Format a byte count the way cache reports show it."""
    if size >= 995_000_000:
        return f"{size / 1e9:.2f} GB"
    if size >= 950_000:
        return f"{size / 1e6:.1f} MB"
    if size >= 500:
        return f"{size // 1000} kB"
    return f"{size} B"
