"""
Sync-pipeline boundary.

The code that actually reads the issue tracker and writes Git is an external
collaborator. The orchestrator's local fallback reaches it only through
SyncPipeline.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field


class IncrementalOptions(BaseModel):
    """Knobs for incremental syncs."""

    force: bool = False
    dry_run: bool = False
    include_new: bool = True
    include_modified: bool = True


class SyncOutcome(BaseModel):
    """Aggregate result reported by the pipeline."""

    total_issues: int = 0
    processed_issues: int = 0
    successful_issues: int = 0
    failed_issues: int = 0
    processed_files: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    duration_seconds: Optional[float] = None


class LocalSyncRequest(BaseModel):
    """A sync to run in-process instead of on the cluster."""

    issue_keys: List[str] = Field(default_factory=list)
    jql: str = ""
    repository: str
    concurrency: int = 0
    rate_limit_ms: int = 0
    incremental: bool = False
    force: bool = False
    dry_run: bool = False


class SyncPipeline(ABC):
    """Issue-tracker to Git sync engine."""

    @abstractmethod
    async def sync_issues(
        self, keys: List[str], repository: str, concurrency: int = 0, rate_limit_ms: int = 0
    ) -> SyncOutcome:
        pass

    @abstractmethod
    async def sync_jql(
        self, query: str, repository: str, concurrency: int = 0, rate_limit_ms: int = 0
    ) -> SyncOutcome:
        pass

    @abstractmethod
    async def sync_issues_incremental(
        self, keys: List[str], repository: str, options: IncrementalOptions
    ) -> SyncOutcome:
        pass

    @abstractmethod
    async def sync_jql_incremental(
        self, query: str, repository: str, options: IncrementalOptions
    ) -> SyncOutcome:
        pass
