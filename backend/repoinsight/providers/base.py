"""
Collaborator interfaces consumed by the orchestrator.

A SourceProvider resolves a repository reference to metadata and a local
working copy; an InsightProvider turns a working copy into an InsightReport.
"""
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from repoinsight.config import Settings, settings as default_settings
from repoinsight.models import InsightReport, RepositoryMetadata

# on_progress(percent 0-100, stage label, optional detail)
ProgressSink = Callable[[int, str, Optional[str]], Union[Awaitable[None], None]]


@dataclass
class ValidationOutcome:
    valid: bool
    owner: Optional[str] = None
    repo: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AnalysisConfig:
    """Per-job knobs handed to the insight provider."""
    analysis_type: str = "full"
    max_files_to_analyze: int = 15
    llm_model: str = "gpt-4o-mini"

    @classmethod
    def from_settings(cls, analysis_type: str, source: Optional[Settings] = None) -> "AnalysisConfig":
        s = source or default_settings
        return cls(
            analysis_type=analysis_type,
            max_files_to_analyze=s.MAX_FILES_TO_ANALYZE,
            llm_model=s.LLM_MODEL,
        )

    @property
    def uses_llm(self) -> bool:
        return self.analysis_type in ("full", "documentation")


class SourceProvider:
    async def validate(self, repository_url: str) -> ValidationOutcome:
        raise NotImplementedError

    async def get_metadata(self, owner: str, repo: str) -> RepositoryMetadata:
        raise NotImplementedError

    async def materialize(self, repository_url: str, destination: Path) -> None:
        """Populate ``destination`` with a working copy or raise."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class InsightProvider:
    # Setting that must resolve before analyze() is attempted; None if none
    credential_setting: Optional[str] = None

    def requires_credential(self, config: AnalysisConfig) -> Optional[str]:
        return self.credential_setting

    async def analyze(
        self,
        workspace: Path,
        metadata: RepositoryMetadata,
        config: AnalysisConfig,
        on_progress: ProgressSink,
    ) -> InsightReport:
        raise NotImplementedError
