import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from repoinsight.cache import FileSystemBackend, ResultCache
from repoinsight.config import Settings
from repoinsight.models import (
    CodeQualityMetrics,
    DependencyInfo,
    FileNode,
    InsightReport,
    ProgressRecord,
    RepositoryMetadata,
    RepositoryStructure,
)
from repoinsight.observability import MetricsCollector
from repoinsight.orchestrator import AnalysisOrchestrator
from repoinsight.providers.base import InsightProvider, SourceProvider, ValidationOutcome
from repoinsight.status import ProgressStore
from repoinsight.storage import ResultStorage
from repoinsight.workspaces import WorkspaceManager


class RecordingProgressStore(ProgressStore):
    """Keeps every record written so tests can check the full history."""

    def __init__(self, backend, ttl_seconds=3600):
        super().__init__(backend, ttl_seconds)
        self.history: List[ProgressRecord] = []

    async def _write(self, record):
        self.history.append(record)
        await super()._write(record)


class FakeSource(SourceProvider):
    def __init__(self, metadata: Optional[RepositoryMetadata] = None, valid: bool = True,
                 error: Optional[str] = None, materialize_error: Optional[Exception] = None):
        self.metadata = metadata or RepositoryMetadata(owner="acme", name="widgets", size=120, language="Python")
        self.valid = valid
        self.error = error
        self.materialize_error = materialize_error
        self.calls: List[str] = []
        self.destinations: List[Path] = []

    async def validate(self, repository_url):
        self.calls.append("validate")
        if not self.valid:
            return ValidationOutcome(valid=False, error=self.error)
        return ValidationOutcome(valid=True, owner=self.metadata.owner, repo=self.metadata.name)

    async def get_metadata(self, owner, repo):
        self.calls.append("metadata")
        return self.metadata

    async def materialize(self, repository_url, destination):
        self.calls.append("materialize")
        self.destinations.append(Path(destination))
        (Path(destination) / "src").mkdir(parents=True, exist_ok=True)
        (Path(destination) / "src" / "app.py").write_text("def main():\n    return 1\n")
        if self.materialize_error:
            raise self.materialize_error


class FakeInsight(InsightProvider):
    def __init__(self, error: Optional[Exception] = None, steps=(0, 40, 100),
                 credential_setting: Optional[str] = None, hold: bool = False):
        self.error = error
        self.steps = steps
        self.credential_setting = credential_setting
        self.hold = hold
        self.release: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.calls = 0
        self.workspaces: List[Path] = []

    async def analyze(self, workspace, metadata, config, on_progress):
        self.calls += 1
        self.workspaces.append(Path(workspace))
        for pct in self.steps:
            await on_progress(pct, "step", f"step {pct}")
        if self.hold:
            self.started.set()
            await self.release.wait()
            await on_progress(100, "after-hold", None)
        if self.error:
            raise self.error
        return InsightReport(
            structure=RepositoryStructure(
                root=FileNode(name="widgets", type="directory", path="."),
                totalFiles=1,
                totalDirectories=2,
                languages={"Python": 1},
            ),
            dependencies=[DependencyInfo(name="requests", version="2.31.0")],
            codeQuality=CodeQualityMetrics(maintainability=90),
            insights={"architecture": "Single module CLI"},
        )


class FailingStorage(ResultStorage):
    async def save(self, result):
        from repoinsight.errors import StorageError
        raise StorageError("database is locked")


@pytest.fixture
def make_orchestrator(tmp_path):
    """Factory building an orchestrator on file-backed stores under tmp_path."""

    def _make(source=None, insight=None, storage_cls=ResultStorage, **settings_overrides):
        overrides = {"OPENAI_API_KEY": "test-key", **settings_overrides}
        config = Settings(**overrides)
        backend = FileSystemBackend(tmp_path / "kv")
        orchestrator = AnalysisOrchestrator(
            progress=RecordingProgressStore(backend),
            cache=ResultCache(backend),
            storage=storage_cls(f"sqlite:///{tmp_path / 'results.db'}"),
            source=source or FakeSource(),
            insight=insight or FakeInsight(),
            workspaces=WorkspaceManager(tmp_path / "work"),
            config=config,
            metrics=MetricsCollector(),
        )
        return orchestrator

    return _make
