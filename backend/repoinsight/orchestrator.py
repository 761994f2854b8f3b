"""
Analysis orchestrator: runs one detached pipeline task per repository,
reporting every stage transition to the progress store.

Stage order (percent): validating 5 -> cache lookup -> metadata 15 ->
cloning 20..30 -> insight-analysis 30..95 -> saving 95 -> completed 100.
An insight or clone failure degrades to a basic, metadata-only result; the
job still completes. The workspace is released on every exit path.
"""
import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import ValidationError

from .cache import ResultCache, create_backend
from .config import Settings, require_setting, settings as default_settings
from .errors import (
    AnalysisError,
    InsightStageError,
    InvalidInput,
    JobCancelled,
    ProviderValidationError,
    SourceFetchError,
    StorageError,
)
from .models import (
    ANALYSIS_TYPES,
    INSIGHTS_UNAVAILABLE,
    AnalysisResult,
    FileNode,
    RepositoryMetadata,
    RepositoryStructure,
    Stage,
)
from .observability import MetricsCollector, get_metrics_collector
from .providers.base import AnalysisConfig, InsightProvider, SourceProvider
from .status import ProgressStore, job_identity
from .storage import ResultStorage
from .workspaces import WorkspaceManager

logger = logging.getLogger(__name__)

INSIGHT_BAND_START = 30
INSIGHT_BAND_END = 95
STORAGE_FAILURE_DETAIL = "storage-failure: Result storage is unavailable"
INTERNAL_FAILURE_DETAIL = "internal-error: Analysis failed unexpectedly"


def insight_progress(provider_percent: float) -> int:
    """Remap insight-provider progress (0-100) into the orchestrator's 30-95 band."""
    pct = max(0.0, min(100.0, float(provider_percent)))
    return min(INSIGHT_BAND_END, INSIGHT_BAND_START + round(pct * 0.7))


def build_basic_result(repository_url: str, analysis_type: str, metadata: RepositoryMetadata) -> AnalysisResult:
    """Metadata-only result used when the expensive stages fail."""
    languages = {}
    if metadata.language and metadata.language != "Unknown":
        languages[metadata.language] = metadata.size
    return AnalysisResult(
        repositoryUrl=repository_url,
        analysisType=analysis_type,
        metadata=metadata,
        structure=RepositoryStructure(
            root=FileNode(name=metadata.name, type="directory", path=".", size=metadata.size),
            totalFiles=0,
            totalDirectories=0,
            languages=languages,
            keyFiles=[],
        ),
        dependencies=[],
        codeQuality=None,
        insights=INSIGHTS_UNAVAILABLE,
        status="degraded",
    )


class CancellationToken:
    """Cooperative cancellation flag checked at stage boundaries."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelled()


class _ProgressReporter:
    """Writes one job's progress, never letting the percentage go backwards."""

    def __init__(self, store: ProgressStore, identity: str, token: CancellationToken):
        self.store = store
        self.identity = identity
        self.token = token
        self.last_percent = 0

    async def update(self, percent: int, stage: str, details: Optional[str] = None, **fields) -> None:
        # After a cancel the record may already belong to a resubmitted job
        self.token.raise_if_cancelled()
        percent = max(self.last_percent, min(100, int(percent)))
        record = await self.store.update(
            self.identity, progress=percent, stage=stage, details=details, **fields
        )
        self.last_percent = percent
        if record is None:
            # Deleted under us; treated like a cancellation
            logger.info(f"Progress record for {self.identity} disappeared, stopping job")
            self.token.cancel()
        elif record.is_terminal:
            logger.info(f"Job {self.identity} was terminated externally ({record.details})")
            self.token.cancel()
        self.token.raise_if_cancelled()

    async def insight_sink(self, percent: float, label: str, detail: Optional[str] = None) -> None:
        await self.update(
            insight_progress(percent),
            Stage.INSIGHT_ANALYSIS,
            detail or label,
        )

    async def complete(self, details: str) -> None:
        self.token.raise_if_cancelled()
        await self.store.update(
            self.identity, status="completed", progress=100, stage=Stage.COMPLETED, details=details
        )
        self.last_percent = 100

    async def fail(self, details: str, stage: str = Stage.FAILED) -> None:
        # Terminal records are left alone by the store
        await self.store.update(self.identity, status="failed", stage=stage, details=details)


@dataclass
class _Job:
    identity: str
    repository_url: str
    analysis_type: str
    token: CancellationToken
    task: Optional[asyncio.Task] = None


class AnalysisOrchestrator:
    def __init__(
        self,
        progress: ProgressStore,
        cache: ResultCache,
        storage: ResultStorage,
        source: SourceProvider,
        insight: InsightProvider,
        workspaces: WorkspaceManager,
        config: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.progress = progress
        self.cache = cache
        self.storage = storage
        self.source = source
        self.insight = insight
        self.workspaces = workspaces
        self.config = config or default_settings
        self.metrics = metrics or get_metrics_collector()
        self._jobs: Dict[str, _Job] = {}

    # ---- public API ----
    async def submit(self, repository_url: str, analysis_type: str = "full") -> str:
        """Start an analysis and return its identity without waiting for it.

        A job already running for the same reference is reused unless it was
        cancelled, in which case a fresh job replaces it."""
        reference = (repository_url or "").strip()
        if not reference:
            raise InvalidInput("Repository URL is required")
        analysis_type = (analysis_type or "full").strip()
        if analysis_type not in ANALYSIS_TYPES:
            raise InvalidInput(f"Unsupported analysis type: {analysis_type}")

        identity = job_identity(reference)
        running = self._jobs.get(identity)
        if running and not running.token.cancelled and (running.task is None or not running.task.done()):
            logger.info(f"Job {identity} already running for {reference}, reusing it")
            self.metrics.record_submission(deduplicated=True)
            return identity

        job = _Job(identity=identity, repository_url=reference, analysis_type=analysis_type,
                   token=CancellationToken())
        # Registered before the first await so overlapping submits see it
        self._jobs[identity] = job
        try:
            await self.progress.create(reference)
        except BaseException:
            self._forget(job)
            raise
        job.task = asyncio.create_task(self._run_job(job), name=f"analysis:{identity}")
        job.task.add_done_callback(lambda _t, j=job: self._forget(j))
        self.metrics.record_submission()
        logger.info(f"Submitted analysis {identity} for {reference} ({analysis_type})")
        return identity

    async def cancel(self, repository_url: str) -> bool:
        """Mark the job failed and signal its task. No-op without an active job."""
        identity = job_identity(repository_url)
        job = self._jobs.get(identity)
        record = await self.progress.get(identity)

        cancelled = False
        if record is not None and not record.is_terminal:
            await self.progress.update(
                identity, status="failed", stage=Stage.CANCELLED, details=JobCancelled().detail()
            )
            cancelled = True
        if job is not None and not job.token.cancelled and (job.task is None or not job.task.done()):
            job.token.cancel()
            cancelled = True

        if cancelled:
            logger.info(f"Cancellation requested for {identity}")
        else:
            logger.debug(f"Nothing to cancel for {identity}")
        return cancelled

    def is_running(self, repository_url: str) -> bool:
        job = self._jobs.get(job_identity(repository_url))
        return bool(job and job.task and not job.task.done())

    async def wait(self, identity: str) -> None:
        """Await a job's task if it is still registered. Used by tests and shutdown."""
        job = self._jobs.get(identity)
        if job and job.task:
            await asyncio.gather(job.task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [j.task for j in self._jobs.values() if j.task and not j.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelling {len(tasks)} running analysis jobs")
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- internals ----
    def _forget(self, job: _Job) -> None:
        if self._jobs.get(job.identity) is job:
            del self._jobs[job.identity]

    @contextmanager
    def _timed(self, stage: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.metrics.record_stage_timing(stage, time.perf_counter() - started)

    async def _run_job(self, job: _Job) -> None:
        """Error boundary around one pipeline run."""
        reporter = _ProgressReporter(self.progress, job.identity, job.token)
        try:
            with self._timed("total"):
                outcome = await self._run_pipeline(job, reporter)
            self.metrics.record_outcome(outcome)
            logger.info(f"Job {job.identity} finished: {outcome}")
        except JobCancelled as e:
            logger.info(f"Job {job.identity} cancelled")
            self.metrics.record_outcome("cancelled")
            await self._safe_fail(job, reporter, e.detail(), Stage.CANCELLED)
        except StorageError as e:
            logger.exception(f"Job {job.identity} failed on storage: {e}")
            self.metrics.record_outcome("failed", e.code)
            await self._safe_fail(job, reporter, STORAGE_FAILURE_DETAIL)
        except AnalysisError as e:
            logger.warning(f"Job {job.identity} failed: {e.detail()}")
            self.metrics.record_outcome("failed", e.code)
            await self._safe_fail(job, reporter, e.detail())
        except asyncio.CancelledError:
            logger.warning(f"Job {job.identity} interrupted by shutdown")
            self.metrics.record_outcome("cancelled")
            await self._safe_fail(job, reporter, "cancelled: Analysis interrupted by server shutdown", Stage.CANCELLED)
            raise
        except Exception:
            logger.exception(f"Job {job.identity} failed unexpectedly")
            self.metrics.record_outcome("failed", "internal-error")
            await self._safe_fail(job, reporter, INTERNAL_FAILURE_DETAIL)

    async def _safe_fail(self, job: _Job, reporter: _ProgressReporter, detail: str,
                         stage: str = Stage.FAILED) -> None:
        if self._jobs.get(job.identity) is not job:
            logger.info(f"Job {job.identity} was superseded, leaving its progress record alone")
            return
        try:
            await reporter.fail(detail, stage)
        except StorageError as e:
            logger.error(f"Could not record failure for {reporter.identity}: {e}")

    async def _run_pipeline(self, job: _Job, reporter: _ProgressReporter) -> str:
        reference = job.repository_url
        analysis_type = job.analysis_type
        token = job.token

        await reporter.update(5, Stage.VALIDATING, "Validating repository", status="analyzing")

        with self._timed("cache-lookup"):
            result = await self._cached_result(reference, analysis_type)
        self.metrics.record_cache_lookup(result is not None)
        if result is not None:
            await reporter.update(90, Stage.CACHED, "Using cached analysis")
            await self._persist(result)
            await reporter.complete("Analysis loaded from cache")
            return result.status

        with self._timed("validate"):
            outcome = await self.source.validate(reference)
        if not outcome.valid:
            raise ProviderValidationError(outcome.error or "Repository validation failed")
        token.raise_if_cancelled()

        await reporter.update(15, Stage.METADATA, "Fetching repository metadata")
        with self._timed("metadata"):
            metadata = await self.source.get_metadata(outcome.owner, outcome.repo)
        token.raise_if_cancelled()

        config = AnalysisConfig.from_settings(analysis_type, self.config)
        report = None
        fallback_reason = None
        # The workspace is gone before the job turns terminal
        async with self.workspaces.workspace(job.identity) as workspace:
            await reporter.update(20, Stage.CLONING, "Downloading repository")
            try:
                with self._timed("materialize"):
                    await self.source.materialize(reference, workspace)
            except (AnalysisError, OSError) as e:
                logger.warning(f"Materialize failed for {job.identity}, using basic result: {e}")
                fallback_reason = SourceFetchError.code

            if fallback_reason is None:
                await reporter.update(INSIGHT_BAND_START, Stage.CLONING, "Repository downloaded")

                credential = self.insight.requires_credential(config)
                if credential:
                    require_setting(credential, self.config)

                try:
                    with self._timed("insight"):
                        report = await self.insight.analyze(workspace, metadata, config, reporter.insight_sink)
                except JobCancelled:
                    raise
                except Exception as e:
                    logger.warning(f"Insight stage failed for {job.identity}, using basic result: {e!r}")
                    fallback_reason = InsightStageError.code
        token.raise_if_cancelled()

        if report is None:
            self.metrics.record_fallback(fallback_reason)
            await reporter.update(INSIGHT_BAND_END, Stage.FALLBACK, "Insights unavailable, saving basic result")
            result = build_basic_result(reference, analysis_type, metadata)
            ttl = self.config.BASIC_RESULT_CACHE_TTL_SECONDS
        else:
            await reporter.update(INSIGHT_BAND_END, Stage.SAVING, "Saving analysis result")
            result = AnalysisResult(
                repositoryUrl=reference,
                analysisType=analysis_type,
                metadata=metadata,
                structure=report.structure,
                dependencies=report.dependencies,
                codeQuality=report.codeQuality,
                insights=report.insights,
                status="completed",
            )
            ttl = self.config.RESULT_CACHE_TTL_SECONDS

        await self._persist(result)
        await self.cache.set(reference, analysis_type, result.model_dump(mode="json"), ttl)
        if result.is_degraded:
            await reporter.complete("Analysis completed with basic result")
        else:
            await reporter.complete("Analysis completed")
        return result.status

    async def _cached_result(self, reference: str, analysis_type: str) -> Optional[AnalysisResult]:
        """Cached result for the key, or None. Unreadable entries are dropped and count as a miss."""
        payload = await self.cache.get(reference, analysis_type)
        if payload is None:
            return None
        try:
            return AnalysisResult.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry for {reference} ({analysis_type}): {e}")
            await self.cache.invalidate(reference, analysis_type)
            return None

    async def _persist(self, result: AnalysisResult) -> None:
        with self._timed("save"):
            await self.storage.save(result)


# Global orchestrator instance
_orchestrator: Optional[AnalysisOrchestrator] = None


def build_orchestrator(config: Optional[Settings] = None) -> AnalysisOrchestrator:
    """Wire the default GitHub + OpenAI collaborators from settings."""
    from .providers.github import GitHubSourceProvider
    from .providers.insight import RepositoryInsightProvider

    config = config or default_settings
    backend = create_backend(config)
    return AnalysisOrchestrator(
        progress=ProgressStore(backend, config.PROGRESS_TTL_SECONDS),
        cache=ResultCache(backend),
        storage=ResultStorage(config.DATABASE_URL),
        source=GitHubSourceProvider(config),
        insight=RepositoryInsightProvider(config),
        workspaces=WorkspaceManager(Path(config.WORKSPACE_DIR)),
        config=config,
    )


def get_orchestrator() -> AnalysisOrchestrator:
    """Get the global orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[AnalysisOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator
