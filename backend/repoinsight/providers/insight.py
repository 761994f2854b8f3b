"""
Default insight provider: local static analysis followed by one language-model
call for the narrative insights.
"""
from __future__ import annotations
import asyncio
import inspect
import logging
from pathlib import Path
from typing import Callable, Optional

from repoinsight import analysis_tools
from repoinsight.config import Settings, settings as default_settings
from repoinsight.llm.client import LLMClient
from repoinsight.llm.prompts import INSIGHT_FIELDS, build_insight_messages
from repoinsight.models import INSIGHTS_SKIPPED, CodeQualityMetrics, InsightReport, RepositoryMetadata

from .base import AnalysisConfig, InsightProvider, ProgressSink

logger = logging.getLogger(__name__)


async def _emit(on_progress: ProgressSink, percent: int, stage: str, detail: Optional[str] = None) -> None:
    result = on_progress(percent, stage, detail)
    if inspect.isawaitable(result):
        await result


class RepositoryInsightProvider(InsightProvider):
    credential_setting = "OPENAI_API_KEY"

    def __init__(self, config: Optional[Settings] = None,
                 llm_factory: Optional[Callable[[], LLMClient]] = None):
        self.config = config or default_settings
        self._llm_factory = llm_factory or (lambda: LLMClient(self.config))
        self._llm: Optional[LLMClient] = None

    def requires_credential(self, config: AnalysisConfig) -> Optional[str]:
        return self.credential_setting if config.uses_llm else None

    def _client(self) -> LLMClient:
        if self._llm is None:
            self._llm = self._llm_factory()
        return self._llm

    async def analyze(
        self,
        workspace: Path,
        metadata: RepositoryMetadata,
        config: AnalysisConfig,
        on_progress: ProgressSink,
    ) -> InsightReport:
        await _emit(on_progress, 0, "structure", "Analyzing repository structure")
        structure = await asyncio.to_thread(analysis_tools.analyze_structure, workspace)

        await _emit(on_progress, 15, "dependencies", "Reading dependency manifests")
        dependencies = await asyncio.to_thread(analysis_tools.analyze_dependencies, workspace)

        quality: CodeQualityMetrics = CodeQualityMetrics()
        if config.analysis_type != "structure":
            await _emit(on_progress, 30, "code-quality", "Measuring code quality")
            quality = await asyncio.to_thread(analysis_tools.analyze_code_quality, workspace)

        if not config.uses_llm:
            await _emit(on_progress, 100, "done", "Static analysis complete")
            return InsightReport(
                structure=structure,
                dependencies=dependencies,
                codeQuality=quality,
                insights=INSIGHTS_SKIPPED,
            )

        await _emit(on_progress, 45, "llm-insights", "Generating insights")
        key_paths, dep_names = analysis_tools.summarize_for_prompt(
            structure, dependencies, quality, config.max_files_to_analyze
        )
        messages = build_insight_messages(
            metadata,
            structure,
            key_paths,
            dep_names,
            {
                "averageComplexity": quality.complexity.average,
                "maxComplexity": quality.complexity.max,
                "duplication": quality.duplication,
                "maintainability": quality.maintainability,
                "securityIssues": len(quality.securityIssues),
            },
            config.analysis_type,
        )
        payload = await self._client().acomplete_json(messages)
        insights = {field: payload.get(field) for field in INSIGHT_FIELDS if field in payload}
        if not insights:
            logger.warning(f"Insight reply for {metadata.owner}/{metadata.name} had no expected fields")
            insights = payload

        await _emit(on_progress, 100, "done", "Insights generated")
        return InsightReport(
            structure=structure,
            dependencies=dependencies,
            codeQuality=quality,
            insights=insights,
        )
