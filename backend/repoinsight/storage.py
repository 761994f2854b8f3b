"""Durable storage for analysis results, keyed by repository URL."""
import asyncio
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import AnalysisResultRow, create_engine_instance, create_session_factory, init_db
from .errors import StorageError
from .models import AnalysisResult, StoredAnalysisResult

logger = logging.getLogger(__name__)


class ResultStorage:
    """Upsert/read of analysis results. Blocking calls run in a worker thread."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_engine_instance(database_url)
        self.Session = create_session_factory(self.engine)
        init_db(self.engine)

    # ---- sync implementations ----
    def _save(self, result: AnalysisResult) -> StoredAnalysisResult:
        with self.Session() as session:
            row = session.query(AnalysisResultRow).filter(
                AnalysisResultRow.repository_url == result.repositoryUrl
            ).first()
            if row is None:
                row = AnalysisResultRow(repository_url=result.repositoryUrl)
                session.add(row)

            row.owner = result.metadata.owner
            row.repo = result.metadata.name
            row.analysis_type = result.analysisType
            row.metadata_ = result.metadata.model_dump(mode="json")
            row.structure = result.structure.model_dump(mode="json")
            row.dependencies = [d.model_dump(mode="json") for d in result.dependencies]
            row.code_quality = result.codeQuality.model_dump(mode="json") if result.codeQuality else None
            row.insights = result.insights
            row.status = result.status

            session.commit()
            session.refresh(row)
            return self._to_model(row)

    def _get_by_reference(self, repository_url: str) -> Optional[StoredAnalysisResult]:
        with self.Session() as session:
            row = session.query(AnalysisResultRow).filter(
                AnalysisResultRow.repository_url == repository_url
            ).first()
            return self._to_model(row) if row else None

    def _get_by_id(self, result_id: int) -> Optional[StoredAnalysisResult]:
        with self.Session() as session:
            row = session.get(AnalysisResultRow, result_id)
            return self._to_model(row) if row else None

    def _list_results(self, limit: int) -> List[StoredAnalysisResult]:
        with self.Session() as session:
            rows = (
                session.query(AnalysisResultRow)
                .order_by(AnalysisResultRow.updated_at.desc(), AnalysisResultRow.id.desc())
                .limit(limit)
                .all()
            )
            return [self._to_model(r) for r in rows]

    @staticmethod
    def _to_model(row: AnalysisResultRow) -> StoredAnalysisResult:
        return StoredAnalysisResult(
            id=row.id,
            repositoryUrl=row.repository_url,
            analysisType=row.analysis_type or "full",
            metadata=row.metadata_,
            structure=row.structure,
            dependencies=row.dependencies or [],
            codeQuality=row.code_quality,
            insights=row.insights if row.insights is not None else "",
            status=row.status or "completed",
            createdAt=row.created_at,
            updatedAt=row.updated_at,
        )

    # ---- async API ----
    async def save(self, result: AnalysisResult) -> StoredAnalysisResult:
        try:
            stored = await asyncio.to_thread(self._save, result)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save analysis result for {result.repositoryUrl}: {e}")
            raise StorageError(f"Failed to save analysis result: {e}")
        logger.info(f"Saved analysis result {stored.id} for {stored.repositoryUrl} ({stored.status})")
        return stored

    async def get_by_reference(self, repository_url: str) -> Optional[StoredAnalysisResult]:
        try:
            return await asyncio.to_thread(self._get_by_reference, repository_url)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read analysis result: {e}")

    async def get_by_id(self, result_id: int) -> Optional[StoredAnalysisResult]:
        try:
            return await asyncio.to_thread(self._get_by_id, result_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read analysis result: {e}")

    async def list_results(self, limit: int = 100) -> List[StoredAnalysisResult]:
        try:
            return await asyncio.to_thread(self._list_results, limit)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list analysis results: {e}")

    def close(self) -> None:
        self.engine.dispose()
