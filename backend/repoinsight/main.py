from __future__ import annotations
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import settings
from .errors import InvalidInput, StorageError
from .events import progress_events
from .models import AnalysisRequest, CancelRequest, ResultSummary, SubmitResponse
from .observability import get_metrics_collector
from .orchestrator import get_orchestrator
from .status import job_identity

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="RepoInsight Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] or ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def _startup():
    orchestrator = get_orchestrator()
    if settings.CLEAN_STALE_WORKSPACES:
        await asyncio.to_thread(orchestrator.workspaces.cleanup_stale)
    try:
        await orchestrator.progress.backend.clear_expired()
    except StorageError as e:
        logger.warning(f"Could not sweep expired entries on startup: {e}")


@app.on_event("shutdown")
async def _shutdown():
    orchestrator = get_orchestrator()
    await orchestrator.shutdown()
    await orchestrator.source.aclose()
    await orchestrator.progress.backend.close()
    orchestrator.storage.close()


def _not_found(message: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "not_found", "detail": message})


def _storage_unavailable(e: StorageError) -> HTTPException:
    logger.error(f"Storage error serving request: {e}")
    return HTTPException(500, detail="storage-failure: Storage is unavailable")


def _reference(repository_url: Optional[str]) -> str:
    try:
        job_identity(repository_url or "")
    except InvalidInput as e:
        raise HTTPException(400, detail=e.detail())
    return repository_url.strip()


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/metrics")
def metrics():
    return get_metrics_collector().get_metrics_summary()


@app.post("/analysis", status_code=202, response_model=SubmitResponse)
async def submit_analysis(body: AnalysisRequest):
    orchestrator = get_orchestrator()
    try:
        identity = await orchestrator.submit(body.repositoryUrl, body.analysisType)
        record = await orchestrator.progress.get(identity)
    except InvalidInput as e:
        raise HTTPException(400, detail=e.detail())
    except StorageError as e:
        raise _storage_unavailable(e)
    return SubmitResponse(
        id=identity,
        repositoryUrl=body.repositoryUrl.strip(),
        status=record.status if record else "pending",
    )


@app.get("/analysis/progress/{identity}")
async def get_progress(identity: str):
    try:
        record = await get_orchestrator().progress.get(identity)
    except StorageError as e:
        raise _storage_unavailable(e)
    if record is None:
        return _not_found("No active analysis for this id")
    return record.model_dump(mode="json")


@app.get("/analysis/progress/{identity}/stream")
async def stream_progress(identity: str, request: Request):
    store = get_orchestrator().progress
    return StreamingResponse(
        progress_events(
            store,
            identity,
            poll_interval=settings.STREAM_POLL_INTERVAL_SECONDS,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/analysis/status")
async def get_status(repositoryUrl: Optional[str] = None):
    reference = _reference(repositoryUrl)
    try:
        record = await get_orchestrator().progress.get_by_reference(reference)
    except StorageError as e:
        raise _storage_unavailable(e)
    return {"analysis": record.model_dump(mode="json") if record else None}


@app.post("/analysis/cancel")
async def cancel_analysis(body: CancelRequest):
    reference = _reference(body.repositoryUrl)
    try:
        cancelled = await get_orchestrator().cancel(reference)
    except StorageError as e:
        raise _storage_unavailable(e)
    return {"cancelled": cancelled}


@app.get("/analysis/result")
async def get_result_by_reference(repositoryUrl: Optional[str] = None):
    reference = _reference(repositoryUrl)
    try:
        result = await get_orchestrator().storage.get_by_reference(reference)
    except StorageError as e:
        raise _storage_unavailable(e)
    if result is None:
        return _not_found("No stored analysis for this repository")
    return result.model_dump(mode="json")


@app.get("/analysis/result/{result_id}")
async def get_result_by_id(result_id: int):
    try:
        result = await get_orchestrator().storage.get_by_id(result_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    if result is None:
        return _not_found("No stored analysis with this id")
    return result.model_dump(mode="json")


@app.get("/analysis/results", response_model=list[ResultSummary])
async def list_results(limit: int = 100):
    try:
        results = await get_orchestrator().storage.list_results(max(1, min(limit, 500)))
    except StorageError as e:
        raise _storage_unavailable(e)
    return [
        ResultSummary(
            id=r.id,
            repositoryUrl=r.repositoryUrl,
            status=r.status,
            analysisType=r.analysisType,
            updatedAt=r.updatedAt,
        )
        for r in results
    ]
