"""
Progress store: the lifecycle snapshot of each analysis job, kept in the
key/value backend with a TTL refreshed on every write.
"""
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .cache import KeyValueBackend
from .errors import InvalidInput
from .models import ProgressRecord, Stage

logger = logging.getLogger(__name__)

ANALYSIS_PROGRESS_TTL = 24 * 60 * 60


def job_identity(repository_url: str) -> str:
    """Deterministic, reversible identity for a repository reference.

    URL-safe base64 so the identity can be used as a path segment."""
    reference = (repository_url or "").strip()
    if not reference:
        raise InvalidInput("Repository URL is required")
    return base64.urlsafe_b64encode(reference.encode("utf-8")).decode("ascii")


def decode_identity(identity: str) -> Optional[str]:
    try:
        return base64.urlsafe_b64decode(identity.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressStore:
    """Create/update/get/delete of ProgressRecords keyed by job identity."""

    def __init__(self, backend: KeyValueBackend, ttl_seconds: int = ANALYSIS_PROGRESS_TTL):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    def _get_progress_key(self, identity: str) -> str:
        return f"progress:{identity}"

    async def create(self, repository_url: str) -> ProgressRecord:
        """Write a fresh ``pending`` record, replacing any previous one."""
        identity = job_identity(repository_url)
        now = _now()
        record = ProgressRecord(
            id=identity,
            repositoryUrl=repository_url.strip(),
            status="pending",
            progress=0,
            stage=Stage.INITIALIZING,
            details="Initializing analysis...",
            createdAt=now,
            updatedAt=now,
        )
        await self._write(record)
        logger.info(f"Created progress record {identity} for {record.repositoryUrl}")
        return record

    async def update(self, identity: str, **fields: Any) -> Optional[ProgressRecord]:
        """Merge ``fields`` into the record and refresh ``updatedAt``.

        Returns None if the record is missing or expired (it is never
        recreated here). A record already in a terminal status is returned
        unchanged."""
        existing = await self.get(identity)
        if existing is None:
            logger.debug(f"Skipping update for unknown or expired job {identity}")
            return None
        if existing.is_terminal:
            logger.debug(f"Ignoring update for terminal job {identity}: {fields}")
            return existing

        fields.pop("id", None)
        fields.pop("createdAt", None)
        data: Dict[str, Any] = existing.model_dump()
        data.update(fields)
        data["updatedAt"] = _now()
        record = ProgressRecord.model_validate(data)
        await self._write(record)
        return record

    async def get(self, identity: str) -> Optional[ProgressRecord]:
        raw = await self.backend.get(self._get_progress_key(identity))
        if raw is None:
            return None
        try:
            return ProgressRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Unreadable progress record for {identity}, treating as not found: {e}")
            return None

    async def get_by_reference(self, repository_url: str) -> Optional[ProgressRecord]:
        return await self.get(job_identity(repository_url))

    async def delete(self, identity: str) -> None:
        await self.backend.delete(self._get_progress_key(identity))
        logger.debug(f"Deleted progress record {identity}")

    async def _write(self, record: ProgressRecord) -> None:
        await self.backend.set(
            self._get_progress_key(record.id),
            record.model_dump(mode="json"),
            self.ttl_seconds,
        )
