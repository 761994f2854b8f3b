"""
Push delivery of job progress as Server-Sent Events.

The stream polls the progress store on a fixed interval and forwards each
snapshot until the job is terminal, unknown, or the client goes away.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from .errors import CacheError
from .status import ProgressStore

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


def format_event(event_type: str, identity: str, data: Optional[Dict[str, Any]] = None) -> str:
    payload = {
        "type": event_type,
        "job_id": identity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def progress_events(
    store: ProgressStore,
    identity: str,
    poll_interval: float = 1.0,
    is_disconnected: Optional[DisconnectCheck] = None,
) -> AsyncGenerator[str, None]:
    """Yield ``progress`` snapshots, then ``end`` (terminal) or ``not_found``."""
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info(f"Progress stream client for {identity} disconnected")
                return

            try:
                record = await store.get(identity)
            except CacheError as e:
                logger.error(f"Progress stream for {identity} lost the store: {e}")
                yield format_event("error", identity, {"detail": "storage-failure: Progress store is unavailable"})
                return

            if record is None:
                yield format_event("not_found", identity, {"status": "not_found"})
                return

            yield format_event("progress", identity, record.model_dump(mode="json"))
            if record.is_terminal:
                yield format_event("end", identity, {"status": record.status})
                return

            await asyncio.sleep(poll_interval)
    except asyncio.CancelledError:
        logger.info(f"Progress stream cancelled for job {identity}")
        raise
