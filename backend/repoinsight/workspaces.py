"""
Per-job scratch directories for materialized repositories.
"""
import asyncio
import hashlib
import logging
import secrets
import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

STALE_WORKSPACE_AGE = 24 * 60 * 60


class WorkspaceManager:
    """Allocates uniquely named directories under ``base_dir`` and removes them."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def create(self, identity: Optional[str] = None) -> Path:
        prefix = "repo"
        if identity:
            prefix = "repo-" + hashlib.sha256(identity.encode("utf-8")).hexdigest()[:12]
        path = self.base_dir / f"{prefix}-{secrets.token_hex(6)}"
        path.mkdir(parents=True, exist_ok=False)
        logger.debug(f"Created workspace {path}")
        return path

    def destroy(self, path: Optional[Path]) -> bool:
        """Remove a workspace. Safe on None, missing, or half-populated paths."""
        if path is None:
            return False
        path = Path(path)
        if not self._owns(path):
            logger.warning(f"Refusing to remove {path}: outside {self.base_dir}")
            return False
        if not path.exists():
            return False
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.error(f"Workspace {path} could not be fully removed")
            return False
        logger.debug(f"Removed workspace {path}")
        return True

    @asynccontextmanager
    async def workspace(self, identity: Optional[str] = None) -> AsyncIterator[Path]:
        """Yield a fresh workspace and remove it on every exit path."""
        path: Optional[Path] = None
        try:
            path = await asyncio.to_thread(self.create, identity)
            yield path
        finally:
            await asyncio.to_thread(self.destroy, path)

    def cleanup_stale(self, max_age_seconds: int = STALE_WORKSPACE_AGE) -> int:
        """Remove leftovers from crashed processes."""
        now = time.time()
        removed = 0
        for entry in self.base_dir.iterdir():
            try:
                age = now - entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if entry.is_dir() and age > max_age_seconds:
                if self.destroy(entry):
                    removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} stale workspaces")
        return removed

    def _owns(self, path: Path) -> bool:
        base = self.base_dir.resolve()
        target = path.resolve()
        return target != base and base in target.parents
