"""
GitHub source provider: reference validation, repository metadata and
default-branch archive download over the REST API.
"""
from __future__ import annotations
import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from repoinsight.config import Settings, settings as default_settings
from repoinsight.errors import SourceFetchError
from repoinsight.models import LastCommit, RepositoryMetadata
from repoinsight.utils.file_safety import ArchiveError, flatten_single_root, safe_extract_zip

from .base import SourceProvider, ValidationOutcome

logger = logging.getLogger(__name__)

_GITHUB_URL_RE = re.compile(r"github\.com/([^/\s]+)/([^/\s?#]+)")

INVALID_FORMAT = "Invalid GitHub repository URL format"
NOT_FOUND = "Repository not found or inaccessible"
ACCESS_DENIED = "Access denied, the repository may be private"
VALIDATION_FAILED = "Error validating repository"

ARCHIVE_NAME = ".archive.zip"
# Branches looked up by validate/get_metadata and not yet downloaded
MAX_REMEMBERED_BRANCHES = 256


def parse_github_url(repository_url: str) -> Optional[Tuple[str, str]]:
    """Return (owner, repo) for a github.com URL, or None."""
    match = _GITHUB_URL_RE.search(repository_url or "")
    if not match:
        return None
    owner, repo = match.group(1), match.group(2)
    repo = re.sub(r"\.git$", "", repo.rstrip("/"))
    if not owner or not repo:
        return None
    return owner, repo


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class GitHubSourceProvider(SourceProvider):
    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_settings
        self._client = client
        self._owns_client = client is None
        self._default_branches: Dict[Tuple[str, str], str] = {}

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.config.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {self.config.GITHUB_TOKEN}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self._headers(),
                timeout=self.config.PROVIDER_TIMEOUT_SECONDS,
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _api(self, path: str) -> str:
        return f"{self.config.GITHUB_API_URL.rstrip('/')}{path}"

    async def _get_json(self, path: str, **params: Any) -> Any:
        client = await self._get_client()
        try:
            response = await client.get(self._api(path), params=params or None, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(f"GitHub API returned {e.response.status_code} for {path}")
        except httpx.HTTPError as e:
            raise SourceFetchError(f"GitHub API request failed for {path}: {e}")
        return response.json()

    # ---- SourceProvider ----
    async def validate(self, repository_url: str) -> ValidationOutcome:
        parsed = parse_github_url(repository_url)
        if parsed is None:
            return ValidationOutcome(valid=False, error=INVALID_FORMAT)
        owner, repo = parsed

        client = await self._get_client()
        try:
            response = await client.get(self._api(f"/repos/{owner}/{repo}"), headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning(f"Validation request for {owner}/{repo} failed: {e}")
            return ValidationOutcome(valid=False, error=VALIDATION_FAILED)

        if response.status_code == 404:
            return ValidationOutcome(valid=False, error=NOT_FOUND)
        if response.status_code == 403:
            return ValidationOutcome(valid=False, error=ACCESS_DENIED)
        if response.status_code >= 400:
            logger.warning(f"Validation of {owner}/{repo} returned HTTP {response.status_code}")
            return ValidationOutcome(valid=False, error=VALIDATION_FAILED)

        branch = response.json().get("default_branch")
        if branch:
            self._remember_branch(owner, repo, branch)
        return ValidationOutcome(valid=True, owner=owner, repo=repo)

    async def get_metadata(self, owner: str, repo: str) -> RepositoryMetadata:
        repo_data, languages = await asyncio.gather(
            self._get_json(f"/repos/{owner}/{repo}"),
            self._get_json(f"/repos/{owner}/{repo}/languages"),
        )
        branch = repo_data.get("default_branch") or "main"
        self._remember_branch(owner, repo, branch)
        commit = await self._get_json(f"/repos/{owner}/{repo}/commits/{branch}")

        primary = max(languages, key=languages.get) if languages else "Unknown"
        commit_info = commit.get("commit") or {}
        return RepositoryMetadata(
            name=repo_data.get("name") or repo,
            owner=(repo_data.get("owner") or {}).get("login") or owner,
            description=repo_data.get("description") or "",
            stars=repo_data.get("stargazers_count") or 0,
            language=primary,
            topics=repo_data.get("topics") or [],
            license=(repo_data.get("license") or {}).get("name"),
            size=repo_data.get("size") or 0,
            defaultBranch=branch,
            createdAt=_parse_dt(repo_data.get("created_at")),
            updatedAt=_parse_dt(repo_data.get("updated_at")),
            lastCommit=LastCommit(
                sha=commit.get("sha") or "",
                message=commit_info.get("message") or "",
                date=_parse_dt((commit_info.get("author") or {}).get("date")),
            ),
        )

    def _remember_branch(self, owner: str, repo: str, branch: str) -> None:
        self._default_branches.pop((owner, repo), None)
        self._default_branches[(owner, repo)] = branch
        while len(self._default_branches) > MAX_REMEMBERED_BRANCHES:
            self._default_branches.pop(next(iter(self._default_branches)))

    async def _default_branch(self, owner: str, repo: str) -> str:
        """Default branch for a download, consuming the entry left by validate/get_metadata."""
        branch = self._default_branches.pop((owner, repo), None)
        if branch:
            return branch
        repo_data = await self._get_json(f"/repos/{owner}/{repo}")
        return repo_data.get("default_branch") or "main"

    async def materialize(self, repository_url: str, destination: Path) -> None:
        parsed = parse_github_url(repository_url)
        if parsed is None:
            raise SourceFetchError(INVALID_FORMAT)
        owner, repo = parsed
        branch = await self._default_branch(owner, repo)
        url = f"{self.config.GITHUB_ARCHIVE_URL.rstrip('/')}/{owner}/{repo}/archive/refs/heads/{branch}.zip"

        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        zip_path = destination / ARCHIVE_NAME
        max_zip_bytes = self.config.MAX_ZIP_MB * 1024 * 1024

        logger.info(f"Downloading {url}")
        try:
            await self._download(url, zip_path, max_zip_bytes)
            count = await asyncio.to_thread(
                safe_extract_zip,
                zip_path,
                destination,
                max_zip_bytes=max_zip_bytes,
                max_files=self.config.MAX_FILES,
                max_file_bytes=self.config.MAX_FILE_MB * 1024 * 1024,
                ignored_dirs=self.config.IGNORED_DIRS,
                ignored_exts=self.config.IGNORED_EXTS,
            )
        except ArchiveError as e:
            raise SourceFetchError(f"Archive rejected: {e}")
        finally:
            zip_path.unlink(missing_ok=True)

        await asyncio.to_thread(flatten_single_root, destination)
        logger.info(f"Extracted {count} files from {owner}/{repo}@{branch}")

    async def _download(self, url: str, zip_path: Path, max_bytes: int) -> None:
        client = await self._get_client()
        try:
            async with client.stream("GET", url, headers=self._headers()) as response:
                response.raise_for_status()
                written = 0
                with open(zip_path, "wb") as out:
                    async for chunk in response.aiter_bytes():
                        written += len(chunk)
                        if written > max_bytes:
                            raise SourceFetchError(f"Archive exceeds {self.config.MAX_ZIP_MB} MB")
                        out.write(chunk)
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(f"Archive download returned {e.response.status_code}")
        except httpx.HTTPError as e:
            raise SourceFetchError(f"Archive download failed: {e}")
