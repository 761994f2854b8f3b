"""
Error taxonomy for repository analysis jobs.

Each error carries a short machine-readable code. ``detail()`` renders the
``"<code>: <message>"`` string stored on a terminal progress record.
"""
from typing import Optional


class AnalysisError(Exception):
    """Base class for errors surfaced through a job's progress record."""

    code = "analysis-error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def detail(self) -> str:
        if self.message:
            return f"{self.code}: {self.message}"
        return self.code


class InvalidInput(AnalysisError):
    """Bad or empty repository reference. Rejected before a job exists."""
    code = "invalid-reference"


class ProviderValidationError(AnalysisError):
    code = "provider-validation-failed"


class SourceFetchError(AnalysisError):
    """Source hosting API failure (metadata fetch, archive download)."""
    code = "source-fetch-failed"


class ConfigurationError(AnalysisError):
    code = "configuration-missing"

    def __init__(self, setting: str, message: Optional[str] = None):
        super().__init__(message or f"{setting} is not configured")
        self.setting = setting


class InsightStageError(AnalysisError):
    """Insight provider failure. Recovered by the basic-result fallback."""
    code = "insight-provider-failed"


class StorageError(AnalysisError):
    code = "storage-failure"


class CacheError(StorageError):
    pass


class JobCancelled(AnalysisError):
    code = "cancelled"

    def __init__(self, message: str = "Analysis cancelled by user"):
        super().__init__(message)
