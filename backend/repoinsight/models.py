from pydantic import BaseModel, Field
from typing import Literal, Optional, List, Dict, Any, Union
from datetime import datetime

ProgressStatus = Literal["pending", "analyzing", "completed", "failed"]
AnalysisType = Literal["full", "structure", "quality", "documentation"]
ResultStatus = Literal["completed", "degraded"]

TERMINAL_STATUSES = ("completed", "failed")
ANALYSIS_TYPES = ("full", "structure", "quality", "documentation")

# Marker stored in place of insights when the insight stage failed
INSIGHTS_UNAVAILABLE = "unavailable"
# Marker for modes that never call the language model
INSIGHTS_SKIPPED = "skipped"


class Stage:
    """Machine-readable stage labels. Callers localize these."""
    INITIALIZING = "initializing"
    VALIDATING = "validating"
    CACHED = "cached"
    METADATA = "metadata"
    CLONING = "cloning"
    INSIGHT_ANALYSIS = "insight-analysis"
    FALLBACK = "fallback"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---- Progress ----
class ProgressRecord(BaseModel):
    id: str = Field(..., description="Job identity derived from the repository URL")
    repositoryUrl: str
    status: ProgressStatus = "pending"
    progress: int = Field(0, ge=0, le=100, description="Percent complete")
    stage: str = Stage.INITIALIZING
    details: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---- Repository facts ----
class LastCommit(BaseModel):
    sha: str = ""
    message: str = ""
    date: Optional[datetime] = None


class RepositoryMetadata(BaseModel):
    name: str
    owner: str
    description: str = ""
    stars: int = 0
    language: str = "Unknown"
    topics: List[str] = Field(default_factory=list)
    license: Optional[str] = None
    size: int = 0
    defaultBranch: str = "main"
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    lastCommit: Optional[LastCommit] = None


class FileNode(BaseModel):
    name: str
    type: Literal["file", "directory"]
    path: str
    size: int = 0
    language: Optional[str] = None
    children: Optional[List["FileNode"]] = None


FileNode.model_rebuild()


class KeyFile(BaseModel):
    path: str
    type: Literal["package", "config", "readme", "main"]
    description: str


class RepositoryStructure(BaseModel):
    root: FileNode
    totalFiles: int = 0
    totalDirectories: int = 0
    languages: Dict[str, int] = Field(default_factory=dict)
    keyFiles: List[KeyFile] = Field(default_factory=list)


class DependencyInfo(BaseModel):
    name: str
    version: str
    type: Literal["production", "development", "peer"] = "production"
    description: Optional[str] = None


class FileComplexity(BaseModel):
    path: str
    complexity: int
    lines: int


class ComplexitySummary(BaseModel):
    average: float = 0.0
    max: int = 0
    files: List[FileComplexity] = Field(default_factory=list)


class SecurityIssue(BaseModel):
    type: str
    severity: Literal["low", "medium", "high"]
    file: str
    line: Optional[int] = None
    description: str


class CodeQualityMetrics(BaseModel):
    complexity: ComplexitySummary = Field(default_factory=ComplexitySummary)
    duplication: int = 0
    testCoverage: Optional[float] = None
    maintainability: int = 0
    securityIssues: List[SecurityIssue] = Field(default_factory=list)


class InsightReport(BaseModel):
    """Output of an insight provider run."""
    structure: RepositoryStructure
    dependencies: List[DependencyInfo] = Field(default_factory=list)
    codeQuality: CodeQualityMetrics = Field(default_factory=CodeQualityMetrics)
    insights: Union[Dict[str, Any], str]


class AnalysisResult(BaseModel):
    repositoryUrl: str
    analysisType: AnalysisType = "full"
    metadata: RepositoryMetadata
    structure: RepositoryStructure
    dependencies: List[DependencyInfo] = Field(default_factory=list)
    codeQuality: Optional[CodeQualityMetrics] = None
    insights: Union[Dict[str, Any], str]
    status: ResultStatus = "completed"

    @property
    def is_degraded(self) -> bool:
        return self.status == "degraded" or self.insights == INSIGHTS_UNAVAILABLE


class StoredAnalysisResult(AnalysisResult):
    id: int
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


# ---- API payloads ----
class AnalysisRequest(BaseModel):
    repositoryUrl: str = ""
    analysisType: str = "full"


class CancelRequest(BaseModel):
    repositoryUrl: str = ""


class SubmitResponse(BaseModel):
    id: str = Field(..., description="Job identity used for progress polling")
    repositoryUrl: str
    status: ProgressStatus


class ResultSummary(BaseModel):
    id: int
    repositoryUrl: str
    status: str
    analysisType: str
    updatedAt: Optional[datetime] = None
