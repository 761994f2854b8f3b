"""
Local static analysis over a materialized repository: file tree, dependency
manifests and a heuristic code-quality pass. No network access.
"""
from __future__ import annotations
import json
import logging
import re
from collections import Counter
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .models import (
    CodeQualityMetrics,
    ComplexitySummary,
    DependencyInfo,
    FileComplexity,
    FileNode,
    KeyFile,
    RepositoryStructure,
    SecurityIssue,
)

logger = logging.getLogger(__name__)

SKIPPED_NAMES = {"node_modules", "dist", "build", ".next", ".git"}

LANGUAGE_MAP: Dict[str, str] = {
    "js": "JavaScript", "jsx": "JavaScript",
    "ts": "TypeScript", "tsx": "TypeScript",
    "py": "Python", "java": "Java",
    "cpp": "C++", "c": "C", "cs": "C#",
    "php": "PHP", "rb": "Ruby", "go": "Go", "rs": "Rust",
    "swift": "Swift", "kt": "Kotlin", "scala": "Scala",
    "html": "HTML", "css": "CSS", "scss": "SCSS", "sass": "Sass", "less": "Less",
    "json": "JSON", "xml": "XML", "yaml": "YAML", "yml": "YAML", "toml": "TOML",
    "md": "Markdown", "sql": "SQL", "sh": "Shell", "bash": "Bash",
    "dockerfile": "Dockerfile", "vue": "Vue", "svelte": "Svelte",
}

CODE_EXTENSIONS = {".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".cpp", ".c", ".cs", ".go", ".rs"}

MAX_FILE_COMPLEXITY = 200
TOP_COMPLEX_FILES = 10
# Lines this short are mostly braces and keywords; ignored for duplication
MIN_DUPLICATE_LINE_LENGTH = 10
CONSOLE_LOG_LIMIT = 5

_JS_FUNCTION_RE = re.compile(r"function\s+|=>|\w+\s*\([^)]*\)\s*\{")
_PY_FUNCTION_RE = re.compile(r"def\s+\w+\s*\(")
_C_FUNCTION_RE = re.compile(r"\w+\s+\w+\s*\([^)]*\)\s*\{")
_SECRET_PATTERNS = [
    re.compile(r"password\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"secret\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"api_?key\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"token\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
]
_POM_DEPENDENCY_RE = re.compile(r"<dependency>([\s\S]*?)</dependency>")


def language_for(filename: str) -> str:
    """Map a file name to a language label by extension, 'Other' when unknown."""
    name = filename.lower()
    ext = name.rsplit(".", 1)[-1] if "." in name else name
    return LANGUAGE_MAP.get(ext, "Other")


def _skip(name: str) -> bool:
    return name.startswith(".") or name in SKIPPED_NAMES


def _iter_entries(directory: Path) -> List[Path]:
    try:
        return sorted(p for p in directory.iterdir() if not _skip(p.name))
    except OSError as e:
        logger.warning(f"Cannot read directory {directory}: {e}")
        return []


# ---- structure ----
def _build_tree(path: Path, root: Path) -> FileNode:
    rel = path.relative_to(root).as_posix() if path != root else "."
    node = FileNode(name=path.name, type="directory", path=rel, size=0)
    children: List[FileNode] = []
    for entry in _iter_entries(path):
        if entry.is_dir():
            children.append(_build_tree(entry, root))
        elif entry.is_file():
            children.append(FileNode(
                name=entry.name,
                type="file",
                path=entry.relative_to(root).as_posix(),
                size=entry.stat().st_size,
                language=language_for(entry.name),
            ))
    if children:
        node.children = children
    return node


def _walk(node: FileNode) -> Iterator[FileNode]:
    yield node
    for child in node.children or []:
        yield from _walk(child)


def _key_file(node: FileNode) -> Optional[KeyFile]:
    name = node.name.lower()
    if name == "package.json":
        return KeyFile(path=node.path, type="package", description="Project dependency manifest")
    if name in ("requirements.txt", "pyproject.toml", "pom.xml"):
        return KeyFile(path=node.path, type="package", description="Dependency manifest")
    if name in ("readme.md", "readme"):
        return KeyFile(path=node.path, type="readme", description="Project readme")
    if name in ("tsconfig.json", "jsconfig.json"):
        return KeyFile(path=node.path, type="config", description="TypeScript/JavaScript configuration")
    if name == "dockerfile":
        return KeyFile(path=node.path, type="config", description="Docker configuration")
    if name in ("index.ts", "index.js", "main.ts", "main.js", "main.py", "__main__.py"):
        return KeyFile(path=node.path, type="main", description="Entry point")
    return None


def analyze_structure(repo_path: Path) -> RepositoryStructure:
    repo_path = Path(repo_path)
    root = _build_tree(repo_path, repo_path)

    total_files = 0
    total_dirs = 0
    languages: Counter = Counter()
    key_files: List[KeyFile] = []
    for node in _walk(root):
        if node.type == "directory":
            total_dirs += 1
            continue
        total_files += 1
        if node.language and node.language != "Other":
            languages[node.language] += 1
        kf = _key_file(node)
        if kf:
            key_files.append(kf)

    return RepositoryStructure(
        root=root,
        totalFiles=total_files,
        totalDirectories=total_dirs,
        languages=dict(languages),
        keyFiles=key_files,
    )


# ---- dependencies ----
def _read_text(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return None


def _package_json_deps(text: str) -> List[DependencyInfo]:
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning("package.json is not valid JSON")
        return []
    deps: List[DependencyInfo] = []
    for section, dep_type in (("dependencies", "production"),
                              ("devDependencies", "development"),
                              ("peerDependencies", "peer")):
        for name, version in (data.get(section) or {}).items():
            deps.append(DependencyInfo(name=name, version=str(version), type=dep_type))
    return deps


def _requirements_deps(text: str) -> List[DependencyInfo]:
    deps: List[DependencyInfo] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("-"):
            continue
        name, _, version = line.partition("==")
        if name.strip():
            deps.append(DependencyInfo(name=name.strip(), version=version.strip() or "latest"))
    return deps


def _pom_deps(text: str) -> List[DependencyInfo]:
    deps: List[DependencyInfo] = []
    for block in _POM_DEPENDENCY_RE.findall(text):
        artifact = re.search(r"<artifactId>(.*?)</artifactId>", block)
        if not artifact:
            continue
        version = re.search(r"<version>(.*?)</version>", block)
        deps.append(DependencyInfo(name=artifact.group(1), version=version.group(1) if version else "latest"))
    return deps


def analyze_dependencies(repo_path: Path) -> List[DependencyInfo]:
    """Dependencies declared in top-level package.json, requirements.txt and pom.xml."""
    repo_path = Path(repo_path)
    deps: List[DependencyInfo] = []
    for filename, parser in (("package.json", _package_json_deps),
                             ("requirements.txt", _requirements_deps),
                             ("pom.xml", _pom_deps)):
        text = _read_text(repo_path / filename)
        if text is not None:
            deps.extend(parser(text))
    return deps


# ---- code quality ----
def _iter_code_files(directory: Path) -> Iterator[Path]:
    for entry in _iter_entries(directory):
        if entry.is_dir():
            yield from _iter_code_files(entry)
        elif entry.is_file() and entry.suffix.lower() in CODE_EXTENSIONS:
            yield entry


def file_complexity(content: str, ext: str) -> int:
    """Heuristic: 1 + functions/2 + max nesting/3, capped."""
    if ext in (".js", ".ts", ".jsx", ".tsx"):
        functions = len(_JS_FUNCTION_RE.findall(content))
    elif ext == ".py":
        functions = len(_PY_FUNCTION_RE.findall(content))
    elif ext in (".java", ".cpp", ".c"):
        functions = len(_C_FUNCTION_RE.findall(content))
    else:
        functions = 0

    depth = max_depth = 0
    for line in content.split("\n"):
        if "{" in line or "(" in line:
            depth += 1
            max_depth = max(max_depth, depth)
        if "}" in line or ")" in line:
            depth = max(0, depth - 1)

    return min(1 + functions // 2 + max_depth // 3, MAX_FILE_COMPLEXITY)


def duplication_percentage(contents: List[str]) -> int:
    counts: Counter = Counter()
    total = 0
    for content in contents:
        for line in content.split("\n"):
            stripped = line.strip()
            if len(stripped) > MIN_DUPLICATE_LINE_LENGTH:
                total += 1
                counts[stripped] += 1
    if total == 0:
        return 0
    duplicated = sum(c for c in counts.values() if c > 1)
    return round(duplicated / total * 100)


def security_issues(content: str, rel_path: str) -> List[SecurityIssue]:
    issues: List[SecurityIssue] = []
    for pattern in _SECRET_PATTERNS:
        if pattern.search(content):
            issues.append(SecurityIssue(
                type="hardcoded_secret", severity="high", file=rel_path,
                description="Possible hard-coded credential",
            ))
    if content.count("console.log") > CONSOLE_LOG_LIMIT:
        issues.append(SecurityIssue(
            type="debug_code", severity="medium", file=rel_path,
            description="Excessive console.log statements",
        ))
    if "eval(" in content:
        issues.append(SecurityIssue(
            type="unsafe_eval", severity="high", file=rel_path,
            description="Use of eval",
        ))
    return issues


def analyze_code_quality(repo_path: Path) -> CodeQualityMetrics:
    repo_path = Path(repo_path)
    files: List[FileComplexity] = []
    contents: List[str] = []
    issues: List[SecurityIssue] = []

    for path in _iter_code_files(repo_path):
        try:
            content = path.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logger.warning(f"Cannot read {path}: {e}")
            continue
        rel = path.relative_to(repo_path).as_posix()
        contents.append(content)
        files.append(FileComplexity(
            path=rel,
            complexity=file_complexity(content, path.suffix.lower()),
            lines=len(content.split("\n")),
        ))
        issues.extend(security_issues(content, rel))

    average = sum(f.complexity for f in files) / len(files) if files else 0.0
    duplication = duplication_percentage(contents)
    maintainability = max(0.0, 100 - average * 5 - duplication)
    top: List[FileComplexity] = sorted(files, key=lambda f: f.complexity, reverse=True)[:TOP_COMPLEX_FILES]

    return CodeQualityMetrics(
        complexity=ComplexitySummary(
            average=round(average, 1),
            max=max((f.complexity for f in files), default=0),
            files=top,
        ),
        duplication=duplication,
        maintainability=round(maintainability),
        securityIssues=issues,
    )


def summarize_for_prompt(structure: RepositoryStructure, deps: List[DependencyInfo],
                         quality: Optional[CodeQualityMetrics], limit: int) -> Tuple[List[str], List[str]]:
    """Key file paths and dependency names trimmed to ``limit`` for the insight prompt."""
    paths = [kf.path for kf in structure.keyFiles]
    if quality:
        paths.extend(f.path for f in quality.complexity.files if f.path not in paths)
    names = [f"{d.name}@{d.version}" for d in deps]
    return paths[:limit], names[: limit * 4]
