from __future__ import annotations
import json
from typing import Any, Dict, List

from repoinsight.models import RepositoryMetadata, RepositoryStructure

SYSTEM_INSIGHTS = (
    "You are a senior software architect reviewing an unfamiliar repository.\n"
    "Given repository metadata, a language breakdown, key files, declared dependencies "
    "and heuristic quality numbers, describe the architecture and give actionable advice. "
    "Do not recite source code; cite file paths as evidence.\n\n"
    "Return JSON with these exact fields: architecture, keyPatterns, potentialIssues, "
    "recommendations, technologyStack, codeQuality."
)

INSIGHT_FIELDS = (
    "architecture",
    "keyPatterns",
    "potentialIssues",
    "recommendations",
    "technologyStack",
    "codeQuality",
)

INSIGHT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "architecture": {"type": "string"},
        "keyPatterns": {"type": "array", "items": {"type": "string"}},
        "potentialIssues": {"type": "array", "items": {"type": "string"}},
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "technologyStack": {"type": "array", "items": {"type": "string"}},
        "codeQuality": {"type": "string"},
    },
    "required": list(INSIGHT_FIELDS),
    "additionalProperties": False,
}

MODE_FOCUS = {
    "full": "Cover architecture, patterns, risks and recommendations evenly.",
    "documentation": "Focus on what a newcomer needs to read first and how the modules fit together.",
}


def build_insight_messages(
    metadata: RepositoryMetadata,
    structure: RepositoryStructure,
    key_paths: List[str],
    dependency_names: List[str],
    quality_summary: Dict[str, Any],
    analysis_type: str = "full",
) -> List[Dict[str, str]]:
    context = {
        "repository": f"{metadata.owner}/{metadata.name}",
        "description": metadata.description,
        "primaryLanguage": metadata.language,
        "topics": metadata.topics,
        "totals": {"files": structure.totalFiles, "directories": structure.totalDirectories},
        "languages": structure.languages,
        "keyFiles": key_paths,
        "dependencies": dependency_names,
        "quality": quality_summary,
    }
    user = (
        f"{MODE_FOCUS.get(analysis_type, MODE_FOCUS['full'])}\n\n"
        f"Repository context (JSON):\n{json.dumps(context, ensure_ascii=False, indent=2)}\n\n"
        f"Schema:\n{json.dumps(INSIGHT_SCHEMA)}\n"
        "Only output JSON."
    )
    return [
        {"role": "system", "content": SYSTEM_INSIGHTS},
        {"role": "user", "content": user},
    ]
