from __future__ import annotations
from pathlib import Path
import json
import os
import tempfile
from typing import Any, Optional
from dataclasses import is_dataclass, asdict
from datetime import datetime, date
from enum import Enum


def _safe_default(o: Any):
    """JSON serializer for Pydantic models, dataclasses, Paths, Enums, sets, and datetimes."""
    if hasattr(o, "model_dump") and callable(getattr(o, "model_dump")):
        return o.model_dump(mode="json")
    if is_dataclass(o):
        return asdict(o)
    if isinstance(o, Path):
        return str(o)
    if isinstance(o, (set, frozenset)):
        return sorted(o)
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Enum):
        return o.value
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")


def dumps(obj: Any, **kwargs) -> str:
    return json.dumps(obj, ensure_ascii=False, default=_safe_default, **kwargs)


def write_json_atomic(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = dumps(obj, indent=2)
    dirpath = str(path.parent)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=dirpath, prefix=".tmp_", suffix=".json", encoding="utf-8") as tmp:
        tmp.write(data)
        tmp_path = Path(tmp.name)
    os.replace(tmp_path, path)


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file; None when it is missing or unreadable."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
