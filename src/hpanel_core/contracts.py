from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

MANIFEST_NAME = "project.json"


@dataclass(frozen=True)
class ProjectRecord:
    name: str
    domain: str
    backend: str
    database: str
    username: str
    uid: int
    php_version: Optional[str] = None
    port: Optional[int] = None
    git_repo: Optional[str] = None
    created_at: Optional[str] = None


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: Any) -> Optional[str]:
    text = _as_str(value).strip()
    return text or None


def _as_optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_project(data: Mapping[str, Any]) -> ProjectRecord:
    name = _as_str(data.get("name")).strip()
    domain = _as_str(data.get("domain")).strip()
    backend = _as_str(data.get("backend")).strip().lower()

    if not name or not domain or not backend:
        raise ValueError("Invalid project manifest: missing required fields (name/domain/backend)")

    username = _as_str(data.get("username")).strip() or f"{name}_user"

    return ProjectRecord(
        name=name,
        domain=domain,
        backend=backend,
        database=_as_str(data.get("database"), default="none").strip().lower() or "none",
        username=username,
        uid=_as_optional_int(data.get("uid")) or 0,
        php_version=_as_optional_str(data.get("php_version")),
        port=_as_optional_int(data.get("port")),
        git_repo=_as_optional_str(data.get("git_repo")),
        created_at=_as_optional_str(data.get("created_at")),
    )


def load_project(project_dir: Path) -> ProjectRecord:
    data = json.loads((project_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Project manifest at {project_dir} must be an object")
    return parse_project(data)


def dump_project(record: ProjectRecord) -> str:
    return json.dumps(asdict(record), indent=2, sort_keys=True) + "\n"
