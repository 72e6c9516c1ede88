from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

MIGRATION_POLICIES = {"ask", "always", "never"}


@dataclass(frozen=True)
class ProjectOverride:
    keep_releases: Optional[int] = None
    php_version: Optional[str] = None
    migrations: str = "ask"
    git_repo: Optional[str] = None


@dataclass(frozen=True)
class Overrides:
    projects: Mapping[str, ProjectOverride]

    def for_project(self, name: str) -> ProjectOverride:
        return self.projects.get(name) or ProjectOverride()


def load_overrides(path: Optional[Path]) -> Overrides:
    if not path:
        return Overrides(projects={})
    if not path.exists():
        return Overrides(projects={})

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Overrides(projects={})

    project_overrides: Dict[str, ProjectOverride] = {}
    projects = raw.get("projects")
    if isinstance(projects, dict):
        for name, value in projects.items():
            if not isinstance(name, str) or not isinstance(value, dict):
                continue

            keep = value.get("keep_releases")
            keep_releases = keep if isinstance(keep, int) and not isinstance(keep, bool) else None

            php = value.get("php_version")
            php_version = str(php) if isinstance(php, (str, int, float)) and str(php) else None

            migrations = str(value.get("migrations", "ask")).lower()
            if migrations not in MIGRATION_POLICIES:
                migrations = "ask"

            repo = value.get("git_repo")
            git_repo = repo if isinstance(repo, str) and repo else None

            project_overrides[name] = ProjectOverride(
                keep_releases=keep_releases,
                php_version=php_version,
                migrations=migrations,
                git_repo=git_repo,
            )

    return Overrides(projects=project_overrides)
