from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from .contracts import MANIFEST_NAME, ProjectRecord, dump_project, load_project
from .errors import ValidationError
from .ledger import Category, ResourceLedger
from .settings import Settings
from .templates import write_rendered

logger = logging.getLogger(__name__)

SERVER_NAME_RE = re.compile(r"^\s*server_name\s+([^;]+);", re.MULTILINE)


def read_server_name(config_text: str) -> Optional[str]:
    match = SERVER_NAME_RE.search(config_text)
    if not match:
        return None
    names = match.group(1).split()
    return names[0] if names else None


class ProjectRegistry:
    def __init__(self, settings: Settings, ledger: ResourceLedger) -> None:
        self._settings = settings
        self._ledger = ledger

    def load(self) -> Dict[str, ProjectRecord]:
        records: Dict[str, ProjectRecord] = {}
        projects_dir = self._settings.projects_dir
        if not projects_dir.exists():
            return records

        for manifest in sorted(projects_dir.glob(f"*/{MANIFEST_NAME}")):
            try:
                record = load_project(manifest.parent)
            except (OSError, ValueError, json.JSONDecodeError) as e:
                # Skip invalid manifests, but keep scanning.
                logger.warning("Skipping unreadable manifest %s: %s", manifest, e)
                continue
            records[record.name] = record
        return records

    def list_projects(self) -> List[ProjectRecord]:
        return sorted(self.load().values(), key=lambda r: r.name)

    def exists(self, name: str) -> bool:
        return self._settings.project_dir(name).is_dir()

    def get(self, name: str) -> ProjectRecord:
        if not name:
            raise ValidationError("Project name is required")

        project_dir = self._settings.project_dir(name)
        if not project_dir.is_dir():
            raise ValidationError(
                f"Project '{name}' does not exist",
                {"hint": "Create it first: hpanel create"},
            )

        record: Optional[ProjectRecord] = None
        if (project_dir / MANIFEST_NAME).exists():
            try:
                record = load_project(project_dir)
            except (OSError, ValueError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable manifest for %s: %s", name, e)

        if record is None:
            # Projects created by older tooling carry no manifest.
            username = self._ledger.username(name)
            if username is None:
                raise ValidationError(f"Could not find user for project '{name}'")
            uid = self._ledger.lookup(name, Category.OS_USER) or 0
            port = self._ledger.lookup(name, Category.PORT)
            domain = ""
            route = self._scan_route_config(name)
            if route is not None:
                domain = read_server_name(route.read_text(encoding="utf-8")) or ""
            record = ProjectRecord(
                name=name,
                domain=domain,
                backend="unknown",
                database="none",
                username=username,
                uid=uid,
                port=port,
            )
        return record

    def save(self, record: ProjectRecord) -> Path:
        path = self._settings.project_dir(record.name) / MANIFEST_NAME
        write_rendered(path, dump_project(record), mode=0o644)
        return path

    def _scan_route_config(self, name: str) -> Optional[Path]:
        enabled = self._settings.sites_enabled_dir
        if not enabled.is_dir():
            return None
        for conf in sorted(enabled.glob("*.conf")):
            try:
                if name in conf.read_text(encoding="utf-8"):
                    return conf
            except OSError:
                continue
        return None

    def route_config(self, record: ProjectRecord) -> Optional[Path]:
        if record.domain:
            candidate = self._settings.sites_available_dir / f"{record.domain}.conf"
            if candidate.exists():
                return candidate
            candidate = self._settings.sites_enabled_dir / f"{record.domain}.conf"
            if candidate.exists():
                return candidate
        return self._scan_route_config(record.name)
