"""Classify a deployed project tree into one backend kind.

Detection is an ordered list of pure predicates over a read-only view of the
tree; the first predicate that matches decides. Trees may carry more than one
weak signal (a Laravel app usually ships ``package.json`` too), which is why
order matters.
"""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple


class BackendKind(str, enum.Enum):
    LARAVEL = "laravel"
    NODE = "node"
    STATIC_SPA = "react"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "BackendKind":
        for kind in cls:
            if kind.value == (name or "").strip().lower():
                return kind
        return cls.UNKNOWN


@dataclass(frozen=True)
class ProjectTree:
    root: Path
    shared: Optional[Path] = None

    def is_file(self, rel: str) -> bool:
        return (self.root / rel).is_file()

    def is_dir(self, rel: str) -> bool:
        return (self.root / rel).is_dir()

    def read_text(self, rel: str) -> Optional[str]:
        try:
            return (self.root / rel).read_text(encoding="utf-8", errors="ignore")
        except OSError:
            return None

    def read_shared_text(self, rel: str) -> Optional[str]:
        if self.shared is None:
            return None
        try:
            return (self.shared / rel).read_text(encoding="utf-8", errors="ignore")
        except OSError:
            return None


def _has_cli_entry_script(tree: ProjectTree) -> bool:
    return tree.is_file("artisan")


def has_start_command(tree: ProjectTree) -> bool:
    raw = tree.read_text("package.json")
    if raw is None:
        return False
    try:
        manifest = json.loads(raw)
    except json.JSONDecodeError:
        return '"start"' in raw
    scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("start"))


def _has_static_bundle(tree: ProjectTree) -> bool:
    return (
        tree.is_dir("build")
        or tree.is_dir("dist")
        or tree.is_file("index.html")
        or tree.is_file("public/index.html")
    )


def _shared_env_has_framework_marker(tree: ProjectTree) -> bool:
    env = tree.read_shared_text(".env")
    return env is not None and "APP_NAME" in env


DETECTORS: List[Tuple[BackendKind, Callable[[ProjectTree], bool]]] = [
    (BackendKind.LARAVEL, _has_cli_entry_script),
    (BackendKind.NODE, has_start_command),
    (BackendKind.STATIC_SPA, _has_static_bundle),
    (BackendKind.LARAVEL, _shared_env_has_framework_marker),
]


def detect(tree: ProjectTree) -> BackendKind:
    for kind, predicate in DETECTORS:
        if predicate(tree):
            return kind
    return BackendKind.UNKNOWN
