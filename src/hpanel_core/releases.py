"""Immutable release directories and the atomic ``current`` pointer.

Per project::

    <projects_dir>/<name>/releases/<release>/   one directory per deploy
    <projects_dir>/<name>/current               symlink to a release (or its build output)
    <projects_dir>/<name>/shared/               state that outlives releases

The pointer is only ever changed by creating a temporary symlink beside it and
``os.replace``-ing it over ``current``; observers see the old target or the new
one, never a missing link.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from .contracts import ProjectRecord
from .detector import BackendKind, ProjectTree, detect
from .errors import BuildError, CommandError, CutoverError, ValidationError
from .services import ServiceAdapter
from .settings import Settings

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"^v?[0-9]")
REVISION_FILE = "REVISION"
SECRETS_FILE = ".env"
STORAGE_SKELETON = (
    "app",
    "framework/cache",
    "framework/sessions",
    "framework/views",
    "logs",
)
BUILD_OUTPUT_DIRS = ("build", "dist")


@dataclass(frozen=True)
class Release:
    name: str
    path: Path
    created_at: float
    source_ref: Optional[str] = None


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def replace_symlink(link: Path, target: Path) -> None:
    tmp = link.with_name(f".{link.name}.tmp-{os.getpid()}")
    if tmp.exists() or tmp.is_symlink():
        tmp.unlink()
    tmp.symlink_to(target)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


class ReleaseManager:
    def __init__(
        self,
        settings: Settings,
        services: ServiceAdapter,
        stamp: Callable[[], str] = _utc_stamp,
    ) -> None:
        self._settings = settings
        self._services = services
        self._stamp = stamp

    def project_dir(self, project: str) -> Path:
        return self._settings.project_dir(project)

    def releases_dir(self, project: str) -> Path:
        return self.project_dir(project) / "releases"

    def shared_dir(self, project: str) -> Path:
        return self.project_dir(project) / "shared"

    def current_link(self, project: str) -> Path:
        return self.project_dir(project) / "current"

    def release_name(self, ref: Optional[str]) -> str:
        if ref and TAG_RE.match(ref):
            return ref.replace("/", "-")
        return self._stamp()

    def _read_release(self, path: Path) -> Release:
        source_ref: Optional[str] = None
        revision = path / REVISION_FILE
        if revision.is_file():
            source_ref = revision.read_text(encoding="utf-8").strip() or None
        return Release(name=path.name, path=path, created_at=path.stat().st_mtime, source_ref=source_ref)

    def stage(self, project: ProjectRecord, repo: str, ref: Optional[str] = None) -> Release:
        releases_dir = self.releases_dir(project.name)
        base = self.release_name(ref)
        name = base
        suffix = 0
        try:
            releases_dir.mkdir(parents=True, exist_ok=True)
            while True:
                path = releases_dir / name
                try:
                    path.mkdir()
                    break
                except FileExistsError:
                    suffix += 1
                    name = f"{base}-{suffix}"
        except OSError as e:
            raise BuildError(f"Cannot create release directory in {releases_dir}: {e}")

        logger.info("Creating release: %s", name)
        try:
            self._services.clone(repo, path, ref)
        except CommandError as e:
            raise BuildError(f"Clone of {repo} failed: {e.message}", release_path=path)

        source_ref = self._services.head_revision(path) or ref or ""
        try:
            (path / REVISION_FILE).write_text(source_ref + "\n", encoding="utf-8")
        except OSError as e:
            raise BuildError(f"Cannot record revision in {path}: {e}", release_path=path)

        try:
            self._services.chown(path, project.username)
        except CommandError as e:
            raise BuildError(f"Cannot set ownership on {path}: {e.message}", release_path=path)

        logger.info("Code cloned into %s", path)
        return Release(name=name, path=path, created_at=time.time(), source_ref=source_ref or None)

    def _ensure_shared_dir(self, path: Path, owner: str) -> None:
        if path.is_dir():
            return
        path.mkdir(parents=True, exist_ok=True)
        self._services.chown(path, owner)

    def _link_into_release(self, release_path: Path, rel: str, shared_path: Path) -> None:
        dest = release_path / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.is_dir() and not dest.is_symlink():
            shutil.rmtree(dest)
        replace_symlink(dest, shared_path)

    def link_shared(self, release: Release, project: ProjectRecord, kind: BackendKind) -> None:
        shared = self.shared_dir(project.name)
        logger.info("Linking shared files...")

        secrets = shared / SECRETS_FILE
        if secrets.exists():
            replace_symlink(release.path / SECRETS_FILE, secrets)
            logger.info("Linked %s", SECRETS_FILE)
        else:
            logger.warning("No shared %s found for %s", SECRETS_FILE, project.name)

        if kind not in (BackendKind.LARAVEL, BackendKind.UNKNOWN):
            return

        storage = shared / "storage"
        if not storage.is_dir():
            for sub in STORAGE_SKELETON:
                (storage / sub).mkdir(parents=True, exist_ok=True)
            self._services.chown(storage, project.username)
            logger.info("Created shared storage directory")
        self._link_into_release(release.path, "storage", storage)

        cache = shared / "bootstrap" / "cache"
        self._ensure_shared_dir(cache, project.username)
        self._link_into_release(release.path, "bootstrap/cache", cache)
        logger.info("Linked storage and bootstrap/cache")

    def serving_root(self, release: Release, kind: BackendKind) -> Path:
        if kind is BackendKind.STATIC_SPA:
            for sub in BUILD_OUTPUT_DIRS:
                if (release.path / sub).is_dir():
                    return release.path / sub
        return release.path

    def cutover(self, project: str, target: Path) -> None:
        releases_dir = self.releases_dir(project)
        if not target.is_dir():
            raise CutoverError(f"Release target does not exist: {target}")
        try:
            Path(os.path.normpath(target)).relative_to(os.path.normpath(releases_dir))
        except ValueError:
            raise CutoverError(f"Release target is outside {releases_dir}: {target}")

        link = self.current_link(project)
        try:
            replace_symlink(link, target)
        except OSError as e:
            raise CutoverError(f"Cannot switch {link} to {target}: {e}")
        logger.info("Switched %s to %s", project, target)

    def current_target(self, project: str) -> Optional[Path]:
        link = self.current_link(project)
        if not link.is_symlink():
            return None
        target = Path(os.readlink(link))
        if not target.is_absolute():
            target = link.parent / target
        return Path(os.path.normpath(target))

    def current_release(self, project: str) -> Optional[str]:
        target = self.current_target(project)
        if target is None:
            return None
        try:
            rel = target.relative_to(os.path.normpath(self.releases_dir(project)))
        except ValueError:
            return None
        return rel.parts[0] if rel.parts else None

    def list_releases(self, project: str) -> List[Release]:
        releases_dir = self.releases_dir(project)
        if not releases_dir.is_dir():
            return []
        releases = [
            self._read_release(p)
            for p in releases_dir.iterdir()
            if p.is_dir() and not p.is_symlink() and not p.name.startswith(".")
        ]
        return sorted(releases, key=lambda r: (r.created_at, r.name), reverse=True)

    def get(self, project: str, name: str) -> Release:
        path = self.releases_dir(project) / name
        if not name or "/" in name or not path.is_dir():
            raise ValidationError(f"Release '{name}' not found for project '{project}'")
        return self._read_release(path)

    def rollback(
        self,
        project: str,
        target: Optional[str] = None,
        kind: Optional[BackendKind] = None,
    ) -> Release:
        """Point ``current`` back at an earlier release; no build or health check.

        ``kind`` is the project's recorded backend. It decides whether the build
        output or the release root is served; the tree is only inspected when
        the kind is not known.
        """
        if target is None:
            releases = self.list_releases(project)
            active = self.current_release(project)
            names = [r.name for r in releases]
            if active not in names:
                raise ValidationError(f"No active release to roll back from for '{project}'")
            index = names.index(active)
            if index + 1 >= len(releases):
                raise ValidationError(f"No earlier release to roll back to for '{project}'")
            release = releases[index + 1]
        else:
            release = self.get(project, target)

        if kind is None or kind is BackendKind.UNKNOWN:
            kind = detect(ProjectTree(release.path))
        self.cutover(project, self.serving_root(release, kind))
        logger.info("Rolled back %s to release %s", project, release.name)
        return release

    def prune(self, project: str, keep: int) -> List[str]:
        keep = max(keep, 1)
        releases = self.list_releases(project)
        active = self.current_release(project)

        retained = [r.name for r in releases[:keep]]
        if active is not None and active not in retained and any(r.name == active for r in releases):
            retained = retained[: keep - 1] + [active]

        deleted: List[str] = []
        for release in releases:
            if release.name in retained:
                continue
            # The active release is never deleted, even if a cutover happened
            # after the listing.
            if release.name == self.current_release(project):
                logger.info("Keeping active release: %s", release.name)
                continue
            logger.info("Deleting old release: %s", release.name)
            try:
                shutil.rmtree(release.path)
            except OSError as e:
                logger.warning("Cannot delete release %s: %s", release.path, e)
                continue
            deleted.append(release.name)
        return deleted
