from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .contracts import ProjectRecord
from .detector import BackendKind
from .errors import BuildError, CommandError, ReconcileError
from .overrides import Overrides, ProjectOverride
from .releases import Release, ReleaseManager
from .services import ServiceAdapter
from .settings import Settings

logger = logging.getLogger(__name__)

FPM_SOCKET_RE = re.compile(r"php([0-9]+\.[0-9]+)-fpm\.sock")

COMPOSER_INSTALL = ("composer", "install", "--no-dev", "--optimize-autoloader", "--no-interaction", "--prefer-dist")
ARTISAN_CACHES = (
    ("php", "artisan", "config:cache"),
    ("php", "artisan", "route:cache"),
    ("php", "artisan", "view:cache"),
)
ARTISAN_MIGRATE = ("php", "artisan", "migrate", "--force")
NPM_INSTALL_PRODUCTION = ("npm", "install", "--production", "--no-audit", "--no-fund")
NPM_INSTALL_ALL = ("npm", "install", "--no-audit", "--no-fund")
NPM_BUILD = ("npm", "run", "build")


@dataclass
class DeployResult:
    release: Release
    kind: BackendKind
    serving_root: Path
    migrated: bool = False
    pruned: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        settings: Settings,
        services: ServiceAdapter,
        releases: ReleaseManager,
        overrides: Overrides,
        confirm: Callable[[str], bool],
        route_config: Callable[[ProjectRecord], Optional[Path]] = lambda _: None,
    ) -> None:
        self._settings = settings
        self._services = services
        self._releases = releases
        self._overrides = overrides
        self._confirm = confirm
        self._route_config = route_config

    def _build_step(self, release: Release, project: ProjectRecord, argv: Sequence[str]) -> None:
        logger.info("Running: %s", " ".join(argv))
        try:
            self._services.run(argv, cwd=release.path, user=project.username)
        except CommandError as e:
            raise BuildError(
                f"{' '.join(argv)} failed; release left at {release.path} for inspection",
                release_path=release.path,
                details={"error": e.message},
            )

    def _link_shared(self, release: Release, project: ProjectRecord, kind: BackendKind) -> None:
        try:
            self._releases.link_shared(release, project, kind)
        except (OSError, CommandError) as e:
            raise BuildError(
                f"Linking shared state failed; release left at {release.path} for inspection",
                release_path=release.path,
                details={"error": str(e)},
            )

    def php_version(self, project: ProjectRecord, override: ProjectOverride) -> str:
        if override.php_version:
            return override.php_version
        if project.php_version:
            return project.php_version
        route = self._route_config(project)
        if route is not None and route.exists():
            match = FPM_SOCKET_RE.search(route.read_text(encoding="utf-8"))
            if match:
                return match.group(1)
        return self._settings.default_php_version

    def _should_migrate(self, override: ProjectOverride, migrate: Optional[bool]) -> bool:
        if migrate is not None:
            return migrate
        if override.migrations == "always":
            return True
        if override.migrations == "never":
            return False
        return self._confirm("Run database migrations?")

    def deploy(
        self,
        project: ProjectRecord,
        repo: str,
        ref: Optional[str],
        kind: BackendKind,
        migrate: Optional[bool] = None,
    ) -> DeployResult:
        """Stage, build and activate a new release of ``project``.

        Any failure before cutover raises and leaves ``current`` untouched and
        the half-built release on disk.
        """
        override = self._overrides.for_project(project.name)
        if kind is BackendKind.UNKNOWN:
            logger.warning("Could not detect backend type, assuming laravel")

        release = self._releases.stage(project, repo, ref)
        result = DeployResult(release=release, kind=kind, serving_root=release.path)

        if kind in (BackendKind.LARAVEL, BackendKind.UNKNOWN):
            logger.info("Installing Laravel dependencies (Composer)...")
            self._build_step(release, project, COMPOSER_INSTALL)
            self._link_shared(release, project, kind)
            for argv in ARTISAN_CACHES:
                self._build_step(release, project, argv)
            if self._should_migrate(override, migrate):
                self._build_step(release, project, ARTISAN_MIGRATE)
                result.migrated = True
            else:
                logger.warning("Skipping migrations")
        elif kind is BackendKind.NODE:
            logger.info("Installing Node.js dependencies (npm)...")
            self._build_step(release, project, NPM_INSTALL_PRODUCTION)
            self._link_shared(release, project, kind)
        elif kind is BackendKind.STATIC_SPA:
            logger.info("Building static application...")
            self._build_step(release, project, NPM_INSTALL_ALL)
            self._build_step(release, project, NPM_BUILD)
            result.serving_root = self._releases.serving_root(release, kind)

        self._releases.cutover(project.name, result.serving_root)

        self._restart(project, kind, override, result)

        keep = override.keep_releases if override.keep_releases is not None else self._settings.keep_releases
        result.pruned = self._releases.prune(project.name, keep)
        return result

    def _restart(
        self,
        project: ProjectRecord,
        kind: BackendKind,
        override: ProjectOverride,
        result: DeployResult,
    ) -> None:
        if kind in (BackendKind.LARAVEL, BackendKind.UNKNOWN):
            service = f"php{self.php_version(project, override)}-fpm"
            try:
                self._services.reload(service)
                logger.info("%s reloaded", service)
            except CommandError as e:
                # non-essential: reported, not fatal
                warning = f"Could not reload {service}: {e.message}"
                logger.warning(warning)
                result.warnings.append(warning)
        elif kind is BackendKind.NODE:
            current = self._releases.current_link(project.name)
            try:
                self._services.restart(project.name, cwd=current, user=project.username)
            except CommandError as e:
                raise ReconcileError(
                    f"Node.js process '{project.name}' failed to restart: {e.message}",
                    essential=True,
                )
            logger.info("Node.js process restarted")
        else:
            logger.info("No service restart needed (static files)")
