"""Background workers for deployed projects: supervisor programs and the Laravel scheduler."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .contracts import ProjectRecord
from .detector import ProjectTree, has_start_command
from .errors import CommandError, ExternalToolError, OperationCancelled, ValidationError
from .registry import ProjectRegistry
from .releases import ReleaseManager
from .services import ServiceAdapter
from .settings import Settings
from .templates import TemplateStore, render, write_rendered

logger = logging.getLogger(__name__)

WORKER_KINDS = ("queue", "node", "custom")
SCHEDULER_MARKER = "artisan schedule:run"


def scheduler_entry(project_root: Path) -> str:
    return f"* * * * * cd {project_root}/current && php artisan schedule:run >> /dev/null 2>&1"


def scheduler_comment(project_name: str) -> str:
    return f"# HPanel Laravel Scheduler for {project_name}"


def has_scheduler(crontab: str) -> bool:
    return any(SCHEDULER_MARKER in line for line in crontab.splitlines())


def merge_crontab(existing: str, project_name: str, project_root: Path) -> str:
    """Return ``existing`` with exactly one scheduler entry for the project at the end."""
    comment = scheduler_comment(project_name)
    kept = [
        line
        for line in existing.splitlines()
        if SCHEDULER_MARKER not in line and line.strip() != comment
    ]
    while kept and not kept[-1].strip():
        kept.pop()
    kept += [comment, scheduler_entry(project_root)]
    return "\n".join(kept) + "\n"


@dataclass
class SupervisorResult:
    program: str
    config_path: Path
    status: str = ""
    warnings: List[str] = field(default_factory=list)


class WorkerManager:
    def __init__(
        self,
        settings: Settings,
        services: ServiceAdapter,
        registry: ProjectRegistry,
        templates: TemplateStore,
        confirm: Callable[[str], bool],
    ) -> None:
        self._settings = settings
        self._services = services
        self._registry = registry
        self._templates = templates
        self._confirm = confirm
        self._releases = ReleaseManager(settings, services)

    def _deployed(self, project_name: str) -> ProjectRecord:
        record = self._registry.get(project_name)
        if self._releases.current_release(record.name) is None:
            raise ValidationError(
                f"Project '{record.name}' is not deployed yet",
                {"hint": f"Run: hpanel deploy {record.name}"},
            )
        return record

    def node_command(self, project_root: Path) -> str:
        if has_start_command(ProjectTree(project_root / "current")):
            return "npm start"
        return "node server.js"

    def setup_supervisor(
        self,
        project_name: str,
        kind: str,
        workers: int = 2,
        command: Optional[str] = None,
        name: str = "custom",
    ) -> SupervisorResult:
        if kind not in WORKER_KINDS:
            raise ValidationError(f"Invalid worker type: {kind}", {"valid": list(WORKER_KINDS)})
        if kind == "custom" and not (command or "").strip():
            raise ValidationError("Custom worker requires a command")
        if workers < 1:
            raise ValidationError("Number of workers must be at least 1")

        record = self._deployed(project_name)
        project_root = self._settings.project_dir(record.name)
        log_dir = self._settings.logs_dir / "projects" / record.name
        log_dir.mkdir(parents=True, exist_ok=True)

        suffix = name if kind == "custom" else kind
        program = f"{record.name}_{suffix}"
        context: Dict[str, object] = {
            "PROGRAM_NAME": program,
            "PROJECT_ROOT": project_root,
            "PROJECT_USER": record.username,
            "NUM_WORKERS": workers,
            "LOG_DIR": log_dir,
            "WORKER_NAME": name,
            "COMMAND": command if kind == "custom" else self.node_command(project_root),
        }

        logger.info("Creating %s worker config...", kind)
        config_path = self._settings.supervisor_conf_dir / f"{program}.conf"
        text = render(self._templates.load(f"supervisor/{kind}.conf"), context)
        write_rendered(config_path, text, mode=0o644)
        result = SupervisorResult(program=program, config_path=config_path)

        logger.info("Reloading Supervisor...")
        try:
            self._services.supervisor_update()
        except CommandError as e:
            raise ExternalToolError(f"Supervisor reload failed: {e.message}")

        if kind == "queue":
            target = f"{program}:*"
        elif kind == "node":
            target = program
        else:
            target = None
        if target is None:
            logger.info("Custom worker will start automatically")
        else:
            try:
                self._services.supervisor_start(target)
                logger.info("Started %s", target)
            except CommandError as e:
                warning = f"Could not start {target}: {e.message}"
                logger.warning(warning)
                result.warnings.append(warning)

        result.status = self._services.supervisor_status(f"{record.name}_")
        if result.status:
            logger.info("Worker status:\n%s", result.status)
        return result

    def setup_cron(self, project_name: str, replace: Optional[bool] = None) -> str:
        """Install the Laravel scheduler entry in the project user's crontab."""
        record = self._registry.get(project_name)
        project_root = self._settings.project_dir(record.name)
        if not (project_root / "current" / "artisan").is_file():
            raise ValidationError(
                "Project does not appear to be Laravel (artisan not found)",
                {"hint": "The scheduler is only set up for Laravel projects"},
            )

        logger.info("Setting up Laravel scheduler cron entry...")
        try:
            existing = self._services.read_crontab(record.username)
            if has_scheduler(existing):
                logger.warning("Cron entry already exists for %s", record.username)
                if replace is None:
                    replace = self._confirm("Update existing entry?")
                if not replace:
                    raise OperationCancelled("Skipping cron setup")
            merged = merge_crontab(existing, record.name, project_root)
            self._services.write_crontab(record.username, merged)
            installed = self._services.read_crontab(record.username)
        except CommandError as e:
            raise ExternalToolError(f"Crontab update failed: {e.message}")

        if not has_scheduler(installed):
            raise ExternalToolError(f"Cron entry not found for {record.username} after update")
        logger.info("Cron entry added for %s", record.username)
        return merged
