from __future__ import annotations

import base64
import logging
import secrets
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .contracts import ProjectRecord
from .errors import CommandError, ExternalToolError, ValidationError
from .ledger import Category, ResourceLedger
from .registry import ProjectRegistry
from .releases import replace_symlink
from .services import ServiceAdapter, generate_password
from .settings import Settings
from .templates import TemplateStore, render, unresolved_placeholders, write_rendered
from .validator import InputValidator

logger = logging.getLogger(__name__)

DB_PORTS = {"mysql": "3306", "postgres": "5432", "mongodb": "27017"}
DB_CONNECTIONS = {"mysql": "mysql", "postgres": "pgsql", "mongodb": "mongodb"}


class CreateRequest(BaseModel):
    name: str = Field(..., description="Project name (lowercase, alphanumeric, hyphens)")
    domain: str = Field(..., description="Domain or subdomain served by the project")
    backend: str = Field(..., description="laravel, node or react")
    database: str = Field(default="none", description="mysql, postgres, mongodb or none")
    php_version: Optional[str] = Field(default=None, description="PHP version (laravel only)")
    git_repo: Optional[str] = Field(default=None, description="Git repository used by deploy")


def generate_app_key() -> str:
    return "base64:" + base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class Provisioner:
    def __init__(
        self,
        settings: Settings,
        services: ServiceAdapter,
        ledger: ResourceLedger,
        registry: ProjectRegistry,
        templates: TemplateStore,
    ) -> None:
        self._settings = settings
        self._services = services
        self._ledger = ledger
        self._registry = registry
        self._templates = templates
        self._validator = InputValidator(settings)

    def validate(self, request: CreateRequest) -> CreateRequest:
        """Check every input before anything on disk changes."""
        name = self._validator.project_name(request.name.strip())
        domain = self._validator.domain(request.domain.strip())
        backend = self._validator.backend(request.backend)
        database = self._validator.database(request.database)
        php_version = self._validator.php_version(backend, request.php_version)
        if database == "mysql" and not self._settings.mysql_root_password:
            raise ValidationError("MySQL root password not set (MYSQL_ROOT_PASSWORD)")
        return CreateRequest(
            name=name,
            domain=domain,
            backend=backend,
            database=database,
            php_version=php_version,
            git_repo=(request.git_repo or "").strip() or None,
        )

    def create(self, request: CreateRequest) -> ProjectRecord:
        request = self.validate(request)
        project_dir = self._settings.project_dir(request.name)

        try:
            self._create_structure(request.name, project_dir)
            username = f"{request.name}_user"
            uid = self._create_user(request.name, username, project_dir)
            port = self._allocate_port(request)
            db = self._create_database(request)

            record = ProjectRecord(
                name=request.name,
                domain=request.domain,
                backend=request.backend,
                database=request.database,
                username=username,
                uid=uid,
                php_version=request.php_version,
                port=port,
                git_repo=request.git_repo,
                created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )

            self._write_route_config(record)
            self._write_env_file(record, db)
            self._registry.save(record)
        except Exception:
            self._discard(request)
            raise
        logger.info("Project '%s' created successfully", record.name)
        return record

    def _discard(self, request: CreateRequest) -> None:
        """Remove the files a failed create laid down so it can be re-run.

        Ledger identifiers, the OS user and the database are kept; a re-run
        reuses them.
        """
        logger.warning("Create of '%s' failed, removing its project files", request.name)
        available = self._settings.sites_available_dir / f"{request.domain}.conf"
        enabled = self._settings.sites_enabled_dir / f"{request.domain}.conf"
        for path in (enabled, available):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Cannot remove %s: %s", path, e)
        project_dir = self._settings.project_dir(request.name)
        try:
            shutil.rmtree(project_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Cannot remove %s: %s", project_dir, e)

    def _create_structure(self, name: str, project_dir: Path) -> None:
        logger.info("Creating project structure...")
        try:
            for sub in ("releases", "shared/storage", "shared/logs"):
                (project_dir / sub).mkdir(parents=True, exist_ok=True)
            (self._settings.logs_dir / "projects" / name).mkdir(parents=True, exist_ok=True)
            # Until the first deploy, current points at the (empty) releases dir.
            replace_symlink(project_dir / "current", project_dir / "releases")
        except OSError as e:
            raise ExternalToolError(f"Cannot create project structure in {project_dir}: {e}")

    def _create_user(self, name: str, username: str, project_dir: Path) -> int:
        logger.info("Creating Linux user...")
        uid = self._ledger.allocate(name, Category.OS_USER, self._settings.start_uid, label=username)
        try:
            if self._services.ensure_user(username, uid, project_dir):
                logger.info("User '%s' created (UID: %d)", username, uid)
            else:
                logger.warning("User '%s' already exists, skipping creation", username)
            self._services.chown(project_dir, username)
        except CommandError as e:
            raise ExternalToolError(f"Cannot create user '{username}': {e.message}")
        return uid

    def _allocate_port(self, request: CreateRequest) -> Optional[int]:
        if request.backend != "node":
            return None
        port = self._ledger.allocate(request.name, Category.PORT, self._settings.node_port_start, label="node")
        logger.info("Allocated port %d for Node.js", port)
        return port

    def _create_database(self, request: CreateRequest) -> Dict[str, str]:
        if request.database == "none":
            logger.info("Skipping database creation (none selected)")
            return {"name": "", "user": "", "password": ""}

        logger.info("Creating database...")
        db = {
            "name": f"{request.name.replace('-', '_')}_db",
            "user": f"{request.name.replace('-', '_')}_user",
            "password": generate_password(),
        }
        try:
            self._services.create_database(request.database, db["name"], db["user"], db["password"])
        except CommandError as e:
            raise ExternalToolError(f"Database creation failed: {e.message}")
        logger.info("%s database '%s' created", request.database, db["name"])
        return db

    def route_context(self, record: ProjectRecord) -> Dict[str, object]:
        return {
            "DOMAIN": record.domain,
            "PROJECT_NAME": record.name,
            "PROJECT_ROOT": str(self._settings.project_dir(record.name)),
            "PHP_VERSION": record.php_version or "",
            "NODE_PORT": record.port if record.port is not None else "",
        }

    def _write_route_config(self, record: ProjectRecord) -> None:
        logger.info("Generating Nginx configuration...")
        text = render(self._templates.load(f"nginx/{record.backend}.conf"), self.route_context(record))
        missing = unresolved_placeholders(text)
        if missing:
            logger.warning("Route config for %s has unresolved placeholders: %s", record.name, ", ".join(missing))

        available = self._settings.sites_available_dir / f"{record.domain}.conf"
        enabled = self._settings.sites_enabled_dir / f"{record.domain}.conf"
        enabled.parent.mkdir(parents=True, exist_ok=True)
        write_rendered(available, text, mode=0o644)
        replace_symlink(enabled, available)

        check = self._services.validate_config()
        if not check.ok:
            enabled.unlink(missing_ok=True)
            available.unlink(missing_ok=True)
            raise ExternalToolError(
                "Nginx configuration test failed", {"diagnostics": check.diagnostics}
            )
        try:
            self._services.reload("nginx")
        except CommandError as e:
            raise ExternalToolError(f"Nginx reload failed: {e.message}")
        logger.info("Nginx configuration created and enabled")

    def env_context(self, record: ProjectRecord, db: Dict[str, str]) -> Dict[str, object]:
        return {
            "APP_NAME": record.name,
            "APP_URL": f"http://{record.domain}",
            "APP_KEY": generate_app_key() if record.backend == "laravel" else "",
            "DB_CONNECTION": DB_CONNECTIONS.get(record.database, record.database),
            "DB_HOST": "localhost",
            "DB_PORT": DB_PORTS.get(record.database, ""),
            "DB_DATABASE": db["name"],
            "DB_USERNAME": db["user"],
            "DB_PASSWORD": db["password"],
            "NODE_PORT": record.port if record.port is not None else "",
        }

    def _write_env_file(self, record: ProjectRecord, db: Dict[str, str]) -> None:
        logger.info("Creating .env file...")
        env_file = self._settings.project_dir(record.name) / "shared" / ".env"
        text = render(self._templates.load(f"env/{record.backend}.env"), self.env_context(record, db))
        write_rendered(env_file, text, mode=0o600)
        try:
            self._services.chown(env_file, record.username, recursive=False)
        except CommandError as e:
            raise ExternalToolError(f"Cannot set ownership on {env_file}: {e.message}")
        logger.info(".env file created")
