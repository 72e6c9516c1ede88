from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class Settings:
    infra_dir: Path
    projects_dir: Path
    services_dir: Path
    templates_path: Path
    logs_dir: Path
    users_map_path: Path
    ports_map_path: Path
    start_uid: int
    node_port_start: int
    keep_releases: int
    default_php_version: str
    ledger_lock_timeout_seconds: float
    http_timeout_seconds: float
    ssl_email: Optional[str]
    mysql_root_password: Optional[str]
    supervisor_conf_dir: Path
    letsencrypt_dir: Path
    overrides_path: Optional[Path]
    log_level: str

    @property
    def sites_available_dir(self) -> Path:
        return self.services_dir / "nginx" / "sites-available"

    @property
    def sites_enabled_dir(self) -> Path:
        return self.services_dir / "nginx" / "sites-enabled"

    def project_dir(self, name: str) -> Path:
        return self.projects_dir / name


def load_settings() -> Settings:
    infra_dir = Path(os.getenv("INFRA_DIR", "/infra"))

    projects_dir = Path(os.getenv("PROJECTS_DIR", str(infra_dir / "projects")))
    services_dir = Path(os.getenv("SERVICES_DIR", str(infra_dir / "services")))
    templates_path = Path(os.getenv("TEMPLATES_DIR", str(infra_dir / "templates")))
    logs_dir = Path(os.getenv("LOGS_DIR", str(infra_dir / "logs")))

    users_map_path = Path(os.getenv("USERS_MAP", str(infra_dir / "users.map")))
    ports_map_path = Path(os.getenv("PORTS_MAP", str(infra_dir / "ports.map")))

    start_uid = int(os.getenv("PHP_FPM_POOL_START_UID", "10000"))
    node_port_start = int(os.getenv("NODE_PORT_START", "8000"))
    keep_releases = int(os.getenv("KEEP_RELEASES", "5"))
    default_php_version = os.getenv("DEFAULT_PHP_VERSION", "8.2")

    ledger_lock_timeout_seconds = float(os.getenv("LEDGER_LOCK_TIMEOUT_SECONDS", "10"))
    http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    ssl_email = os.getenv("SSL_EMAIL") or None
    mysql_root_password = os.getenv("MYSQL_ROOT_PASSWORD") or None

    supervisor_conf_dir = Path(os.getenv("SUPERVISOR_CONF_DIR", "/etc/supervisor/conf.d"))
    letsencrypt_dir = Path(os.getenv("LETSENCRYPT_DIR", "/etc/letsencrypt"))

    overrides_env = os.getenv("OVERRIDES_PATH")
    if overrides_env:
        overrides_path: Optional[Path] = Path(overrides_env)
    elif (infra_dir / "overrides.yaml").exists():
        overrides_path = infra_dir / "overrides.yaml"
    else:
        overrides_path = None

    log_level = os.getenv("LOG_LEVEL", "INFO")

    return Settings(
        infra_dir=infra_dir,
        projects_dir=projects_dir,
        services_dir=services_dir,
        templates_path=templates_path,
        logs_dir=logs_dir,
        users_map_path=users_map_path,
        ports_map_path=ports_map_path,
        start_uid=start_uid,
        node_port_start=node_port_start,
        keep_releases=keep_releases,
        default_php_version=default_php_version,
        ledger_lock_timeout_seconds=ledger_lock_timeout_seconds,
        http_timeout_seconds=http_timeout_seconds,
        ssl_email=ssl_email,
        mysql_root_password=mysql_root_password,
        supervisor_conf_dir=supervisor_conf_dir,
        letsencrypt_dir=letsencrypt_dir,
        overrides_path=overrides_path,
        log_level=log_level,
    )
