from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationError
from .settings import Settings

PROJECT_NAME_RE = re.compile(r"^[a-z0-9-]+$")
DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9-]{1,61}[a-zA-Z0-9]"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
    r"\.[a-zA-Z]{2,}$"
)

BACKENDS = ("laravel", "node", "react")
DATABASES = ("mysql", "postgres", "mongodb", "none")
PHP_VERSIONS = ("7.4", "8.0", "8.1", "8.2", "8.3")


class InputValidator:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def project_name(self, name: str) -> str:
        if not name or not PROJECT_NAME_RE.match(name):
            raise ValidationError("Project name must be lowercase, alphanumeric, and can contain hyphens")
        if self._settings.project_dir(name).exists():
            raise ValidationError(f"Project '{name}' already exists")
        return name

    def domain(self, domain: str) -> str:
        if not domain or not DOMAIN_RE.match(domain):
            raise ValidationError(f"Invalid domain format: {domain!r}")
        if (self._settings.sites_available_dir / f"{domain}.conf").exists():
            raise ValidationError(f"Domain '{domain}' is already in use")
        return domain

    def backend(self, backend: str) -> str:
        value = (backend or "").strip().lower()
        if value not in BACKENDS:
            raise ValidationError(f"Invalid backend type. Choose: {', '.join(BACKENDS)}")
        return value

    def database(self, database: str) -> str:
        value = (database or "").strip().lower()
        if value not in DATABASES:
            raise ValidationError(f"Invalid database type. Choose: {', '.join(DATABASES)}")
        return value

    def php_version(self, backend: str, php_version: Optional[str]) -> Optional[str]:
        if backend != "laravel":
            return None
        if php_version not in PHP_VERSIONS:
            raise ValidationError(f"Invalid PHP version. Choose: {', '.join(PHP_VERSIONS)}")
        return php_version
