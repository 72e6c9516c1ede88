"""
Pytest configuration and fixtures shared by unit, scenario and e2e tests.
"""
import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import pytest

from hpanel_core.errors import CommandError
from hpanel_core.ledger import ResourceLedger
from hpanel_core.overrides import Overrides
from hpanel_core.registry import ProjectRegistry
from hpanel_core.releases import ReleaseManager
from hpanel_core.services import CommandResult, ConfigCheck
from hpanel_core.settings import Settings
from hpanel_core.templates import TemplateStore

LARAVEL_REPO = "https://git.example.com/acme/laravel-app.git"
NODE_REPO = "https://git.example.com/acme/node-api.git"
REACT_REPO = "https://git.example.com/acme/react-site.git"
CRA_REPO = "https://git.example.com/acme/cra-site.git"


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def populate_tree(repo: str, dest: Path) -> None:
    """Lay down a minimal source tree for the kind of app the repo URL names."""
    if "laravel" in repo:
        _write(dest / "artisan", "#!/usr/bin/env php\n")
        _write(dest / "composer.json", json.dumps({"name": "acme/app"}))
        _write(dest / "public" / "index.php", "<?php\n")
        _write(dest / "storage" / "logs" / ".gitignore", "*\n")
    elif "node" in repo:
        _write(dest / "package.json", json.dumps({"name": "api", "scripts": {"start": "node server.js"}}))
        _write(dest / "server.js", "require('http').createServer().listen(process.env.PORT);\n")
    elif "react" in repo:
        _write(dest / "package.json", json.dumps({"name": "site", "scripts": {"build": "vite build"}}))
        _write(dest / "src" / "main.jsx", "export default null;\n")
    elif "cra-" in repo:
        scripts = {"start": "react-scripts start", "build": "react-scripts build"}
        _write(dest / "package.json", json.dumps({"name": "site", "scripts": scripts}))
        _write(dest / "src" / "index.js", "export default null;\n")
    else:
        _write(dest / "README.md", "unknown\n")


class FakeServices:
    """In-memory ServiceAdapter: records every call and fails on request."""

    def __init__(self, letsencrypt_dir: Path) -> None:
        self.letsencrypt_dir = letsencrypt_dir
        self.calls: List[tuple] = []
        self.commands: List[List[str]] = []
        self.fail_commands: Dict[str, int] = {}
        self.fail_reload: set = set()
        self.fail_restart = False
        self.fail_clone = False
        self.fail_certificate = False
        self.fail_supervisor_start = False
        self.config_ok = True
        self.renewal = True
        self.users: Dict[str, int] = {}
        self.databases: List[tuple] = []
        self.crontabs: Dict[str, str] = {}
        self.remotes: Dict[Path, str] = {}
        self.supervisor_programs: List[str] = []
        self._clones = 0

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        user: Optional[str] = None,
        input_text: Optional[str] = None,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        argv = list(argv)
        self.commands.append(argv)
        self.calls.append(("run", " ".join(argv), user))
        joined = " ".join(argv)
        for needle, code in self.fail_commands.items():
            if needle in joined:
                if check:
                    raise CommandError(argv, code, f"{needle}: simulated failure")
                return CommandResult(tuple(argv), code, "", "simulated failure")
        if argv[:3] == ["npm", "run", "build"] and cwd is not None:
            _write(Path(cwd) / "build" / "index.html", "<html></html>\n")
        return CommandResult(tuple(argv), 0, "", "")

    def reload(self, service_name: str) -> None:
        self.calls.append(("reload", service_name))
        if service_name in self.fail_reload:
            raise CommandError(["systemctl", "reload", service_name], 1, "unit not found")

    def restart(self, process_name: str, cwd: Path, user: Optional[str] = None) -> None:
        self.calls.append(("restart", process_name, str(cwd)))
        if self.fail_restart:
            raise CommandError(["pm2", "restart", process_name], 1, "process errored")

    def validate_config(self) -> ConfigCheck:
        self.calls.append(("validate_config",))
        if self.config_ok:
            return ConfigCheck(ok=True, diagnostics="syntax is ok")
        return ConfigCheck(ok=False, diagnostics="nginx: [emerg] unexpected end of file")

    def clone(self, repo: str, dest: Path, ref: Optional[str] = None) -> None:
        self.calls.append(("clone", repo, ref))
        if self.fail_clone:
            raise CommandError(["git", "clone", repo], 128, "repository not found")
        self._clones += 1
        populate_tree(repo, dest)
        (dest / ".git").mkdir(exist_ok=True)
        self.remotes[Path(dest).resolve()] = repo

    def head_revision(self, path: Path) -> Optional[str]:
        return f"{self._clones:040x}"

    def remote_url(self, path: Path) -> Optional[str]:
        return self.remotes.get(Path(path).resolve())

    def chown(self, path: Path, user: str, recursive: bool = True) -> None:
        self.calls.append(("chown", str(path), user, recursive))

    def ensure_user(self, username: str, uid: int, home: Path) -> bool:
        self.calls.append(("ensure_user", username, uid))
        if username in self.users:
            return False
        self.users[username] = uid
        return True

    def create_database(self, kind: str, name: str, user: str, password: str) -> None:
        self.calls.append(("create_database", kind, name, user))
        self.databases.append((kind, name, user, password))

    def obtain_certificate(self, domain: str, email: str) -> None:
        self.calls.append(("obtain_certificate", domain, email))
        if self.fail_certificate:
            raise CommandError(["certbot", "certonly"], 1, "challenge failed")
        live = self.letsencrypt_dir / "live" / domain
        _write(live / "fullchain.pem", "CERT\n")
        _write(live / "privkey.pem", "KEY\n")

    def renewal_scheduled(self) -> bool:
        return self.renewal

    def supervisor_update(self) -> None:
        self.calls.append(("supervisor_update",))

    def supervisor_start(self, target: str) -> None:
        self.calls.append(("supervisor_start", target))
        if self.fail_supervisor_start:
            raise CommandError(["supervisorctl", "start", target], 7, "ERROR (spawn error)")
        self.supervisor_programs.append(target)

    def supervisor_status(self, prefix: str) -> str:
        return "\n".join(f"{p}  RUNNING" for p in self.supervisor_programs if p.startswith(prefix))

    def read_crontab(self, user: str) -> str:
        return self.crontabs.get(user, "")

    def write_crontab(self, user: str, text: str) -> None:
        self.calls.append(("write_crontab", user))
        self.crontabs[user] = text

    def ran(self, needle: str) -> bool:
        return any(needle in " ".join(argv) for argv in self.commands)


class Clock:
    """Deterministic, strictly increasing release timestamps."""

    def __init__(self, start: int = 20260101000000) -> None:
        self.value = start

    def __call__(self) -> str:
        self.value += 1
        return str(self.value)


def make_settings(root: Path, **changes) -> Settings:
    infra = root / "infra"
    values = dict(
        infra_dir=infra,
        projects_dir=infra / "projects",
        services_dir=infra / "services",
        templates_path=infra / "templates",
        logs_dir=infra / "logs",
        users_map_path=infra / "users.map",
        ports_map_path=infra / "ports.map",
        start_uid=10000,
        node_port_start=8000,
        keep_releases=5,
        default_php_version="8.2",
        ledger_lock_timeout_seconds=2.0,
        http_timeout_seconds=1.0,
        ssl_email=None,
        mysql_root_password="root-secret",
        supervisor_conf_dir=root / "supervisor",
        letsencrypt_dir=root / "letsencrypt",
        overrides_path=None,
        log_level="INFO",
    )
    values.update(changes)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary infra tree."""
    s = make_settings(tmp_path)
    s.projects_dir.mkdir(parents=True)
    s.sites_available_dir.mkdir(parents=True)
    s.sites_enabled_dir.mkdir(parents=True)
    return s


@pytest.fixture
def services(settings):
    return FakeServices(settings.letsencrypt_dir)


@pytest.fixture
def ledger(settings):
    return ResourceLedger(settings.users_map_path, settings.ports_map_path, lock_timeout_seconds=2.0)


@pytest.fixture
def registry(settings, ledger):
    return ProjectRegistry(settings, ledger)


@pytest.fixture
def templates(settings):
    return TemplateStore(settings.templates_path)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def releases(settings, services, clock):
    return ReleaseManager(settings, services, stamp=clock)


@pytest.fixture
def no_overrides():
    return Overrides(projects={})


@pytest.fixture
def env_settings(tmp_path, monkeypatch):
    """Point load_settings() at a temporary infra tree for CLI tests."""
    s = make_settings(tmp_path)
    monkeypatch.setenv("INFRA_DIR", str(s.infra_dir))
    monkeypatch.setenv("SUPERVISOR_CONF_DIR", str(s.supervisor_conf_dir))
    monkeypatch.setenv("LETSENCRYPT_DIR", str(s.letsencrypt_dir))
    monkeypatch.setenv("MYSQL_ROOT_PASSWORD", "root-secret")
    monkeypatch.delenv("OVERRIDES_PATH", raising=False)
    monkeypatch.delenv("SSL_EMAIL", raising=False)
    for var in ("PROJECTS_DIR", "SERVICES_DIR", "TEMPLATES_DIR", "LOGS_DIR", "USERS_MAP", "PORTS_MAP"):
        monkeypatch.delenv(var, raising=False)
    s.projects_dir.mkdir(parents=True)
    s.sites_available_dir.mkdir(parents=True)
    s.sites_enabled_dir.mkdir(parents=True)
    return s
