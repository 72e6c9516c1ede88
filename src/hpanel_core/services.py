from __future__ import annotations

import logging
import os
import secrets
import string
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, Tuple

from .errors import CommandError, ExternalToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class ConfigCheck:
    ok: bool
    diagnostics: str = ""


def generate_password(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class ServiceAdapter(Protocol):
    """Everything the orchestrator asks of the host, in one narrow seam."""

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        user: Optional[str] = None,
        input_text: Optional[str] = None,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult: ...

    def reload(self, service_name: str) -> None: ...

    def restart(self, process_name: str, cwd: Path, user: Optional[str] = None) -> None: ...

    def validate_config(self) -> ConfigCheck: ...

    def clone(self, repo: str, dest: Path, ref: Optional[str] = None) -> None: ...

    def head_revision(self, path: Path) -> Optional[str]: ...

    def remote_url(self, path: Path) -> Optional[str]: ...

    def chown(self, path: Path, user: str, recursive: bool = True) -> None: ...

    def ensure_user(self, username: str, uid: int, home: Path) -> bool: ...

    def create_database(self, kind: str, name: str, user: str, password: str) -> None: ...

    def obtain_certificate(self, domain: str, email: str) -> None: ...

    def renewal_scheduled(self) -> bool: ...

    def supervisor_update(self) -> None: ...

    def supervisor_start(self, target: str) -> None: ...

    def supervisor_status(self, prefix: str) -> str: ...

    def read_crontab(self, user: str) -> str: ...

    def write_crontab(self, user: str, text: str) -> None: ...


class HostServices:
    """ServiceAdapter over the real OS tools (systemctl, nginx, pm2, git, certbot, ...)."""

    def __init__(
        self,
        letsencrypt_dir: Path = Path("/etc/letsencrypt"),
        mysql_root_password: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._letsencrypt_dir = letsencrypt_dir
        self._mysql_root_password = mysql_root_password
        self._timeout = timeout_seconds

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        user: Optional[str] = None,
        input_text: Optional[str] = None,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        full = list(argv)
        if user:
            full = ["sudo", "-u", user, "-H", "--", *full]
        logger.debug("exec: %s (cwd=%s)", " ".join(full), cwd)
        try:
            p = subprocess.run(
                full,
                cwd=str(cwd) if cwd else None,
                input=input_text,
                env={**os.environ, **env} if env else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(full, 127, str(e))
        except subprocess.TimeoutExpired as e:
            raise CommandError(full, -1, f"timed out after {e.timeout}s")

        result = CommandResult(argv=tuple(full), returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
        if check and p.returncode != 0:
            raise CommandError(full, p.returncode, p.stderr)
        return result

    def reload(self, service_name: str) -> None:
        self.run(["systemctl", "reload", service_name])

    def restart(self, process_name: str, cwd: Path, user: Optional[str] = None) -> None:
        try:
            self.run(["pm2", "restart", process_name], cwd=cwd, user=user)
        except CommandError:
            logger.info("pm2 has no process '%s'; starting it", process_name)
            self.run(["pm2", "start", "npm", "--name", process_name, "--", "start"], cwd=cwd, user=user)
            self.run(["pm2", "save"], user=user, check=False)

    def validate_config(self) -> ConfigCheck:
        result = self.run(["nginx", "-t"], check=False)
        return ConfigCheck(ok=result.returncode == 0, diagnostics=(result.stderr or result.stdout).strip())

    def clone(self, repo: str, dest: Path, ref: Optional[str] = None) -> None:
        argv = ["git", "clone", "--depth", "1"]
        if ref:
            argv += ["--branch", ref]
        self.run([*argv, repo, str(dest)])

    def head_revision(self, path: Path) -> Optional[str]:
        result = self.run(["git", "-C", str(path), "rev-parse", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def remote_url(self, path: Path) -> Optional[str]:
        result = self.run(["git", "-C", str(path), "remote", "get-url", "origin"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def chown(self, path: Path, user: str, recursive: bool = True) -> None:
        argv = ["chown"]
        if recursive:
            argv.append("-R")
        self.run([*argv, f"{user}:{user}", str(path)])

    def ensure_user(self, username: str, uid: int, home: Path) -> bool:
        if self.run(["id", "-u", username], check=False).returncode == 0:
            return False
        self.run(["useradd", "-r", "-u", str(uid), "-d", str(home), "-s", "/bin/bash", username])
        self.run(["chpasswd"], input_text=f"{username}:{generate_password()}\n")
        self.run(["usermod", "-aG", "www-data", username])
        return True

    def create_database(self, kind: str, name: str, user: str, password: str) -> None:
        # Re-runnable: an existing database is kept and the user's password reset.
        if kind == "mysql":
            if not self._mysql_root_password:
                raise ExternalToolError("MySQL root password not set (MYSQL_ROOT_PASSWORD)")
            sql = (
                f"CREATE DATABASE IF NOT EXISTS `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;\n"
                f"CREATE USER IF NOT EXISTS '{user}'@'localhost' IDENTIFIED BY '{password}';\n"
                f"ALTER USER '{user}'@'localhost' IDENTIFIED BY '{password}';\n"
                f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{user}'@'localhost';\n"
                "FLUSH PRIVILEGES;\n"
            )
            self.run(["mysql", "-u", "root"], input_text=sql, env={"MYSQL_PWD": self._mysql_root_password})
        elif kind == "postgres":
            sql = (
                f"SELECT 'CREATE DATABASE \"{name}\"' "
                f"WHERE NOT EXISTS (SELECT FROM pg_database WHERE datname = '{name}')\\gexec\n"
                "DO $$\nBEGIN\n"
                f"  IF EXISTS (SELECT FROM pg_roles WHERE rolname = '{user}') THEN\n"
                f"    ALTER ROLE \"{user}\" WITH LOGIN PASSWORD '{password}';\n"
                "  ELSE\n"
                f"    CREATE ROLE \"{user}\" WITH LOGIN PASSWORD '{password}';\n"
                "  END IF;\nEND\n$$;\n"
                f"GRANT ALL PRIVILEGES ON DATABASE \"{name}\" TO \"{user}\";\n"
                f"\\c \"{name}\"\n"
                f"GRANT ALL ON SCHEMA public TO \"{user}\";\n"
            )
            self.run(["psql", "-v", "ON_ERROR_STOP=1"], user="postgres", input_text=sql)
        elif kind == "mongodb":
            roles = f'[{{role: "readWrite", db: "{name}"}}]'
            script = (
                f"use {name}\n"
                f'if (db.getUser("{user}")) {{ db.updateUser("{user}", {{pwd: "{password}", roles: {roles}}}) }} '
                f'else {{ db.createUser({{user: "{user}", pwd: "{password}", roles: {roles}}}) }}\n'
            )
            self.run(["mongosh", "--quiet"], input_text=script)
        else:
            raise ExternalToolError(f"Unsupported database type: {kind}")

    def obtain_certificate(self, domain: str, email: str) -> None:
        if (self._letsencrypt_dir / "live" / domain).is_dir():
            logger.info("Certificate already exists, will renew if needed")
            self.run(["certbot", "renew", "--cert-name", domain, "--quiet"])
            return
        self.run(
            [
                "certbot",
                "certonly",
                "--nginx",
                "--non-interactive",
                "--agree-tos",
                "--email",
                email,
                "--domains",
                domain,
                "--preferred-challenges",
                "http",
                "--keep-until-expiring",
            ]
        )

    def renewal_scheduled(self) -> bool:
        timers = self.run(["systemctl", "list-timers", "--all"], check=False)
        if "certbot.timer" in timers.stdout:
            return True
        return Path("/etc/cron.d/certbot").exists()

    def supervisor_update(self) -> None:
        self.run(["supervisorctl", "reread"])
        self.run(["supervisorctl", "update"])

    def supervisor_start(self, target: str) -> None:
        self.run(["supervisorctl", "start", target])

    def supervisor_status(self, prefix: str) -> str:
        result = self.run(["supervisorctl", "status"], check=False)
        return "\n".join(line for line in result.stdout.splitlines() if line.startswith(prefix))

    def read_crontab(self, user: str) -> str:
        result = self.run(["crontab", "-u", user, "-l"], check=False)
        # crontab -l exits 1 with "no crontab for <user>"
        return result.stdout if result.returncode == 0 else ""

    def write_crontab(self, user: str, text: str) -> None:
        self.run(["crontab", "-u", user, "-"], input_text=text)
