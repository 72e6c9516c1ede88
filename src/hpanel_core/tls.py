from __future__ import annotations

import logging
import re
import shutil
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from .errors import CommandError, ExternalToolError, OperationCancelled, ValidationError
from .registry import ProjectRegistry, read_server_name
from .services import ServiceAdapter
from .settings import Settings
from .templates import write_rendered

logger = logging.getLogger(__name__)

IP_LOOKUP_URLS = ("https://ifconfig.me/ip", "https://icanhazip.com")
VERIFIED_STATUSES = {200, 301, 302}

_SERVER_NAME_LINE_RE = re.compile(r"^([ \t]*)server_name[^\n]*\n", re.MULTILINE)
_CERT_RE = re.compile(r"ssl_certificate\s+[^;]*;")
_KEY_RE = re.compile(r"ssl_certificate_key\s+[^;]*;")


def apply_tls(config_text: str, domain: str, cert_path: str, key_path: str) -> str:
    """Rewrite a plain-HTTP server config to serve TLS and redirect port 80."""
    if "ssl_certificate" in config_text:
        text = _KEY_RE.sub(f"ssl_certificate_key {key_path};", config_text)
        return _CERT_RE.sub(f"ssl_certificate {cert_path};", text)

    text = config_text.replace("listen 80;", "listen 443 ssl http2;")
    text = text.replace("listen [::]:80;", "listen [::]:443 ssl http2;")

    def _tls_block(match: re.Match) -> str:
        indent = match.group(1)
        lines = [
            "# SSL Configuration",
            f"ssl_certificate {cert_path};",
            f"ssl_certificate_key {key_path};",
            "ssl_protocols TLSv1.2 TLSv1.3;",
            "ssl_ciphers HIGH:!aNULL:!MD5;",
            "ssl_prefer_server_ciphers on;",
            "ssl_session_cache shared:SSL:10m;",
            "ssl_session_timeout 10m;",
            "",
            "# Security Headers",
            'add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;',
        ]
        block = "".join(f"{indent}{line}\n" if line else "\n" for line in lines)
        return match.group(0) + block

    text = _SERVER_NAME_LINE_RE.sub(_tls_block, text, count=1)

    redirect = (
        "# HTTP to HTTPS redirect\n"
        "server {\n"
        "    listen 80;\n"
        "    listen [::]:80;\n"
        f"    server_name {domain};\n"
        "    return 301 https://$server_name$request_uri;\n"
        "}\n"
        "\n"
    )
    return redirect + text


def _resolve(domain: str) -> List[str]:
    try:
        return socket.gethostbyname_ex(domain)[2]
    except OSError:
        return []


@dataclass
class TlsResult:
    project: str
    domain: str
    certificate_dir: Path
    backup_path: Optional[Path] = None
    verified: bool = False
    warnings: List[str] = field(default_factory=list)


class TlsEnabler:
    def __init__(
        self,
        settings: Settings,
        services: ServiceAdapter,
        registry: ProjectRegistry,
        confirm: Callable[[str], bool],
        prompt: Callable[[str], str],
        resolver: Callable[[str], List[str]] = _resolve,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._services = services
        self._registry = registry
        self._confirm = confirm
        self._prompt = prompt
        self._resolver = resolver
        self._transport = transport

    def _client(self, **kwargs) -> httpx.Client:
        return httpx.Client(timeout=self._settings.http_timeout_seconds, transport=self._transport, **kwargs)

    def public_ip(self) -> Optional[str]:
        with self._client() as client:
            for url in IP_LOOKUP_URLS:
                try:
                    r = client.get(url)
                except httpx.HTTPError:
                    continue
                if r.status_code < 400 and r.text.strip():
                    return r.text.strip()
        return None

    def check_dns(self, domain: str) -> None:
        logger.info("Checking DNS configuration...")
        server_ip = self.public_ip()
        if not server_ip:
            logger.warning("Could not determine server IP, skipping DNS check")
            return

        addresses = self._resolver(domain)
        if not addresses:
            raise ExternalToolError(
                f"Domain '{domain}' does not resolve to any IP",
                {"hint": "Configure DNS to point to this server"},
            )
        if server_ip not in addresses:
            logger.warning("Domain '%s' resolves to %s, but server IP is %s", domain, ", ".join(addresses), server_ip)
            logger.warning("SSL verification may fail if DNS is not correct")
            if not self._confirm("Continue anyway?"):
                raise OperationCancelled("Cancelled: DNS does not point at this server")
        else:
            logger.info("DNS configured correctly (%s -> %s)", domain, server_ip)

    def resolve_email(self, email: Optional[str]) -> str:
        if email:
            return email
        if self._settings.ssl_email:
            return self._settings.ssl_email
        email = self._prompt("Email address for Let's Encrypt notifications: ").strip()
        if not email:
            raise ValidationError("Email is required")
        return email

    def verify(self, domain: str) -> bool:
        logger.info("Verifying SSL certificate...")
        try:
            with self._client(follow_redirects=False) as client:
                r = client.get(f"https://{domain}")
        except httpx.HTTPError as e:
            logger.warning("Could not verify SSL automatically: %s", e)
            return False
        if r.status_code in VERIFIED_STATUSES:
            logger.info("SSL is working! Visit: https://%s", domain)
            return True
        logger.warning("Could not verify SSL automatically (response code: %d)", r.status_code)
        return False

    def enable(self, project_name: str, email: Optional[str] = None) -> TlsResult:
        record = self._registry.get(project_name)
        route = self._registry.route_config(record)
        if route is None:
            raise ValidationError(f"Nginx configuration not found for project '{project_name}'")
        route = route.resolve()

        original = route.read_text(encoding="utf-8")
        domain = read_server_name(original)
        if not domain:
            raise ValidationError("Could not extract domain from Nginx config")
        logger.info("Domain: %s", domain)

        self.check_dns(domain)
        email = self.resolve_email(email)
        logger.info("Email: %s", email)

        if "ssl_certificate" in original:
            logger.warning("SSL appears to be already enabled for this project")
            if not self._confirm("Reconfigure SSL?"):
                raise OperationCancelled("Cancelled: SSL already enabled")

        live_dir = self._settings.letsencrypt_dir / "live" / domain
        logger.info("Requesting SSL certificate from Let's Encrypt...")
        try:
            self._services.obtain_certificate(domain, email)
        except CommandError as e:
            raise ExternalToolError(f"Certificate request failed: {e.message}")
        if not (live_dir / "fullchain.pem").exists():
            raise ExternalToolError("Certificate request failed", {"expected": str(live_dir / "fullchain.pem")})
        logger.info("Certificate obtained")

        result = TlsResult(project=project_name, domain=domain, certificate_dir=live_dir)
        result.backup_path = self._rewrite_route(route, original, domain, live_dir)

        if self._services.renewal_scheduled():
            logger.info("Auto-renewal is configured")
        else:
            warning = "Auto-renewal may not be configured; renew manually with: certbot renew"
            logger.warning(warning)
            result.warnings.append(warning)

        result.verified = self.verify(domain)
        if not result.verified:
            result.warnings.append(f"Could not verify https://{domain}")
        return result

    def _rewrite_route(self, route: Path, original: str, domain: str, live_dir: Path) -> Path:
        logger.info("Updating Nginx configuration...")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        backup = route.with_name(f"{route.name}.backup.{stamp}")
        shutil.copy2(route, backup)

        mode = route.stat().st_mode & 0o777
        updated = apply_tls(original, domain, str(live_dir / "fullchain.pem"), str(live_dir / "privkey.pem"))
        write_rendered(route, updated, mode=mode)

        check = self._services.validate_config()
        if not check.ok:
            write_rendered(route, original, mode=mode)
            raise ExternalToolError(
                "Nginx configuration test failed; original configuration restored",
                {"diagnostics": check.diagnostics, "backup": str(backup)},
            )
        try:
            self._services.reload("nginx")
        except CommandError as e:
            raise ExternalToolError(f"Nginx reload failed: {e.message}")
        logger.info("Nginx configuration updated and reloaded")
        return backup
