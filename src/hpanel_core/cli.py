from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .contracts import ProjectRecord
from .detector import BackendKind, ProjectTree, detect
from .errors import HPanelError, OperationCancelled, ValidationError
from .ledger import ResourceLedger
from .overrides import Overrides, load_overrides
from .provisioning import CreateRequest, Provisioner
from .reconciler import Reconciler
from .registry import ProjectRegistry
from .releases import ReleaseManager
from .services import HostServices, ServiceAdapter
from .settings import Settings, load_settings
from .templates import TemplateStore
from .tls import TlsEnabler
from .validator import BACKENDS, DATABASES, PHP_VERSIONS
from .workers import WORKER_KINDS, WorkerManager

logger = logging.getLogger("hpanel_core")


def ask_yes_no(question: str) -> bool:
    reply = input(f"{question} (y/N): ").strip().lower()
    return reply in ("y", "yes")


def ask(question: str) -> str:
    return input(question)


@dataclass
class Context:
    settings: Settings
    services: ServiceAdapter
    ledger: ResourceLedger
    registry: ProjectRegistry
    templates: TemplateStore
    overrides: Overrides
    releases: ReleaseManager
    confirm: Callable[[str], bool]
    prompt: Callable[[str], str]


def build_context(
    settings: Settings,
    services: Optional[ServiceAdapter] = None,
    confirm: Callable[[str], bool] = ask_yes_no,
    prompt: Callable[[str], str] = ask,
) -> Context:
    if services is None:
        services = HostServices(
            letsencrypt_dir=settings.letsencrypt_dir,
            mysql_root_password=settings.mysql_root_password,
        )
    ledger = ResourceLedger(
        settings.users_map_path,
        settings.ports_map_path,
        lock_timeout_seconds=settings.ledger_lock_timeout_seconds,
    )
    return Context(
        settings=settings,
        services=services,
        ledger=ledger,
        registry=ProjectRegistry(settings, ledger),
        templates=TemplateStore(settings.templates_path),
        overrides=load_overrides(settings.overrides_path),
        releases=ReleaseManager(settings, services),
        confirm=confirm,
        prompt=prompt,
    )


def _prompt_choice(ctx: Context, label: str, choices: Sequence[str], default: Optional[str] = None) -> str:
    hint = "/".join(choices)
    suffix = f" [{default}]" if default else ""
    value = ctx.prompt(f"{label} ({hint}){suffix}: ").strip()
    return value or (default or "")


def cmd_create(args: argparse.Namespace, ctx: Context) -> None:
    name = args.name or ctx.prompt("Project name (lowercase, alphanumeric, hyphens): ").strip()
    domain = args.domain or ctx.prompt("Domain (e.g., myapp.example.com): ").strip()
    backend = args.backend or _prompt_choice(ctx, "Backend type", BACKENDS)
    database = args.database
    if database is None:
        database = "none" if args.yes else _prompt_choice(ctx, "Database type", DATABASES, default="none")
    php_version = args.php_version
    if backend == "laravel" and not php_version:
        if args.yes:
            php_version = ctx.settings.default_php_version
        else:
            php_version = _prompt_choice(ctx, "PHP version", PHP_VERSIONS, default=ctx.settings.default_php_version)
    git_repo = args.git_repo
    if git_repo is None and not args.yes:
        git_repo = ctx.prompt("Git repository (optional): ").strip() or None

    request = CreateRequest(
        name=name,
        domain=domain,
        backend=backend,
        database=database or "none",
        php_version=php_version,
        git_repo=git_repo,
    )
    provisioner = Provisioner(ctx.settings, ctx.services, ctx.ledger, ctx.registry, ctx.templates)
    request = provisioner.validate(request)

    logger.info("Project: %s", request.name)
    logger.info("Domain: %s", request.domain)
    logger.info("Backend: %s", request.backend)
    logger.info("Database: %s", request.database)
    if request.php_version:
        logger.info("PHP Version: %s", request.php_version)
    if not args.yes and not ctx.confirm("Create project with these settings?"):
        raise OperationCancelled("Project creation cancelled")

    record = provisioner.create(request)
    print(f"Project created: {record.name}")
    print(f"Domain: http://{record.domain}")
    print(f"User: {record.username} (UID {record.uid})")
    if record.port is not None:
        print(f"Port: {record.port}")
    print(f"Next: hpanel deploy {record.name} <git-repo>")


def resolve_repo(ctx: Context, record: ProjectRecord, repo: Optional[str]) -> str:
    if repo:
        return repo
    override = ctx.overrides.for_project(record.name)
    if override.git_repo:
        return override.git_repo
    if record.git_repo:
        return record.git_repo

    current = ctx.releases.current_link(record.name)
    if (current / ".git").is_dir():
        remote = ctx.services.remote_url(current)
        if remote:
            return remote

    env_file = ctx.releases.shared_dir(record.name) / ".env"
    if env_file.is_file():
        for line in env_file.read_text(encoding="utf-8").splitlines():
            if line.startswith("GIT_REPO="):
                value = line.split("=", 1)[1].strip().strip("\"'")
                if value:
                    return value

    raise ValidationError(
        "Git repository not specified",
        {"hint": f"hpanel deploy {record.name} <git-repo> [ref]"},
    )


def resolve_kind(ctx: Context, record: ProjectRecord) -> BackendKind:
    tree = ProjectTree(ctx.releases.current_link(record.name), ctx.releases.shared_dir(record.name))
    kind = detect(tree)
    if kind is not BackendKind.UNKNOWN:
        return kind
    declared = BackendKind.from_name(record.backend)
    if declared is not BackendKind.UNKNOWN:
        logger.info("Backend not detectable from the tree; using declared kind '%s'", declared.value)
        return declared
    logger.warning("Could not detect backend type, assuming laravel")
    return BackendKind.LARAVEL


def cmd_deploy(args: argparse.Namespace, ctx: Context) -> None:
    record = ctx.registry.get(args.project)
    repo = resolve_repo(ctx, record, args.git_repo)
    logger.info("Git repository: %s", repo)
    kind = resolve_kind(ctx, record)
    logger.info("Backend type: %s", kind.value)

    reconciler = Reconciler(
        ctx.settings,
        ctx.services,
        ctx.releases,
        ctx.overrides,
        ctx.confirm,
        route_config=ctx.registry.route_config,
    )
    result = reconciler.deploy(record, repo, args.ref, kind, migrate=args.migrate)

    print(f"Deployed {record.name}: release {result.release.name}")
    if result.release.source_ref:
        print(f"Revision: {result.release.source_ref}")
    if result.pruned:
        print(f"Pruned: {', '.join(result.pruned)}")
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def cmd_rollback(args: argparse.Namespace, ctx: Context) -> None:
    record = ctx.registry.get(args.project)
    kind = BackendKind.from_name(record.backend)
    release = ctx.releases.rollback(args.project, args.release, kind=kind)
    print(f"Rolled back {args.project} to release {release.name}")


def cmd_releases(args: argparse.Namespace, ctx: Context) -> None:
    ctx.registry.get(args.project)
    active = ctx.releases.current_release(args.project)
    for release in ctx.releases.list_releases(args.project):
        marker = "*" if release.name == active else " "
        print(f"{marker} {release.name}  {release.source_ref or '-'}")


def cmd_enable_ssl(args: argparse.Namespace, ctx: Context) -> None:
    enabler = TlsEnabler(ctx.settings, ctx.services, ctx.registry, ctx.confirm, ctx.prompt)
    result = enabler.enable(args.project, args.email)
    print(f"SSL enabled for {result.domain}: https://{result.domain}")
    print(f"Certificate: {result.certificate_dir}")
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def cmd_setup_supervisor(args: argparse.Namespace, ctx: Context) -> None:
    manager = WorkerManager(ctx.settings, ctx.services, ctx.registry, ctx.templates, ctx.confirm)
    result = manager.setup_supervisor(
        args.project,
        args.type,
        workers=args.workers,
        command=args.command,
        name=args.name,
    )
    print(f"Supervisor program {result.program}: {result.config_path}")
    if result.status:
        print(result.status)
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def cmd_setup_cron(args: argparse.Namespace, ctx: Context) -> None:
    manager = WorkerManager(ctx.settings, ctx.services, ctx.registry, ctx.templates, ctx.confirm)
    manager.setup_cron(args.project)
    print(f"Laravel scheduler enabled for {args.project}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hpanel", description="Provision and deploy web projects on this host")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_create = sub.add_parser("create", help="Provision a new project")
    p_create.add_argument("--name", default=None)
    p_create.add_argument("--domain", default=None)
    p_create.add_argument("--backend", choices=BACKENDS, default=None)
    p_create.add_argument("--database", choices=DATABASES, default=None)
    p_create.add_argument("--php-version", dest="php_version", default=None, help="Laravel only")
    p_create.add_argument("--git-repo", dest="git_repo", default=None, help="Repository used by deploy")
    p_create.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p_create.set_defaults(func=cmd_create)

    p_deploy = sub.add_parser("deploy", help="Build and activate a new release")
    p_deploy.add_argument("project")
    p_deploy.add_argument("git_repo", nargs="?", default=None)
    p_deploy.add_argument("ref", nargs="?", default=None, help="Branch or tag")
    migrate_group = p_deploy.add_mutually_exclusive_group()
    migrate_group.add_argument("--migrate", dest="migrate", action="store_true", default=None)
    migrate_group.add_argument("--no-migrate", dest="migrate", action="store_false", default=None)
    p_deploy.set_defaults(func=cmd_deploy)

    p_rollback = sub.add_parser("rollback", help="Point current back at an earlier release")
    p_rollback.add_argument("project")
    p_rollback.add_argument("release", nargs="?", default=None)
    p_rollback.set_defaults(func=cmd_rollback)

    p_releases = sub.add_parser("releases", help="List releases, newest first")
    p_releases.add_argument("project")
    p_releases.set_defaults(func=cmd_releases)

    p_ssl = sub.add_parser("enable-ssl", help="Obtain a certificate and serve HTTPS")
    p_ssl.add_argument("project")
    p_ssl.add_argument("email", nargs="?", default=None)
    p_ssl.set_defaults(func=cmd_enable_ssl)

    p_sup = sub.add_parser("setup-supervisor", help="Configure a supervisor worker")
    p_sup.add_argument("project")
    p_sup.add_argument("type", choices=WORKER_KINDS)
    p_sup.add_argument("command", nargs="?", default=None, help="Command for custom workers")
    p_sup.add_argument("--workers", type=int, default=2, help="Queue worker processes")
    p_sup.add_argument("--name", default="custom", help="Custom worker name")
    p_sup.set_defaults(func=cmd_setup_supervisor)

    p_cron = sub.add_parser("setup-cron", help="Enable the Laravel scheduler")
    p_cron.add_argument("project")
    p_cron.set_defaults(func=cmd_setup_cron)

    return parser


def main(argv: Optional[List[str]] = None, services: Optional[ServiceAdapter] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="[%(levelname)s] %(message)s")

    try:
        ctx = build_context(settings, services=services)
        args.func(args, ctx)
    except OperationCancelled as e:
        logger.info("%s", e.message)
        return e.exit_code
    except HPanelError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if e.details.get("hint"):
            logger.info("Hint: %s", e.details["hint"])
        return e.exit_code
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def run() -> None:
    sys.exit(main())
