"""
Unit tests for supervisor programs and the Laravel scheduler crontab.
"""
import json
import stat
from pathlib import Path

import pytest

from hpanel_core.contracts import ProjectRecord
from hpanel_core.errors import OperationCancelled, ValidationError
from hpanel_core.workers import WorkerManager, has_scheduler, merge_crontab, scheduler_entry

ROOT = Path("/infra/projects/myapp")


@pytest.mark.unit
class TestMergeCrontab:
    def test_appends_to_empty(self):
        out = merge_crontab("", "myapp", ROOT)
        assert out == (
            "# HPanel Laravel Scheduler for myapp\n"
            "* * * * * cd /infra/projects/myapp/current && php artisan schedule:run >> /dev/null 2>&1\n"
        )

    def test_keeps_unrelated_entries(self):
        out = merge_crontab("0 3 * * * /usr/bin/backup\n", "myapp", ROOT)
        assert out.splitlines()[0] == "0 3 * * * /usr/bin/backup"
        assert has_scheduler(out)

    def test_replaces_existing_entry(self):
        existing = (
            "MAILTO=ops@example.com\n"
            "# HPanel Laravel Scheduler for myapp\n"
            "* * * * * cd /old/current && php artisan schedule:run >> /dev/null 2>&1\n"
        )
        out = merge_crontab(existing, "myapp", ROOT)
        assert out.count("schedule:run") == 1
        assert out.count("# HPanel Laravel Scheduler") == 1
        assert scheduler_entry(ROOT) in out
        assert out.startswith("MAILTO=ops@example.com\n")


@pytest.fixture
def manager(settings, services, registry, templates):
    answers = []
    m = WorkerManager(settings, services, registry, templates, confirm=lambda q: answers.pop(0))
    m.answers = answers
    return m


def _project(settings, registry, backend="laravel", deployed=True, files=None):
    project_dir = settings.project_dir("myapp")
    release = project_dir / "releases" / "r1"
    release.mkdir(parents=True)
    for rel, content in (files or {}).items():
        (release / rel).write_text(content)
    if deployed:
        (project_dir / "current").symlink_to(release)
    registry.save(ProjectRecord(
        name="myapp", domain="myapp.example.com", backend=backend, database="none",
        username="myapp_user", uid=10000,
    ))
    return project_dir


@pytest.mark.unit
class TestSetupSupervisor:
    def test_queue_workers(self, manager, settings, registry, services):
        _project(settings, registry, files={"artisan": ""})
        result = manager.setup_supervisor("myapp", "queue", workers=4)

        conf = settings.supervisor_conf_dir / "myapp_queue.conf"
        text = conf.read_text()
        assert result.config_path == conf
        assert "[program:myapp_queue]" in text
        assert "numprocs=4" in text
        assert "user=myapp_user" in text
        assert f"stdout_logfile={settings.logs_dir}/projects/myapp/queue.log" in text
        assert stat.S_IMODE(conf.stat().st_mode) == 0o644
        assert ("supervisor_update",) in services.calls
        assert ("supervisor_start", "myapp_queue:*") in services.calls
        assert "myapp_queue:*" in result.status

    def test_node_uses_npm_start(self, manager, settings, registry):
        _project(settings, registry, backend="node", files={"package.json": json.dumps({"scripts": {"start": "node ."}})})
        manager.setup_supervisor("myapp", "node")
        assert "command=npm start" in (settings.supervisor_conf_dir / "myapp_node.conf").read_text()

    def test_node_falls_back_to_server_js(self, manager, settings, registry):
        _project(settings, registry, backend="node", files={"server.js": ""})
        manager.setup_supervisor("myapp", "node")
        assert "command=node server.js" in (settings.supervisor_conf_dir / "myapp_node.conf").read_text()

    def test_custom_command(self, manager, settings, registry, services):
        _project(settings, registry)
        result = manager.setup_supervisor("myapp", "custom", command="php artisan horizon", name="horizon")
        text = (settings.supervisor_conf_dir / "myapp_horizon.conf").read_text()
        assert result.program == "myapp_horizon"
        assert "command=php artisan horizon" in text
        assert "horizon.log" in text
        assert not any(call[0] == "supervisor_start" for call in services.calls)

    def test_custom_requires_command(self, manager, settings, registry):
        _project(settings, registry)
        with pytest.raises(ValidationError):
            manager.setup_supervisor("myapp", "custom")

    def test_unknown_kind(self, manager):
        with pytest.raises(ValidationError):
            manager.setup_supervisor("myapp", "cron")

    def test_requires_deploy(self, manager, settings, registry):
        _project(settings, registry, deployed=False)
        with pytest.raises(ValidationError, match="not deployed"):
            manager.setup_supervisor("myapp", "queue")

    def test_fresh_project_is_not_deployed(self, manager, settings, registry):
        """create points current at the empty releases dir until the first deploy."""
        project_dir = _project(settings, registry, deployed=False)
        (project_dir / "current").symlink_to(project_dir / "releases")
        with pytest.raises(ValidationError, match="not deployed"):
            manager.setup_supervisor("myapp", "queue")
        assert not (settings.supervisor_conf_dir / "myapp_queue.conf").exists()

    def test_start_failure_is_a_warning(self, manager, settings, registry, services):
        _project(settings, registry)
        services.fail_supervisor_start = True
        result = manager.setup_supervisor("myapp", "queue")
        assert result.warnings


@pytest.mark.unit
class TestSetupCron:
    def test_installs_entry(self, manager, settings, registry, services):
        project_dir = _project(settings, registry, files={"artisan": ""})
        manager.setup_cron("myapp")
        assert scheduler_entry(project_dir) in services.crontabs["myapp_user"]

    def test_requires_laravel(self, manager, settings, registry):
        _project(settings, registry, backend="node", files={"server.js": ""})
        with pytest.raises(ValidationError, match="artisan"):
            manager.setup_cron("myapp")

    def test_existing_entry_declined(self, manager, settings, registry, services):
        _project(settings, registry, files={"artisan": ""})
        services.crontabs["myapp_user"] = "* * * * * cd /old/current && php artisan schedule:run\n"
        manager.answers.append(False)
        with pytest.raises(OperationCancelled):
            manager.setup_cron("myapp")
        assert "/old/current" in services.crontabs["myapp_user"]

    def test_existing_entry_replaced(self, manager, settings, registry, services):
        project_dir = _project(settings, registry, files={"artisan": ""})
        services.crontabs["myapp_user"] = "* * * * * cd /old/current && php artisan schedule:run\n"
        manager.answers.append(True)
        manager.setup_cron("myapp")
        crontab = services.crontabs["myapp_user"]
        assert "/old/current" not in crontab
        assert scheduler_entry(project_dir) in crontab
