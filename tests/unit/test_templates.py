"""
Unit tests for placeholder rendering and template lookup.
"""
import stat

import pytest

from hpanel_core.errors import ValidationError
from hpanel_core.templates import TemplateStore, render, unresolved_placeholders, write_rendered


@pytest.mark.unit
class TestRender:
    def test_substitutes_known_placeholders(self):
        out = render("server_name {{DOMAIN}}; root {{PROJECT_ROOT}}/current;", {
            "DOMAIN": "myapp.example.com",
            "PROJECT_ROOT": "/infra/projects/myapp",
        })
        assert out == "server_name myapp.example.com; root /infra/projects/myapp/current;"

    def test_unknown_placeholders_are_left_in_place(self):
        out = render("port {{NODE_PORT}} {{MISSING}}", {"NODE_PORT": 8000})
        assert out == "port 8000 {{MISSING}}"
        assert unresolved_placeholders(out) == ["MISSING"]

    def test_none_renders_empty(self):
        assert render("a={{X}}", {"X": None}) == "a="

    def test_lowercase_braces_are_not_placeholders(self):
        text = "{{ not_a_token }} {{lower}}"
        assert render(text, {"lower": "x"}) == text
        assert unresolved_placeholders(text) == []


@pytest.mark.unit
class TestWriteRendered:
    def test_writes_with_mode(self, tmp_path):
        target = tmp_path / "nested" / "site.conf"
        write_rendered(target, "hello\n", mode=0o600)
        assert target.read_text() == "hello\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_replaces_existing_without_leftovers(self, tmp_path):
        target = tmp_path / "site.conf"
        target.write_text("old\n")
        write_rendered(target, "new\n")
        assert target.read_text() == "new\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["site.conf"]


@pytest.mark.unit
class TestTemplateStore:
    def test_bundled_variants_exist(self, templates):
        for variant in (
            "nginx/laravel.conf",
            "nginx/node.conf",
            "nginx/react.conf",
            "env/laravel.env",
            "env/node.env",
            "env/react.env",
            "supervisor/queue.conf",
            "supervisor/node.conf",
            "supervisor/custom.conf",
        ):
            assert "{{" in templates.load(variant)

    def test_operator_directory_takes_precedence(self, tmp_path):
        operator = tmp_path / "templates"
        (operator / "nginx").mkdir(parents=True)
        (operator / "nginx" / "node.conf").write_text("custom {{DOMAIN}}\n")
        assert TemplateStore(operator).load("nginx/node.conf") == "custom {{DOMAIN}}\n"

    def test_unknown_variant_is_rejected(self, templates):
        with pytest.raises(ValidationError):
            templates.load("nginx/django.conf")

    def test_laravel_route_references_fpm_socket(self, templates):
        text = render(templates.load("nginx/laravel.conf"), {
            "DOMAIN": "myapp.example.com",
            "PROJECT_ROOT": "/infra/projects/myapp",
            "PROJECT_NAME": "myapp",
            "PHP_VERSION": "8.2",
        })
        assert "php8.2-fpm.sock" in text
        assert "server_name myapp.example.com;" in text
        assert unresolved_placeholders(text) == []
