"""Unit tests for the CLI — command registration and end-to-end invocations.

Every invocation runs against the local backend with all state under a
temporary working directory.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from deckhand.cli.app import app

runner = CliRunner()

REVISION = "3f9c2a7e41b8d0c6a5e2f1b9c8d7e6a5b4c3d2e1"
NEXT_REVISION = "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d"


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run commands from a temp directory so .deckhand/ state lands there."""
    for key in ("DECKHAND_ENVIRONMENT", "DECKHAND_BACKEND", "DECKHAND_DEBUG"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DECKHAND_PULL_BACKOFF_SECONDS", "0")
    return tmp_path


@pytest.fixture
def topology_file(workdir: Path) -> Path:
    path = workdir / "topology.json"
    path.write_text(json.dumps({"projectName": "twotier", "region": "ap-south-1"}))
    return path


@pytest.fixture
def source_args(workdir: Path) -> list[str]:
    api = workdir / "api"
    (api / "demo").mkdir(parents=True)
    (api / "Dockerfile").write_text("FROM python:3.12-slim\nUSER app\n")
    (api / "demo" / "wsgi.py").write_text("application = None\n")
    proxy = workdir / "proxy"
    (proxy / "dist").mkdir(parents=True)
    (proxy / "Dockerfile").write_text("FROM nginx:1.27-alpine\nUSER nginx\n")
    (proxy / "dist" / "index.html").write_text("<div id='root'></div>\n")
    return ["--api-src", str(api), "--proxy-src", str(proxy)]


class TestCliApp:
    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("provision", "publish", "activate", "run", "rollback", "status", "render-proxy"):
            assert command in result.output

    def test_no_args_shows_usage(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "Usage" in result.output


class TestProvisionPublishActivate:
    def test_step_by_step(self, workdir, topology_file, source_args):
        result = runner.invoke(app, ["provision", str(topology_file)])
        assert result.exit_code == 0, result.output
        assert "Host provisioned." in result.output

        again = runner.invoke(app, ["provision", str(topology_file)])
        assert again.exit_code == 0
        assert "nothing changed" in again.output

        result = runner.invoke(app, ["publish", "--revision", REVISION, *source_args])
        assert result.exit_code == 0, result.output
        assert "3f9c2a7e41b8" in result.output

        result = runner.invoke(
            app,
            [
                "activate", "--revision", REVISION, "--topology", str(topology_file),
                "--set", "ALLOWED_HOSTS=shop.example.com",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "v1" in result.output

        status = runner.invoke(app, ["status", "--topology", str(topology_file)])
        assert status.exit_code == 0, status.output
        assert "Recent runs" in status.output
        assert "shop.example.com" in status.output

    def test_activate_before_provision_fails(self, workdir, topology_file, source_args):
        runner.invoke(app, ["publish", "--revision", REVISION, *source_args])
        result = runner.invoke(
            app, ["activate", "--revision", REVISION, "--topology", str(topology_file)]
        )
        assert result.exit_code == 1
        assert "has not been provisioned" in result.output
        assert "Remediation" in result.output

    def test_teardown(self, workdir, topology_file):
        runner.invoke(app, ["provision", str(topology_file)])
        result = runner.invoke(app, ["provision", str(topology_file), "--teardown"])
        assert result.exit_code == 0
        assert "Destroyed" in result.output

    def test_invalid_topology_file(self, workdir):
        bad = workdir / "bad.json"
        bad.write_text(json.dumps({"ingress": [22, 3306]}))
        result = runner.invoke(app, ["provision", str(bad)])
        assert result.exit_code == 1
        assert "Invalid input" in result.output


class TestRunCommand:
    def test_full_run_then_rollback(self, workdir, topology_file, source_args):
        result = runner.invoke(
            app,
            ["run", "--topology", str(topology_file), "--revision", REVISION,
             "--revision", NEXT_REVISION, *source_args],
        )
        assert result.exit_code == 0, result.output
        assert "Deckhand Run" in result.output

        result = runner.invoke(app, ["rollback", "--topology", str(topology_file)])
        assert result.exit_code == 0, result.output
        assert "Rolled back to revision 3f9c2a7e41b8" in result.output

    def test_route_gap_exits_nonzero(self, workdir, topology_file, source_args):
        result = runner.invoke(
            app,
            ["run", "--topology", str(topology_file), "--revision", REVISION,
             "--route", "/=static-fallback", *source_args],
        )
        assert result.exit_code == 1
        assert "still serving" in result.output

    def test_unknown_run_status(self, workdir):
        result = runner.invoke(app, ["status", "--run", "dh-missing"])
        assert result.exit_code == 1
        assert "No ledger entries" in result.output


class TestRenderProxy:
    def test_default_routes(self, workdir):
        result = runner.invoke(app, ["render-proxy"])
        assert result.exit_code == 0, result.output
        assert "location /api/ {" in result.output
        assert "proxy_pass http://api:8000;" in result.output
        assert "try_files $uri $uri/ /index.html;" in result.output

    def test_missing_api_route(self, workdir):
        result = runner.invoke(app, ["render-proxy", "--route", "/=static-fallback"])
        assert result.exit_code == 1
        assert "RoutingGapError" in result.output

    def test_write_to_file(self, workdir):
        out = workdir / "nginx.conf"
        result = runner.invoke(app, ["render-proxy", "--output", str(out)])
        assert result.exit_code == 0
        assert "proxy_pass" in out.read_text()


class TestProductionGuard:
    def test_production_with_local_backend_refused(self, workdir, topology_file, monkeypatch):
        monkeypatch.setenv("DECKHAND_ENVIRONMENT", "production")
        result = runner.invoke(app, ["provision", str(topology_file)])
        assert result.exit_code == 1
        assert "ProductionConfigError" in result.output
        assert not (workdir / ".deckhand" / "provider.json").exists()
