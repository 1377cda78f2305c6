"""docker compose on the provisioned host, driven over ssh."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from pathlib import Path

from deckhand.activate.engines import API_SERVICE, EngineError, PullFailure, TopologyPlan, render_compose
from deckhand.errors import AccessError
from deckhand.models.host import HostRecord
from deckhand.publish.docker import Runner, is_access_failure

logger = logging.getLogger(__name__)


class ComposeEngine:
    """Run the topology with docker compose on the remote host.

    Parameters
    ----------
    ssh_key_path:
        Private key for the host's login user.
    ssh_user:
        Login user; when unset, the user recorded on the host is used.
    remote_dir:
        Directory on the host holding the compose file, proxy config and
        the plan of the running topology.
    run:
        ``subprocess.run``-compatible callable, replaceable in tests.
    """

    COMPOSE_FILE = "compose.json"
    PLAN_FILE = "deckhand-plan.json"
    PROXY_CONF = "nginx.conf"

    def __init__(
        self,
        *,
        ssh_key_path: Path | None = None,
        ssh_user: str | None = None,
        remote_dir: str = "/opt/deckhand",
        run: Runner = subprocess.run,
    ) -> None:
        self._key = ssh_key_path
        self._user = ssh_user
        self._dir = remote_dir
        self._run = run

    def _ssh(self, host: HostRecord, command: str, *, stdin: str | None = None) -> subprocess.CompletedProcess:
        argv = ["ssh", "-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
        if self._key:
            argv += ["-i", str(self._key)]
        login = f"{self._user or host.ssh_username}@{host.address}"
        argv += [login, command]
        try:
            proc = self._run(argv, capture_output=True, text=True, input=stdin)
        except FileNotFoundError as exc:
            raise EngineError("ssh client not found on PATH") from exc
        stderr = (proc.stderr or "").strip()
        if proc.returncode != 0 and is_access_failure(stderr):
            raise AccessError(
                f"{login} was refused: {stderr}",
                remediation="Check the SSH key and that the login user is in the docker group.",
            )
        return proc

    def _compose(self, *args: str) -> str:
        return " ".join(
            ["docker", "compose", "-f", shlex.quote(f"{self._dir}/{self.COMPOSE_FILE}"), *args]
        )

    def _upload(self, host: HostRecord, name: str, content: str) -> None:
        path = shlex.quote(f"{self._dir}/{name}")
        proc = self._ssh(
            host, f"mkdir -p {shlex.quote(self._dir)} && cat > {path}", stdin=content
        )
        if proc.returncode != 0:
            raise EngineError(f"could not write {name} on {host.address}: {proc.stderr}")

    def pull(self, host: HostRecord, image: str) -> None:
        proc = self._ssh(host, f"docker pull {shlex.quote(image)}")
        if proc.returncode != 0:
            raise PullFailure(f"pull of {image} failed: {(proc.stderr or '').strip()}")

    def running(self, host: HostRecord) -> TopologyPlan | None:
        proc = self._ssh(host, f"cat {shlex.quote(f'{self._dir}/{self.PLAN_FILE}')}")
        if proc.returncode != 0 or not proc.stdout.strip():
            return None
        return TopologyPlan.model_validate_json(proc.stdout)

    def stop(self, host: HostRecord) -> TopologyPlan | None:
        previous = self.running(host)
        if previous is None:
            return None
        proc = self._ssh(
            host,
            f"{self._compose('down')} && rm -f {shlex.quote(f'{self._dir}/{self.PLAN_FILE}')}",
        )
        if proc.returncode != 0:
            raise EngineError(f"compose down failed: {(proc.stderr or '').strip()}")
        return previous

    def start(self, host: HostRecord, plan: TopologyPlan) -> None:
        self._upload(host, self.PROXY_CONF, plan.proxy_conf)
        self._upload(host, self.COMPOSE_FILE, json.dumps(render_compose(plan), indent=2))
        proc = self._ssh(host, self._compose("up", "-d", "--wait"))
        if proc.returncode != 0:
            raise EngineError(f"compose up failed: {(proc.stderr or '').strip()}")
        self._upload(host, self.PLAN_FILE, plan.model_dump_json())
        logger.info("Started %s on %s", plan.project, host.address)

    def inspect_environment(self, host: HostRecord, service: str) -> dict[str, str]:
        proc = self._ssh(host, self._compose("exec", "-T", shlex.quote(service), "env"))
        if proc.returncode != 0:
            if service == API_SERVICE:
                logger.error("Could not read the api environment: %s", proc.stderr)
            return {}
        env: dict[str, str] = {}
        for line in proc.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                env[key] = value
        return env
