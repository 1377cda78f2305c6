"""Tests for the ImagePublisher, builders and registries."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

import pytest

from deckhand.errors import AccessError, PublishError
from deckhand.models.artifacts import BuiltImage, Component
from deckhand.publish.builders import (
    BuildFailure,
    DirectoryBuilder,
    find_baked_configuration,
    parse_dockerfile,
)
from deckhand.publish.docker import DockerBuilder, DockerRegistry
from deckhand.publish.publisher import ImagePublisher
from deckhand.publish.registry import LocalRegistry

REVISION = "3f9c2a7e41b8d0c6a5e2f1b9c8d7e6a5b4c3d2e1"


def _api_dockerfile(sources) -> str:
    return (sources[Component.API] / "Dockerfile").read_text(encoding="utf-8")


class _LatestRejectingRegistry(LocalRegistry):
    def push(self, image, tag, *, immutable=False):
        if tag == "latest":
            raise RuntimeError("registry is read-only for mutable tags")
        return super().push(image, tag, immutable=immutable)


class _BrokenBuilder:
    """Fails for one component, delegates the rest."""

    def __init__(self, failing: Component):
        self._failing = failing
        self._inner = DirectoryBuilder()

    def build(self, component, source, revision):
        if component == self._failing:
            raise BuildFailure("npm ERR! missing script: build")
        return self._inner.build(component, source, revision)


class TestPublish:
    def test_publishes_matched_pair(self, publisher, sources, registry):
        result = publisher.publish(sources, REVISION)
        pair = result.pair
        assert pair.api.tag == pair.proxy.tag == "3f9c2a7e41b8"
        assert pair.api.registry == "registry.test/twotier"
        assert pair.api.digest.startswith("sha256:")
        assert result.latest_updated is True
        assert registry.resolve(Component.API, "latest") == pair.api.digest
        assert registry.resolve(Component.PROXY, "3f9c2a7e41b8") == pair.proxy.digest

    def test_republish_is_idempotent(self, publisher, sources):
        first = publisher.publish(sources, REVISION).pair
        second = publisher.publish(sources, REVISION).pair
        assert first == second

    def test_string_component_keys_accepted(self, publisher, sources):
        by_name = {c.value: p for c, p in sources.items()}
        assert publisher.publish(by_name, REVISION).pair.tag == "3f9c2a7e41b8"

    def test_one_build_failure_pushes_nothing(self, registry, sources):
        publisher = ImagePublisher(_BrokenBuilder(Component.PROXY), registry)
        with pytest.raises(PublishError) as excinfo:
            publisher.publish(sources, REVISION)
        assert excinfo.value.built == ["api"]
        assert "proxy" in excinfo.value.failed
        assert registry.tags(Component.API) == {}
        assert registry.tags(Component.PROXY) == {}

    def test_missing_source_fails(self, publisher, sources):
        with pytest.raises(PublishError, match="proxy") as excinfo:
            publisher.publish({Component.API: sources[Component.API]}, REVISION)
        assert excinfo.value.failed == {"proxy": "no source tree given"}

    def test_baked_allowed_hosts_rejected(self, publisher, make_source, sources, registry):
        sources[Component.API] = make_source(
            "baked", _api_dockerfile(sources) + "ENV ALLOWED_HOSTS=shop.example.com\n"
        )
        with pytest.raises(PublishError) as excinfo:
            publisher.publish(sources, REVISION)
        assert "ALLOWED_HOSTS" in excinfo.value.failed["api"]
        assert registry.tags(Component.PROXY) == {}

    def test_baked_secret_rejected(self, publisher, make_source, sources):
        sources[Component.API] = make_source(
            "secret", _api_dockerfile(sources) + "ENV DJANGO_SECRET_KEY abc123\n"
        )
        with pytest.raises(PublishError, match="api"):
            publisher.publish(sources, REVISION)

    def test_root_user_warns(self, publisher, make_source, sources, caplog):
        sources[Component.PROXY] = make_source("rooted", "FROM nginx:1.27-alpine\n")
        with caplog.at_level(logging.WARNING, logger="deckhand.publish.publisher"):
            publisher.publish(sources, REVISION)
        assert "non-root USER" in caplog.text

    def test_changed_content_cannot_overwrite_revision(self, publisher, sources):
        publisher.publish(sources, REVISION)
        (sources[Component.API] / "demo" / "wsgi.py").write_text("application = 1\n")
        with pytest.raises(PublishError, match="already exists"):
            publisher.publish(sources, REVISION)

    def test_invalid_revision(self, publisher, sources):
        with pytest.raises(PublishError):
            publisher.publish(sources, "latest")

    def test_latest_failure_keeps_pair(self, tmp_dir, sources):
        registry = _LatestRejectingRegistry(tmp_dir / "ro-registry")
        result = ImagePublisher(DirectoryBuilder(), registry).publish(sources, REVISION)
        assert result.latest_updated is False
        assert registry.resolve(Component.API, "3f9c2a7e41b8") == result.pair.api.digest
        assert registry.resolve(Component.API, "latest") is None


class TestResolve:
    def test_resolve_published(self, publisher, pair):
        assert publisher.resolve(REVISION) == pair

    def test_resolve_partial_is_refused(self, publisher, registry, sources):
        api = DirectoryBuilder().build(Component.API, sources[Component.API], REVISION)
        registry.push(api, "3f9c2a7e41b8", immutable=True)
        with pytest.raises(PublishError, match="missing proxy"):
            publisher.resolve(REVISION)

    def test_resolve_unknown(self, publisher):
        with pytest.raises(PublishError, match="not fully published"):
            publisher.resolve("0123456789ab")


class TestDockerfileParsing:
    def test_env_forms(self):
        text = (
            "FROM python:3.12\n"
            "# ENV COMMENTED=1\n"
            "ENV PYTHONUNBUFFERED=1 PORT=8000\n"
            "ENV LEGACY value with spaces\n"
            "ENV A=1 \\\n"
            "    B=2\n"
            "USER app:app\n"
        )
        keys, user = parse_dockerfile(text)
        assert keys == ["PYTHONUNBUFFERED", "PORT", "LEGACY", "A", "B"]
        assert user == "app"

    def test_no_user(self):
        assert parse_dockerfile("FROM scratch\n") == ([], "")

    def test_find_baked_configuration(self):
        keys = ["PORT", "DEBUG", "DB_PASSWORD", "GITHUB_TOKEN", "PYTHONPATH"]
        assert find_baked_configuration(keys) == ["DB_PASSWORD", "DEBUG", "GITHUB_TOKEN"]

    def test_missing_dockerfile(self, tmp_dir):
        (tmp_dir / "empty").mkdir()
        with pytest.raises(BuildFailure, match="no Dockerfile"):
            DirectoryBuilder().build(Component.API, tmp_dir / "empty", REVISION)

    def test_directory_builds_are_reproducible(self, sources):
        builder = DirectoryBuilder()
        a = builder.build(Component.PROXY, sources[Component.PROXY], REVISION)
        b = builder.build(Component.PROXY, sources[Component.PROXY], REVISION)
        assert a.digest == b.digest
        assert a.user == "nginx"


class _FakeDocker:
    """Answers docker CLI calls from a table keyed by subcommand."""

    def __init__(self, answers: dict[str, tuple[int, str, str]]):
        self.answers = answers
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        code, out, err = self.answers.get(argv[1], (0, "", ""))
        return subprocess.CompletedProcess(argv, code, stdout=out, stderr=err)


class _FakeManifests:
    """Answers ``docker manifest inspect <ref>`` from a table keyed by reference."""

    def __init__(self, manifests: dict[str, dict]):
        self.manifests = manifests
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        if argv[1] == "manifest":
            manifest = self.manifests.get(argv[-1])
            if manifest is None:
                return subprocess.CompletedProcess(argv, 1, stdout="", stderr="no such manifest")
            return subprocess.CompletedProcess(argv, 0, stdout=json.dumps(manifest), stderr="")
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")


_INDEX = {
    "mediaType": "application/vnd.oci.image.index.v1+json",
    "manifests": [
        {"digest": "sha256:m-amd64", "platform": {"os": "linux", "architecture": "amd64"}},
        {"digest": "sha256:m-attest", "platform": {"os": "unknown", "architecture": "unknown"}},
    ],
}


def _image() -> BuiltImage:
    return BuiltImage(
        component=Component.API, digest="sha256:abc", local_ref="deckhand-api:3f9c2a7e41b8"
    )


class TestDockerBackend:
    def test_build_inspects_image_id(self, sources):
        fake = _FakeDocker({"image": (0, "sha256:feed\n", "")})
        image = DockerBuilder(run=fake).build(Component.API, sources[Component.API], REVISION)
        assert image.digest == "sha256:feed"
        assert image.user == "app"
        assert fake.calls[0][:4] == ["docker", "build", "-t", "deckhand-api:3f9c2a7e41b8"]

    def test_daemon_permission_denied(self, sources):
        fake = _FakeDocker({
            "build": (1, "", "permission denied while trying to connect to the Docker daemon socket"),
        })
        with pytest.raises(AccessError):
            DockerBuilder(run=fake).build(Component.API, sources[Component.API], REVISION)

    def test_build_error_is_build_failure(self, sources):
        fake = _FakeDocker({"build": (1, "", "failed to solve: exit code 2")})
        with pytest.raises(BuildFailure, match="failed to solve"):
            DockerBuilder(run=fake).build(Component.API, sources[Component.API], REVISION)

    def test_push_tags_then_pushes(self):
        fake = _FakeDocker({"manifest": (1, "", "no such manifest")})
        digest = DockerRegistry("docker.io/acme", run=fake).push(
            _image(), "3f9c2a7e41b8", immutable=True
        )
        assert digest == "sha256:abc"
        assert [c[1] for c in fake.calls] == ["manifest", "tag", "push"]
        assert fake.calls[-1][2] == "docker.io/acme/api:3f9c2a7e41b8"

    def test_push_refused(self):
        fake = _FakeDocker({"push": (1, "", "denied: requested access to the resource is denied")})
        with pytest.raises(AccessError):
            DockerRegistry("docker.io/acme", run=fake).push(_image(), "latest")

    def test_immutable_conflict(self):
        fake = _FakeDocker({"manifest": (0, '{"config": {"digest": "sha256:other"}}', "")})
        with pytest.raises(PublishError, match="already exists"):
            DockerRegistry("docker.io/acme", run=fake).push(
                _image(), "3f9c2a7e41b8", immutable=True
            )

    def test_republish_behind_image_index_is_a_no_op(self):
        fake = _FakeManifests({
            "docker.io/acme/api:3f9c2a7e41b8": _INDEX,
            "docker.io/acme/api@sha256:m-amd64": {"config": {"digest": "sha256:abc"}},
        })
        registry = DockerRegistry("docker.io/acme", run=fake)
        assert registry.push(_image(), "3f9c2a7e41b8", immutable=True) == "sha256:abc"
        assert [c[1] for c in fake.calls] == ["manifest", "manifest"]
        assert registry.resolve(Component.API, "3f9c2a7e41b8") == "sha256:abc"

    def test_image_index_with_other_content_conflicts(self):
        fake = _FakeManifests({
            "docker.io/acme/api:3f9c2a7e41b8": _INDEX,
            "docker.io/acme/api@sha256:m-amd64": {"config": {"digest": "sha256:other"}},
        })
        with pytest.raises(PublishError, match="sha256:other"):
            DockerRegistry("docker.io/acme", run=fake).push(
                _image(), "3f9c2a7e41b8", immutable=True
            )
        assert "push" not in [c[1] for c in fake.calls]

    def test_publisher_propagates_access_error(self, sources, tmp_dir):
        fake = _FakeDocker({"build": (1, "", "unauthorized: authentication required")})
        publisher = ImagePublisher(DockerBuilder(run=fake), LocalRegistry(tmp_dir / "r"))
        with pytest.raises(AccessError):
            publisher.publish(sources, REVISION)


def test_local_registry_fetch_round_trip(registry: LocalRegistry, pair, tmp_dir: Path):
    payload = registry.fetch(Component.PROXY, pair.tag)
    assert payload
    with pytest.raises(FileNotFoundError):
        registry.fetch(Component.PROXY, "nope")
