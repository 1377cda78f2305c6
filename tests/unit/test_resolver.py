"""Tests for runtime configuration resolution at service start."""

from __future__ import annotations

import logging

import pytest

from deckhand.activate.resolver import (
    ResolutionPolicy,
    environment_from_document,
    resolve_runtime_configuration,
)
from deckhand.errors import ConfigurationPropagationError


class TestAllowList:
    def test_explicit_value_used_verbatim(self):
        resolution = resolve_runtime_configuration(
            {"ALLOWED_HOSTS": "shop.example.com,203.0.113.10"}
        )
        assert resolution.config.allowed_hosts == ("shop.example.com", "203.0.113.10")
        assert "ALLOWED_HOSTS" not in resolution.defaulted

    def test_explicit_value_used_under_strict(self):
        resolution = resolve_runtime_configuration({"ALLOWED_HOSTS": "*"}, "strict")
        assert resolution.config.allowed_hosts == ("*",)

    @pytest.mark.parametrize("env", [{}, {"ALLOWED_HOSTS": ""}, {"ALLOWED_HOSTS": " , "}])
    def test_missing_defaults_to_wildcard_with_warning(self, env, caplog):
        with caplog.at_level(logging.WARNING, logger="deckhand.activate.resolver"):
            resolution = resolve_runtime_configuration(env)
        assert resolution.config.allowed_hosts == ("*",)
        assert "ALLOWED_HOSTS" in resolution.defaulted
        assert "defaulting to '*'" in caplog.text

    def test_never_resolves_to_empty(self):
        """The resolved allow-list admits requests whatever the input."""
        for env in ({}, {"ALLOWED_HOSTS": ""}, {"ALLOWED_HOSTS": ","}):
            config = resolve_runtime_configuration(env).config
            assert config.allowed_hosts
            assert config.allows_host("203.0.113.10")

    @pytest.mark.parametrize("env", [{}, {"ALLOWED_HOSTS": ""}])
    def test_strict_policy_refuses_default(self, env):
        with pytest.raises(ConfigurationPropagationError) as excinfo:
            resolve_runtime_configuration(env, ResolutionPolicy.STRICT)
        assert excinfo.value.key == "ALLOWED_HOSTS"
        assert excinfo.value.reason == ConfigurationPropagationError.ABSENT
        assert "ALLOWED_HOSTS (absent)" in str(excinfo.value)


class TestOtherKeys:
    @pytest.mark.parametrize(("raw", "expected"), [("true", True), ("1", True), ("off", False)])
    def test_debug_parsing(self, raw, expected):
        config = resolve_runtime_configuration({"ALLOWED_HOSTS": "*", "DEBUG": raw}).config
        assert config.debug is expected

    def test_debug_defaults_off(self):
        resolution = resolve_runtime_configuration({"ALLOWED_HOSTS": "*"})
        assert resolution.config.debug is False
        assert "DEBUG" in resolution.defaulted

    def test_invalid_debug(self):
        with pytest.raises(ConfigurationPropagationError, match="DEBUG \\(invalid\\)"):
            resolve_runtime_configuration({"ALLOWED_HOSTS": "*", "DEBUG": "maybe"})

    def test_upstream_routes(self):
        config = resolve_runtime_configuration(
            {"ALLOWED_HOSTS": "*", "UPSTREAM_ROUTES": "/api/=api:8000,/admin/=api:8001"}
        ).config
        assert str(config.upstreams["/admin/"]) == "api:8001"

    def test_default_upstreams(self):
        config = resolve_runtime_configuration({"ALLOWED_HOSTS": "*"}).config
        assert str(config.upstreams["/api/"]) == "api:8000"

    @pytest.mark.parametrize("raw", ["/api/", "/api/=api:99999", "/api/=:8000"])
    def test_invalid_upstream_routes(self, raw):
        with pytest.raises(ConfigurationPropagationError) as excinfo:
            resolve_runtime_configuration({"ALLOWED_HOSTS": "*", "UPSTREAM_ROUTES": raw})
        assert excinfo.value.reason == ConfigurationPropagationError.INVALID

    def test_unrelated_keys_ignored(self):
        config = resolve_runtime_configuration({"ALLOWED_HOSTS": "*", "PATH": "/usr/bin"}).config
        assert config.allowed_hosts == ("*",)


class TestEnvironmentFromDocument:
    def test_camel_case_document(self):
        env = environment_from_document({
            "allowedHosts": ["shop.example.com", "203.0.113.10"],
            "debug": False,
            "upstreams": {"/api/": "api:8000"},
        })
        assert env == {
            "ALLOWED_HOSTS": "shop.example.com,203.0.113.10",
            "DEBUG": "false",
            "UPSTREAM_ROUTES": "/api/=api:8000",
        }

    def test_plain_env_map_passes_through(self):
        assert environment_from_document({"ALLOWED_HOSTS": "*", "EXTRA": 3}) == {
            "ALLOWED_HOSTS": "*",
            "EXTRA": "3",
        }

    def test_empty_list_stays_empty(self):
        """An empty allow-list is left for resolution to apply its policy to."""
        env = environment_from_document({"allowedHosts": []})
        assert env == {"ALLOWED_HOSTS": ""}
        with pytest.raises(ConfigurationPropagationError):
            resolve_runtime_configuration(env, "strict")

    def test_none_values_dropped(self):
        assert environment_from_document({"debug": None}) == {}
