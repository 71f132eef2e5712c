import logging

import pytest

from ripple.configuration import (
    DEFAULT_CONFIG,
    Config,
    interpolate_config,
    load_configuration,
    merge_dicts,
    string_to_type,
)
from ripple.context import configure_logging, get_logger


class TestLoadConfiguration:
    """Test loading the packaged defaults and user overrides."""

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/tester")
        config = load_configuration(DEFAULT_CONFIG)

        assert isinstance(config, Config)
        assert config.build.command == "mvn clean install"
        assert config.build.skip_tests_flag == "-DskipTests"
        assert config.build.timeout is None
        assert config.build.env == {}
        assert config.manifest.strict is False
        assert config.paths.home == "/home/tester/.ripple"
        assert config.paths.manifest == "/home/tester/.ripple/build-manifest.json"
        assert config.paths.logs == "/home/tester/.ripple/logs"

    def test_user_config_is_merged(self, tmp_path):
        user = tmp_path / "config.toml"
        user.write_text(
            "[build]\n"
            "command = \"./mvnw -B install\"\n"
            "timeout = 600\n"
            "[paths]\n"
            f"home = \"{tmp_path}\"\n"
        )
        config = load_configuration(DEFAULT_CONFIG, user_config_path=str(user))

        assert config.build.command == "./mvnw -B install"
        assert config.build.timeout == 600
        assert config.build.skip_tests_flag == "-DskipTests"
        assert config.paths.manifest == f"{tmp_path}/build-manifest.json"

    def test_missing_user_config_is_ignored(self, tmp_path):
        config = load_configuration(DEFAULT_CONFIG, user_config_path=str(tmp_path / "none.toml"))
        assert config.build.command == "mvn clean install"

    def test_env_var_overrides(self, monkeypatch):
        monkeypatch.setenv("RIPPLE__MANIFEST__STRICT", "true")
        monkeypatch.setenv("RIPPLE__BUILD__MAX_RETRY_ROUNDS", "5")
        config = load_configuration(DEFAULT_CONFIG, env_var_prefix="RIPPLE")

        assert config.manifest.strict is True
        assert config.build.max_retry_rounds == 5

    def test_empty_build_command_is_rejected(self, tmp_path):
        user = tmp_path / "config.toml"
        user.write_text("[build]\ncommand = \"  \"\n")
        with pytest.raises(ValueError, match="build.command"):
            load_configuration(DEFAULT_CONFIG, user_config_path=str(user))


class TestHelpers:
    def test_string_to_type(self):
        assert string_to_type("TRUE") is True
        assert string_to_type("false") is False
        assert string_to_type("3") == 3
        assert string_to_type("[1, 2]") == [1, 2]
        assert string_to_type("mvn install") == "mvn install"

    def test_merge_dicts_is_recursive(self):
        merged = merge_dicts({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_interpolate_references(self):
        config = interpolate_config({"paths": {"home": "/h", "logs": "${paths.home}/logs"}})
        assert config.paths.logs == "/h/logs"

    def test_chained_references_resolve(self):
        config = interpolate_config({
            "paths": {"root": "/r", "home": "${paths.root}/home", "logs": "${paths.home}/logs"},
        })
        assert config.paths.logs == "/r/home/logs"

    def test_env_var_override_adds_missing_key(self, monkeypatch):
        monkeypatch.setenv("RIPPLE__CLONE__BRANCH", "develop")
        monkeypatch.setenv("RIPPLE__NOSECTION", "ignored")
        config = interpolate_config({"clone": {"org": "acme"}}, env_var_prefix="RIPPLE")
        assert config.clone.branch == "develop"
        assert "nosection" not in config

    def test_copy_detaches_sections(self):
        config = interpolate_config({"build": {"command": "mvn install"}})
        copied = config.copy()
        copied.build.command = "gradle build"
        assert config.build.command == "mvn install"


class TestLogging:
    def test_get_logger_returns_child(self):
        assert get_logger().name == "ripple"
        assert get_logger("workflow").name == "ripple.workflow"

    def test_configure_logging_for_tests(self):
        logger = configure_logging(testing=True)
        assert logger.name == "ripple-test-logger"
        assert any(isinstance(h, logging.StreamHandler) for h in logger.handlers)
