"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralphloop.config import (
    DEFAULT_ALLOWED_TOOLS,
    ConfigError,
    RalphConfig,
    validate_int,
)


class TestValidateInt:
    """Tests for validate_int."""

    def test_accepts_positive(self) -> None:
        assert validate_int("MAX_RETRIES", "7") == 7

    @pytest.mark.parametrize("value", ["0", "-1", "abc", "1.5", "", " ", "3x"])
    def test_rejects_non_positive(self, value: str) -> None:
        with pytest.raises(ConfigError, match="must be a positive integer"):
            validate_int("MAX_RETRIES", value)

    def test_zero_allowed_when_requested(self) -> None:
        assert validate_int("RALPH_LOG_KEEP", "0", allow_zero=True) == 0

    def test_negative_rejected_even_when_zero_allowed(self) -> None:
        with pytest.raises(ConfigError, match="non-negative integer"):
            validate_int("RALPH_LOG_KEEP", "-3", allow_zero=True)

    def test_message_names_setting_and_value(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            validate_int("RALPH_TIMEOUT", "soon")
        assert str(exc_info.value) == "RALPH_TIMEOUT must be a positive integer (got 'soon')"

    def test_yaml_int_accepted(self) -> None:
        assert validate_int("RALPH_MAX_STALLS", 4) == 4

    def test_bool_rejected(self) -> None:
        with pytest.raises(ConfigError):
            validate_int("RALPH_MAX_STALLS", True)


class TestRalphConfig:
    """Tests for RalphConfig.from_env."""

    def test_defaults(self, tmp_path: Path) -> None:
        config = RalphConfig.from_env(tmp_path, environ={})

        assert config.project_dir == tmp_path
        assert config.claude_model is None
        assert config.timeout is None
        assert config.max_retries == 3
        assert config.retry_delay == 5
        assert config.allowed_tools == DEFAULT_ALLOWED_TOOLS
        assert config.max_stalls == 3
        assert config.log_keep == 50
        assert config.max_credit_waits == 0
        assert config.base_branch == "main"
        assert config.no_git is False
        assert config.no_pr is False
        assert config.github_token is None
        assert config.log_level == "INFO"

    def test_env_overrides(self, tmp_path: Path) -> None:
        environ = {
            "CLAUDE_MODEL": "opus",
            "RALPH_TIMEOUT": "600",
            "MAX_RETRIES": "5",
            "RALPH_RETRY_DELAY": "2",
            "RALPH_ALLOWED_TOOLS": "Read,Edit",
            "RALPH_BASE_BRANCH": "develop",
            "RALPH_MAX_STALLS": "7",
            "RALPH_LOG_KEEP": "0",
            "RALPH_MAX_CREDIT_WAITS": "2",
            "RALPH_NO_GIT": "1",
            "RALPH_NO_PR": "yes",
            "RALPH_ITER_HOOK": "echo hi",
            "RALPH_COMPLETE_HOOK": "echo bye",
            "GITHUB_TOKEN": "ghp_test",
            "RALPH_LOG_LEVEL": "debug",
        }
        config = RalphConfig.from_env(tmp_path, environ=environ)

        assert config.claude_model == "opus"
        assert config.timeout == 600
        assert config.max_retries == 5
        assert config.retry_delay == 2
        assert config.allowed_tools == "Read,Edit"
        assert config.base_branch == "develop"
        assert config.max_stalls == 7
        assert config.log_keep == 0
        assert config.max_credit_waits == 2
        assert config.no_git is True
        assert config.no_pr is True
        assert config.iter_hook == "echo hi"
        assert config.complete_hook == "echo bye"
        assert config.github_token == "ghp_test"
        assert config.log_level == "DEBUG"

    def test_gh_token_preferred(self, tmp_path: Path) -> None:
        config = RalphConfig.from_env(
            tmp_path, environ={"GH_TOKEN": "first", "GITHUB_TOKEN": "second"}
        )
        assert config.github_token == "first"

    def test_empty_env_value_uses_default(self, tmp_path: Path) -> None:
        config = RalphConfig.from_env(tmp_path, environ={"RALPH_MAX_STALLS": "", "RALPH_NO_GIT": ""})
        assert config.max_stalls == 3
        assert config.no_git is False

    @pytest.mark.parametrize(
        "name,value",
        [
            ("RALPH_MAX_STALLS", "0"),
            ("RALPH_MAX_STALLS", "abc"),
            ("MAX_RETRIES", "-2"),
            ("RALPH_TIMEOUT", "1m"),
            ("RALPH_LOG_KEEP", "abc"),
            ("RALPH_MAX_CREDIT_WAITS", "-1"),
        ],
    )
    def test_invalid_integer_rejected(self, tmp_path: Path, name: str, value: str) -> None:
        with pytest.raises(ConfigError, match=name):
            RalphConfig.from_env(tmp_path, environ={name: value})

    def test_yaml_file_settings(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph.yaml").write_text(
            "max_stalls: 5\nbase_branch: trunk\nno_pr: true\nlog_keep: 10\n"
        )
        config = RalphConfig.from_env(tmp_path, environ={})

        assert config.max_stalls == 5
        assert config.base_branch == "trunk"
        assert config.no_pr is True
        assert config.log_keep == 10

    def test_env_beats_yaml(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph.yaml").write_text("max_stalls: 5\n")
        config = RalphConfig.from_env(tmp_path, environ={"RALPH_MAX_STALLS": "9"})
        assert config.max_stalls == 9

    def test_yaml_unknown_key_rejected(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph.yaml").write_text("max_stall: 5\n")
        with pytest.raises(ConfigError, match="Unknown setting"):
            RalphConfig.from_env(tmp_path, environ={})

    def test_yaml_must_be_mapping(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph.yaml").write_text("- one\n- two\n")
        with pytest.raises(ConfigError, match="mapping"):
            RalphConfig.from_env(tmp_path, environ={})

    def test_yaml_invalid_integer_names_env_variable(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph.yaml").write_text("max_stalls: none\n")
        with pytest.raises(ConfigError, match="RALPH_MAX_STALLS"):
            RalphConfig.from_env(tmp_path, environ={})

    def test_reads_os_environ_by_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RALPH_MAX_STALLS", "6")
        config = RalphConfig.from_env(tmp_path)
        assert config.max_stalls == 6

    def test_paths(self, tmp_path: Path) -> None:
        config = RalphConfig(project_dir=tmp_path)

        assert config.prd_file == tmp_path / "PRD.md"
        assert config.progress_file == tmp_path / "progress.txt"
        assert config.prompt_file == tmp_path / "prompt.txt"
        assert config.logs_dir == tmp_path / "logs"
        assert config.lock_file == tmp_path / ".ralph.lock"
