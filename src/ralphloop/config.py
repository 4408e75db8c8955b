"""Configuration management for the ralph loop."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_ALLOWED_TOOLS = "Edit,Write,Bash,Read,Glob,Grep"

# Seconds to sleep after a credit/quota exhaustion error before retrying.
CREDIT_WAIT_SECONDS = 3600

CONFIG_FILE_NAME = ".ralph.yaml"

_POSITIVE_INT = re.compile(r"^[1-9][0-9]*$")
_NON_NEGATIVE_INT = re.compile(r"^[0-9]+$")

# Field name -> environment variable that overrides it.
ENV_NAMES: dict[str, str] = {
    "claude_model": "CLAUDE_MODEL",
    "timeout": "RALPH_TIMEOUT",
    "max_retries": "MAX_RETRIES",
    "retry_delay": "RALPH_RETRY_DELAY",
    "allowed_tools": "RALPH_ALLOWED_TOOLS",
    "base_branch": "RALPH_BASE_BRANCH",
    "iter_hook": "RALPH_ITER_HOOK",
    "complete_hook": "RALPH_COMPLETE_HOOK",
    "max_stalls": "RALPH_MAX_STALLS",
    "log_keep": "RALPH_LOG_KEEP",
    "no_git": "RALPH_NO_GIT",
    "no_pr": "RALPH_NO_PR",
    "max_credit_waits": "RALPH_MAX_CREDIT_WAITS",
    "plan_prompt": "RALPH_PLAN_PROMPT",
    "git_name": "RALPH_GIT_NAME",
    "git_email": "RALPH_GIT_EMAIL",
    "github_repo": "RALPH_GITHUB_REPO",
    "log_level": "RALPH_LOG_LEVEL",
}


class ConfigError(Exception):
    """Raised when a configuration value is invalid."""

    pass


def validate_int(name: str, value: Any, allow_zero: bool = False) -> int:
    """Parse an integer setting, rejecting anything but plain digits.

    Args:
        name: Setting name used in the error message (the environment name).
        value: Raw value from the environment or the YAML file.
        allow_zero: Accept 0 for settings where it means "unlimited"/"disabled".

    Returns:
        The parsed integer.

    Raises:
        ConfigError: If the value is not a positive (or non-negative) integer.
    """
    text = str(value).strip()
    pattern = _NON_NEGATIVE_INT if allow_zero else _POSITIVE_INT
    if isinstance(value, bool) or not pattern.match(text):
        kind = "a non-negative integer" if allow_zero else "a positive integer"
        raise ConfigError(f"{name} must be {kind} (got '{value}')")
    return int(text)


def _load_file_settings(project_dir: Path) -> dict[str, Any]:
    """Load optional settings from .ralph.yaml in the project root."""
    config_path = project_dir / CONFIG_FILE_NAME
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping of settings")
    unknown = sorted(set(data) - set(ENV_NAMES))
    if unknown:
        raise ConfigError(f"Unknown setting(s) in {config_path}: {', '.join(unknown)}")
    return data


@dataclass
class RalphConfig:
    """Configuration settings for a ralph run."""

    project_dir: Path = field(default_factory=Path.cwd)

    # Agent invocation
    claude_model: Optional[str] = None
    timeout: Optional[int] = None  # None = no per-call timeout
    max_retries: int = 3
    retry_delay: int = 5
    allowed_tools: str = DEFAULT_ALLOWED_TOOLS
    max_credit_waits: int = 0  # 0 = wait out credit exhaustion forever
    credit_wait_seconds: int = CREDIT_WAIT_SECONDS
    plan_prompt: Optional[str] = None

    # Loop control
    max_stalls: int = 3
    log_keep: int = 50  # 0 = keep every log file

    # Hooks (trusted shell expressions)
    iter_hook: Optional[str] = None
    complete_hook: Optional[str] = None

    # Publishing
    base_branch: str = "main"
    no_git: bool = False
    no_pr: bool = False
    git_name: Optional[str] = None
    git_email: Optional[str] = None
    github_repo: Optional[str] = None
    github_token: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        project_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RalphConfig:
        """Load configuration from .ralph.yaml and environment variables.

        Environment variables take precedence over the YAML file, which takes
        precedence over the built-in defaults. Every integer setting is
        validated before it is returned.

        Args:
            project_dir: Project root. Defaults to CWD.
            environ: Environment mapping. Defaults to os.environ after .env loading.

        Returns:
            RalphConfig instance.

        Raises:
            ConfigError: If any setting is invalid.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        project = Path(project_dir) if project_dir else Path.cwd()
        file_settings = _load_file_settings(project)

        def raw(name: str) -> Any:
            env_value = environ.get(ENV_NAMES[name], "")
            if env_value != "":
                return env_value
            return file_settings.get(name)

        def text(name: str, default: Optional[str] = None) -> Optional[str]:
            value = raw(name)
            return str(value) if value not in (None, "") else default

        def integer(name: str, default: Optional[int], allow_zero: bool = False) -> Optional[int]:
            value = raw(name)
            if value is None or value == "":
                return default
            return validate_int(ENV_NAMES[name], value, allow_zero=allow_zero)

        def flag(name: str) -> bool:
            value = raw(name)
            if isinstance(value, bool):
                return value
            return value not in (None, "")

        return cls(
            project_dir=project,
            claude_model=text("claude_model"),
            timeout=integer("timeout", None),
            max_retries=integer("max_retries", 3),
            retry_delay=integer("retry_delay", 5),
            allowed_tools=text("allowed_tools", DEFAULT_ALLOWED_TOOLS),
            max_credit_waits=integer("max_credit_waits", 0, allow_zero=True),
            plan_prompt=text("plan_prompt"),
            max_stalls=integer("max_stalls", 3),
            log_keep=integer("log_keep", 50, allow_zero=True),
            iter_hook=text("iter_hook"),
            complete_hook=text("complete_hook"),
            base_branch=text("base_branch", "main"),
            no_git=flag("no_git"),
            no_pr=flag("no_pr"),
            git_name=text("git_name"),
            git_email=text("git_email"),
            github_repo=text("github_repo"),
            github_token=environ.get("GH_TOKEN") or environ.get("GITHUB_TOKEN") or None,
            log_level=text("log_level", "INFO").upper(),
        )

    @property
    def logs_dir(self) -> Path:
        """Directory holding run logs, archives and scratch capture files."""
        return self.project_dir / "logs"

    @property
    def prd_file(self) -> Path:
        """Path to the declared task list."""
        return self.project_dir / "PRD.md"

    @property
    def progress_file(self) -> Path:
        """Path to the completion log."""
        return self.project_dir / "progress.txt"

    @property
    def prompt_file(self) -> Path:
        """Path to the optional agent prompt override."""
        return self.project_dir / "prompt.txt"

    @property
    def lock_file(self) -> Path:
        """Path to the single-instance lockfile."""
        return self.project_dir / ".ralph.lock"
