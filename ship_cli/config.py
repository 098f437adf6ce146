"""
Configuration and Constants for ship

Centralizes configuration values and magic constants used throughout the codebase.
Values can be overridden via `.ship/config.yaml` or environment variables.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
import getpass
import os

import yaml

from .errors import ConfigError


class Constants:
    """Centralized constants for ship.

    These can be overridden at runtime or via environment variables.
    """

    # External tool commands
    JJ_COMMAND: str = os.getenv("SHIP_JJ_CMD", "jj")
    GITHUB_CLI_COMMAND: str = os.getenv("SHIP_GH_CMD", "gh")

    # Private directory layout
    SHIP_DIR: str = os.getenv("SHIP_DIR", ".ship")
    CONFIG_FILE: str = "config.yaml"
    WORKSPACES_FILE: str = "workspaces.json"
    WORKSPACES_LOCK_FILE: str = "workspaces.lock"

    # Git operations
    DEFAULT_BRANCH: str = os.getenv("SHIP_DEFAULT_BRANCH", "main")
    DEFAULT_WORKSPACE_NAME: str = "default"
    DEFAULT_WORKSPACE_PATH: str = ".ship/workspaces/{stack}"

    # Concurrency settings
    MAX_CONCURRENT_PR_LOOKUPS: int = int(os.getenv("SHIP_MAX_PR_LOOKUPS", "5"))
    MAX_CONCURRENT_PUSHES: int = int(os.getenv("SHIP_MAX_PUSHES", "3"))

    # Timeouts (in seconds)
    LOCAL_TIMEOUT: float = float(os.getenv("SHIP_LOCAL_TIMEOUT", "10"))
    GH_TIMEOUT: float = float(os.getenv("SHIP_GH_TIMEOUT", "30"))
    NETWORK_TIMEOUT: float = float(os.getenv("SHIP_NETWORK_TIMEOUT", "60"))
    LOCK_TIMEOUT: float = float(os.getenv("SHIP_LOCK_TIMEOUT", "10"))

    # Retry policy for idempotent external calls
    RETRY_ATTEMPTS: int = int(os.getenv("SHIP_RETRY_ATTEMPTS", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("SHIP_RETRY_DELAY", "0.5"))

    # Webhook daemon
    DAEMON_SOCKET_PATH: str = os.getenv("SHIP_DAEMON_SOCKET", "/tmp/ship-webhook.sock")

    # Issue tracker
    LINEAR_API_URL: str = os.getenv("SHIP_LINEAR_API_URL", "https://api.linear.app/graphql")

    # PR body generation
    SUMMARY_MAX_LENGTH: int = 500

    @classmethod
    def get_ship_dir(cls, root: Optional[Path] = None) -> Path:
        """Get the private ship directory as a Path object."""
        return (root or Path.cwd()) / cls.SHIP_DIR


@dataclass
class GitConfig:
    default_branch: str = Constants.DEFAULT_BRANCH


@dataclass
class PrConfig:
    open_browser: bool = False


@dataclass
class WorkspaceConfig:
    base_path: str = Constants.DEFAULT_WORKSPACE_PATH
    auto_navigate: bool = True
    auto_cleanup: bool = True


@dataclass
class LinearConfig:
    team_id: Optional[str] = None
    team_key: Optional[str] = None
    project_id: Optional[str] = None


@dataclass
class ShipConfig:
    """Repository-level settings read from `.ship/config.yaml`.

    Every section is optional in the file; missing keys keep their defaults.
    """
    git: GitConfig = field(default_factory=GitConfig)
    pr: PrConfig = field(default_factory=PrConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    linear: LinearConfig = field(default_factory=LinearConfig)
    api_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShipConfig':
        """Build a config from the parsed YAML mapping.

        Args:
            data: Mapping as produced by yaml.safe_load

        Returns:
            ShipConfig with defaults filled in

        Raises:
            ConfigError: If a section has the wrong shape
        """
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a mapping at the top level")

        def section(name: str) -> Dict[str, Any]:
            value = data.get(name) or {}
            if not isinstance(value, dict):
                raise ConfigError(f"Config section '{name}' must be a mapping")
            return value

        git = section("git")
        pr = section("pr")
        workspace = section("workspace")
        linear = section("linear")
        auth = section("auth")

        return cls(
            git=GitConfig(default_branch=git.get("defaultBranch", Constants.DEFAULT_BRANCH)),
            pr=PrConfig(open_browser=bool(pr.get("openBrowser", False))),
            workspace=WorkspaceConfig(
                base_path=workspace.get("basePath", Constants.DEFAULT_WORKSPACE_PATH),
                auto_navigate=bool(workspace.get("autoNavigate", True)),
                auto_cleanup=bool(workspace.get("autoCleanup", True)),
            ),
            linear=LinearConfig(
                team_id=linear.get("teamId"),
                team_key=linear.get("teamKey"),
                project_id=linear.get("projectId"),
            ),
            api_key=auth.get("apiKey") or os.getenv("LINEAR_API_KEY"),
        )

    @classmethod
    def load(cls, root: Optional[Path] = None) -> 'ShipConfig':
        """Load config from `.ship/config.yaml` under root.

        Args:
            root: Repository root (default: current directory)

        Returns:
            ShipConfig, all defaults when the file does not exist

        Raises:
            ConfigError: If the file cannot be parsed
        """
        config_path = Constants.get_ship_dir(root) / Constants.CONFIG_FILE
        if not config_path.exists():
            return cls(api_key=os.getenv("LINEAR_API_KEY"))

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {config_path}: {e}") from e

        return cls.from_dict(data)


def resolve_workspace_path(template: str, repo: str, stack: str, user: Optional[str] = None) -> str:
    """Substitute `{repo}`, `{stack}` and `{user}` in a workspace path template."""
    if user is None and "{user}" in template:
        user = os.getenv("USER") or getpass.getuser()
    return (
        template
        .replace("{repo}", repo)
        .replace("{stack}", stack)
        .replace("{user}", user or "")
    )
