"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".kanban_orchestrator" / "ko.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    worktree_dir: Path | None = None
    base_branch: str = "main"
    git_remote: str = "origin"
    claude_path: str = "claude"
    agent_model: str | None = None
    permission_mode: str = "acceptEdits"
    max_iterations: int = 50
    turns_per_iteration: int = 1
    iteration_timeout: float = 30 * 60
    iteration_delay: float = 1.0
    buffer_lines: int = 1000
    terminal_pty: bool = True
    log_level: str = "INFO"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def worktrees_path(self) -> Path:
        """Directory holding ticket worktrees, defaulting to <repo>/.worktrees."""
        if self.worktree_dir is not None:
            return Path(self.worktree_dir)
        return Path(self.repo_path) / ".worktrees"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("KO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("KO_REPO_PATH"):
            config.repo_path = Path(repo)

        if wt_dir := os.environ.get("KO_WORKTREE_DIR"):
            config.worktree_dir = Path(wt_dir)

        if branch := os.environ.get("KO_BASE_BRANCH"):
            config.base_branch = branch

        if remote := os.environ.get("KO_GIT_REMOTE"):
            config.git_remote = remote

        if claude := os.environ.get("KO_CLAUDE_PATH"):
            config.claude_path = claude

        config.agent_model = os.environ.get("KO_AGENT_MODEL") or None

        if mode := os.environ.get("KO_PERMISSION_MODE"):
            config.permission_mode = mode

        if max_iter := os.environ.get("KO_MAX_ITERATIONS"):
            config.max_iterations = int(max_iter)

        if turns := os.environ.get("KO_TURNS_PER_ITERATION"):
            config.turns_per_iteration = int(turns)

        if timeout := os.environ.get("KO_ITERATION_TIMEOUT"):
            config.iteration_timeout = float(timeout)

        if delay := os.environ.get("KO_ITERATION_DELAY"):
            config.iteration_delay = float(delay)

        if lines := os.environ.get("KO_BUFFER_LINES"):
            config.buffer_lines = int(lines)

        if pty_flag := os.environ.get("KO_TERMINAL_PTY"):
            config.terminal_pty = pty_flag.lower() not in ("0", "false", "no", "off")

        if level := os.environ.get("KO_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("KO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
