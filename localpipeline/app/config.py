"""Application configuration."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Storage
    home_dir: Path = Path.home() / ".localpipeline"

    # Repository the agents work on
    repo_root: Path = Field(default_factory=Path.cwd)
    trunk_branch: str = "main"

    # Orchestrator
    agent_names: list[str] = ["ember", "tide", "gale", "terra"]
    max_retries: int = 3
    poll_interval: float = 2.0  # seconds
    shutdown_timeout: float = 30.0  # seconds

    # Agent process
    agent_command: list[str] = [
        "claude", "-p", "{prompt}", "--dangerously-skip-permissions"
    ]
    install_command: list[str] = ["npm", "install"]
    instructions_filename: str = "CLAUDE.md"

    # HTTP
    host: str = "127.0.0.1"
    port: int = 4040

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOCALPIPELINE_",
        case_sensitive=False
    )

    @property
    def agents_path(self) -> Path:
        return self.home_dir / "agents.json"

    @property
    def queue_path(self) -> Path:
        return self.home_dir / "queue.json"

    @property
    def failures_path(self) -> Path:
        return self.home_dir / "failures.json"

    @property
    def activity_path(self) -> Path:
        return self.home_dir / "agent-activity.jsonl"

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / "logs"


# Global settings instance
settings = Settings()
