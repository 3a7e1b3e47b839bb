"""Runtime configuration for the agent supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ServerSettings:
    """Embedded opencode server settings."""

    command: str = "opencode"
    hostname: str = "127.0.0.1"
    port: int = 4096
    startup_timeout_seconds: float = 30.0
    anthropic_api_key: str = ""
    agent: str = "build"


@dataclass(slots=True)
class HttpSettings:
    """Timeouts for calls against the opencode server.

    ``request_timeout_seconds=0`` and ``read_timeout_seconds=0`` mean no
    deadline; long prompts and idle event feeds can stay silent for minutes.
    """

    connect_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 0.0
    read_timeout_seconds: float = 0.0


@dataclass(slots=True)
class StreamSettings:
    """Event feed consumer settings."""

    max_retries: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 10.0
    include_running_tools: bool = False


@dataclass(slots=True)
class PollerSettings:
    """Completion poller settings."""

    poll_interval_seconds: float = 2.0
    stop_check_interval_seconds: float = 1.0
    max_consecutive_errors: int = 3


@dataclass(slots=True)
class GitSettings:
    """Identity and workspace layout for git operations."""

    user_name: str = "ADD Agent"
    user_email: str = "agent@add.dev"
    workspace_root: Path = Path("/tmp")


@dataclass(slots=True)
class GithubSettings:
    """GitHub API access."""

    token: str = ""
    api_url: str = "https://api.github.com"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".fly_agent.db")
    sqlite_busy_timeout_ms: int = 5_000
    server: ServerSettings = field(default_factory=ServerSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    git: GitSettings = field(default_factory=GitSettings)
    github: GithubSettings = field(default_factory=GithubSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("FLY_AGENT_DB_PATH", ".fly_agent.db")),
            sqlite_busy_timeout_ms=int(os.getenv("FLY_AGENT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            server=ServerSettings(
                command=os.getenv("FLY_AGENT_OPENCODE_COMMAND", "opencode"),
                hostname=os.getenv("FLY_AGENT_OPENCODE_HOSTNAME", "127.0.0.1"),
                port=int(os.getenv("FLY_AGENT_OPENCODE_PORT", "4096")),
                startup_timeout_seconds=float(
                    os.getenv("FLY_AGENT_OPENCODE_STARTUP_TIMEOUT_SECONDS", "30"),
                ),
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
                agent=os.getenv("FLY_AGENT_OPENCODE_AGENT", "build"),
            ),
            http=HttpSettings(
                connect_timeout_seconds=float(
                    os.getenv("FLY_AGENT_HTTP_CONNECT_TIMEOUT_SECONDS", "30"),
                ),
                request_timeout_seconds=float(
                    os.getenv("FLY_AGENT_HTTP_REQUEST_TIMEOUT_SECONDS", "0"),
                ),
                read_timeout_seconds=float(os.getenv("FLY_AGENT_HTTP_READ_TIMEOUT_SECONDS", "0")),
            ),
            stream=StreamSettings(
                max_retries=int(os.getenv("FLY_AGENT_STREAM_MAX_RETRIES", "5")),
                retry_base_seconds=float(os.getenv("FLY_AGENT_STREAM_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("FLY_AGENT_STREAM_RETRY_MAX_SECONDS", "10.0")),
                include_running_tools=_env_bool(
                    "FLY_AGENT_STREAM_INCLUDE_RUNNING_TOOLS",
                    default=False,
                ),
            ),
            poller=PollerSettings(
                poll_interval_seconds=float(
                    os.getenv("FLY_AGENT_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stop_check_interval_seconds=float(
                    os.getenv("FLY_AGENT_STOP_CHECK_INTERVAL_SECONDS", "1.0"),
                ),
                max_consecutive_errors=int(
                    os.getenv("FLY_AGENT_POLL_MAX_CONSECUTIVE_ERRORS", "3"),
                ),
            ),
            git=GitSettings(
                user_name=os.getenv("FLY_AGENT_GIT_USER_NAME", "ADD Agent"),
                user_email=os.getenv("FLY_AGENT_GIT_USER_EMAIL", "agent@add.dev"),
                workspace_root=Path(os.getenv("FLY_AGENT_WORKSPACE_ROOT", "/tmp")),
            ),
            github=GithubSettings(
                token=os.getenv("GITHUB_TOKEN", ""),
                api_url=os.getenv("FLY_AGENT_GITHUB_API_URL", "https://api.github.com"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot run with."""

        if not 0 < self.server.port < 65_536:
            raise ValueError("FLY_AGENT_OPENCODE_PORT must be between 1 and 65535.")
        if self.server.startup_timeout_seconds <= 0:
            raise ValueError("FLY_AGENT_OPENCODE_STARTUP_TIMEOUT_SECONDS must be > 0.")
        if self.http.connect_timeout_seconds <= 0:
            raise ValueError("FLY_AGENT_HTTP_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if self.http.request_timeout_seconds < 0 or self.http.read_timeout_seconds < 0:
            raise ValueError("FLY_AGENT_HTTP_*_TIMEOUT_SECONDS must be >= 0.")
        if self.stream.max_retries < 0:
            raise ValueError("FLY_AGENT_STREAM_MAX_RETRIES must be >= 0.")
        if self.stream.retry_base_seconds < 0 or self.stream.retry_max_seconds < 0:
            raise ValueError("FLY_AGENT_STREAM_RETRY_*_SECONDS must be >= 0.")
        if self.poller.poll_interval_seconds <= 0:
            raise ValueError("FLY_AGENT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.poller.stop_check_interval_seconds <= 0:
            raise ValueError("FLY_AGENT_STOP_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.poller.max_consecutive_errors <= 0:
            raise ValueError("FLY_AGENT_POLL_MAX_CONSECUTIVE_ERRORS must be > 0.")

    def validate_for_job(self) -> None:
        """Additional checks required before running a full clone-to-PR job."""

        self.validate()
        if not self.github.token:
            raise ValueError("GITHUB_TOKEN is required to clone, push and open pull requests.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
