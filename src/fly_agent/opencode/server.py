"""Lifecycle of the local ``opencode serve`` process."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from fly_agent.config import ServerSettings
from fly_agent.runtime.errors import ServerStartError

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_SECONDS = 2.0
_STARTUP_POLL_SECONDS = 0.2


@dataclass(slots=True)
class ServerConfig:
    """How to launch the server and which runtime config to hand it."""

    command: str = "opencode"
    hostname: str = "127.0.0.1"
    port: int = 4096
    startup_timeout_seconds: float = 30.0
    runtime_config: dict[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return f"http://{self.hostname}:{self.port}"

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> ServerConfig:
        return cls(
            command=settings.command,
            hostname=settings.hostname,
            port=settings.port,
            startup_timeout_seconds=settings.startup_timeout_seconds,
            runtime_config=build_runtime_config(anthropic_api_key=settings.anthropic_api_key),
        )


def build_runtime_config(*, anthropic_api_key: str) -> dict[str, Any]:
    """Provider credentials plus blanket permission for shell and edits."""

    config: dict[str, Any] = {"permission": {"bash": "allow", "edit": "allow"}}
    if anthropic_api_key:
        config["provider"] = {"anthropic": {"options": {"apiKey": anthropic_api_key}}}
    return config


def http_probe(url: str) -> bool:
    """Any HTTP answer means the server is listening."""

    try:
        httpx.get(f"{url}/config", timeout=_PROBE_TIMEOUT_SECONDS)
    except httpx.HTTPError:
        return False
    return True


class OpencodeServer:
    """Start and stop one embedded server; ``stop`` is idempotent."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        probe: Callable[[str], bool] = http_probe,
    ) -> None:
        self.config = config
        self._probe = probe
        self._process: subprocess.Popen[bytes] | None = None

    @property
    def url(self) -> str:
        return self.config.url

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> str:
        """Spawn the server and block until it answers or the startup window ends."""

        if self.running:
            return self.url

        run_args = [
            *shlex.split(self.config.command),
            "serve",
            f"--hostname={self.config.hostname}",
            f"--port={self.config.port}",
        ]
        env = os.environ.copy()
        env["OPENCODE_CONFIG_CONTENT"] = json.dumps(self.config.runtime_config)
        try:
            self._process = subprocess.Popen(run_args, env=env)  # noqa: S603
        except FileNotFoundError as error:
            raise ServerStartError(f"opencode command not found: {run_args[0]}") from error
        except OSError as error:
            raise ServerStartError(f"opencode server failed to start: {error}") from error

        deadline = time.monotonic() + self.config.startup_timeout_seconds
        while time.monotonic() < deadline:
            returncode = self._process.poll()
            if returncode is not None:
                self._process = None
                raise ServerStartError(
                    f"opencode server exited during startup with code {returncode}",
                )
            if self._probe(self.url):
                logger.info("opencode server ready at %s", self.url)
                return self.url
            time.sleep(_STARTUP_POLL_SECONDS)

        self.stop()
        raise ServerStartError(
            "Timeout waiting for opencode server to start after "
            f"{self.config.startup_timeout_seconds:.0f}s",
        )

    def stop(self) -> None:
        process = self._process
        self._process = None
        if process is None:
            return
        _terminate_process(process)
        logger.info("opencode server stopped")

    def __enter__(self) -> OpencodeServer:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=5)
