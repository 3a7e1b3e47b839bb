from __future__ import annotations

import shlex
import sys

import allure
import pytest

from fly_agent.config import ServerSettings
from fly_agent.opencode.server import OpencodeServer, ServerConfig, build_runtime_config
from fly_agent.runtime.errors import ServerStartError

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Runtime Server"),
]


def _python(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def _config(command: str, *, startup_timeout_seconds: float = 5.0) -> ServerConfig:
    return ServerConfig(
        command=command,
        hostname="127.0.0.1",
        port=4999,
        startup_timeout_seconds=startup_timeout_seconds,
    )


def test_start_returns_url_once_probe_answers() -> None:
    probes: list[str] = []

    def probe(url: str) -> bool:
        probes.append(url)
        return len(probes) >= 2

    server = OpencodeServer(_config(_python("import time; time.sleep(30)")), probe=probe)

    url = server.start()
    try:
        assert url == "http://127.0.0.1:4999"
        assert server.running
        assert probes == ["http://127.0.0.1:4999", "http://127.0.0.1:4999"]
    finally:
        server.stop()

    assert not server.running
    server.stop()


def test_process_exiting_during_startup_is_reported() -> None:
    server = OpencodeServer(_config(_python("import sys; sys.exit(3)")), probe=lambda _: False)

    with pytest.raises(ServerStartError, match="code 3"):
        server.start()

    assert not server.running


def test_startup_timeout_stops_process() -> None:
    server = OpencodeServer(
        _config(_python("import time; time.sleep(30)"), startup_timeout_seconds=0.5),
        probe=lambda _: False,
    )

    with pytest.raises(ServerStartError, match="Timeout waiting"):
        server.start()

    assert not server.running


def test_missing_command_is_a_start_error() -> None:
    server = OpencodeServer(_config("fly-agent-no-such-opencode-binary"), probe=lambda _: True)

    with pytest.raises(ServerStartError, match="not found"):
        server.start()


def test_runtime_config_grants_permissions_and_provider_key() -> None:
    assert build_runtime_config(anthropic_api_key="") == {
        "permission": {"bash": "allow", "edit": "allow"},
    }
    with_key = build_runtime_config(anthropic_api_key="sk-test")
    assert with_key["provider"] == {"anthropic": {"options": {"apiKey": "sk-test"}}}


def test_server_config_from_settings() -> None:
    config = ServerConfig.from_settings(
        ServerSettings(command="opencode", hostname="0.0.0.0", port=4100, anthropic_api_key="k"),
    )

    assert config.url == "http://0.0.0.0:4100"
    assert config.runtime_config["provider"]["anthropic"]["options"]["apiKey"] == "k"
