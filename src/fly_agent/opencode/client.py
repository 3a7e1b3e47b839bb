"""HTTP client for the opencode server API and its event feed."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from fly_agent.config import HttpSettings
from fly_agent.runtime.models import SessionStatus

logger = logging.getLogger(__name__)


class OpencodeClientError(RuntimeError):
    """Request against the opencode server failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True, frozen=True)
class HttpClientConfig:
    """Explicit timeouts handed to the HTTP client.

    ``None`` disables a deadline.  Requests such as a long prompt or a quiet
    event feed must not be cut off by library defaults.
    """

    connect_timeout_seconds: float = 30.0
    request_timeout_seconds: float | None = None
    read_timeout_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: HttpSettings) -> HttpClientConfig:
        return cls(
            connect_timeout_seconds=settings.connect_timeout_seconds,
            request_timeout_seconds=settings.request_timeout_seconds or None,
            read_timeout_seconds=settings.read_timeout_seconds or None,
        )

    def request_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self.request_timeout_seconds,
            connect=self.connect_timeout_seconds,
        )

    def stream_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            None,
            connect=self.connect_timeout_seconds,
            read=self.read_timeout_seconds,
        )


class EventStream:
    """Iterator over decoded server-sent events of one open feed connection."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    def __iter__(self) -> Iterator[dict[str, Any]]:
        data_lines: list[str] = []
        try:
            for line in self._response.iter_lines():
                if line.startswith(":"):
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line == "" and data_lines:
                    payload = "\n".join(data_lines)
                    data_lines = []
                    record = _decode_record(payload)
                    if record is not None:
                        yield record
        except (httpx.HTTPError, httpx.StreamError) as error:
            raise OpencodeClientError(f"Event feed disconnected: {error}") from error
        if data_lines:
            record = _decode_record("\n".join(data_lines))
            if record is not None:
                yield record

    def close(self) -> None:
        self._response.close()


class OpencodeClient:
    """Thin wrapper over the opencode REST API, scoped by workspace directory."""

    def __init__(
        self,
        base_url: str,
        *,
        config: HttpClientConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or HttpClientConfig()
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=self.config.request_timeout(),
            transport=transport,
        )

    def create_session(self, *, directory: str, title: str) -> str:
        payload = self._request_json(
            "POST",
            "/session",
            directory=directory,
            json={"title": title},
        )
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise OpencodeClientError(f"Session create response has no id: {payload!r}")
        return str(session_id)

    def prompt_async(self, *, session_id: str, directory: str, text: str, agent: str) -> None:
        """Submit the prompt and return once accepted; completion is polled separately."""

        self._request(
            "POST",
            f"/session/{session_id}/prompt_async",
            directory=directory,
            json={"agent": agent, "parts": [{"type": "text", "text": text}]},
        )

    def abort_session(self, *, session_id: str, directory: str) -> None:
        self._request("POST", f"/session/{session_id}/abort", directory=directory)

    def delete_session(self, *, session_id: str, directory: str) -> None:
        self._request("DELETE", f"/session/{session_id}", directory=directory)

    def session_status(self, *, directory: str) -> dict[str, SessionStatus]:
        payload = self._request_json("GET", "/session/status", directory=directory)
        if not isinstance(payload, dict):
            raise OpencodeClientError(f"Unexpected session status payload: {payload!r}")
        return {
            str(session_id): SessionStatus.from_payload(value)
            for session_id, value in payload.items()
            if isinstance(value, dict)
        }

    @contextmanager
    def event_stream(self, *, directory: str) -> Iterator[EventStream]:
        """Open the workspace event feed; connect errors raise ``OpencodeClientError``."""

        try:
            with self._client.stream(
                "GET",
                "/event",
                params={"directory": directory},
                headers={"Accept": "text/event-stream"},
                timeout=self.config.stream_timeout(),
            ) as response:
                if not response.is_success:
                    raise OpencodeClientError(
                        f"Event feed returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                yield EventStream(response)
        except httpx.HTTPError as error:
            raise OpencodeClientError(f"Event feed error: {error}") from error

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpencodeClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        directory: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                path,
                params={"directory": directory},
                json=json,
            )
        except httpx.HTTPError as error:
            raise OpencodeClientError(f"{method} {path} failed: {error}") from error
        if not response.is_success:
            raise OpencodeClientError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        directory: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        response = self._request(method, path, directory=directory, json=json)
        try:
            return response.json()
        except ValueError as error:
            raise OpencodeClientError(f"{method} {path} returned invalid JSON") from error


def _decode_record(payload: str) -> dict[str, Any] | None:
    try:
        record = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON event payload: %.200s", payload)
        return None
    if not isinstance(record, dict):
        return None
    return record
