"""Thin wrapper over the ``git`` CLI for the job workspace."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_CREDENTIALS_RE = re.compile(r"(https?://)[^/@\s]+@")
DEFAULT_TIMEOUT_SECONDS = 600.0


class GitCommandError(RuntimeError):
    """A git invocation exited non-zero; ``command`` has credentials redacted."""

    def __init__(self, message: str, *, command: list[str], stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


def redact(value: str) -> str:
    return _CREDENTIALS_RE.sub(r"\1***@", value)


def run_git(
    args: list[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> str:
    argv = ["git", *args]
    command = [redact(part) for part in argv]
    logger.debug("Running %s", " ".join(command))
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as error:
        raise GitCommandError("git executable not found", command=command) from error
    except subprocess.TimeoutExpired as error:
        raise GitCommandError(
            f"git timed out after {timeout_seconds:.0f}s",
            command=command,
        ) from error
    if completed.returncode != 0:
        stderr = redact(completed.stderr.strip())
        raise GitCommandError(
            stderr or f"git exited with code {completed.returncode}",
            command=command,
            stderr=stderr,
        )
    return completed.stdout


@dataclass(slots=True)
class GitWorkspace:
    """A cloned working tree."""

    path: Path

    @classmethod
    def clone(cls, url: str, path: Path) -> GitWorkspace:
        run_git(["clone", url, str(path)])
        logger.info("Repository cloned into %s", path)
        return cls(path=path)

    def configure_identity(self, *, name: str, email: str) -> None:
        run_git(["config", "user.email", email], cwd=self.path)
        run_git(["config", "user.name", name], cwd=self.path)

    def checkout_new_branch(self, branch: str) -> None:
        run_git(["checkout", "-b", branch], cwd=self.path)

    def has_changes(self) -> bool:
        return bool(run_git(["status", "--porcelain"], cwd=self.path).strip())

    def commit_all(self, message: str) -> None:
        run_git(["add", "."], cwd=self.path)
        run_git(["commit", "-m", message], cwd=self.path)

    def push(self, branch: str, *, remote: str = "origin") -> None:
        run_git(["push", "--set-upstream", remote, branch], cwd=self.path)
