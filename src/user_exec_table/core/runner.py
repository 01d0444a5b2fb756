from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .config import resolve_settings
from .decoder import decode_rows
from .errors import (
    DecodeError,
    ExecCancelledError,
    ExecTimeoutError,
    ProcessFailedError,
    SpawnError,
    WorkspaceError,
)
from .identity import PasswdIdentityResolver, default_session_launcher
from .types import ExecResult, IdentityResolver, Logger, Row, SessionLauncher
from .utils import null_logger, truncate


# osquery must run ephemeral and side-effect free inside the user's session.
OSQUERY_FLAGS: tuple[str, ...] = (
    "--config_path",
    "/dev/null",
    "--disable_events",
    "--disable_database",
    "--disable_audit",
    "--ephemeral",
    "-S",
    "--json",
)

_REAP_TIMEOUT_SECONDS = 2.0


def build_osquery_command(binary_path: str, query: str) -> list[str]:
    return [binary_path, *OSQUERY_FLAGS, query]


class Deadline:
    """Timeout scoped under an optional outer cancellation event."""

    def __init__(self, timeout_seconds: float, cancel: threading.Event | None = None) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.expires_at = time.monotonic() + self.timeout_seconds
        self.cancel = cancel

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


@contextmanager
def scratch_workspace(prefix: str = "osq-user-exec-", mode: int = 0o755) -> Iterator[Path]:
    """Create a private working directory and remove it on every exit path."""

    try:
        path = Path(tempfile.mkdtemp(prefix=prefix))
    except OSError as exc:
        raise WorkspaceError(f"mktemp: {exc}") from exc
    try:
        try:
            os.chmod(path, mode)
        except OSError as exc:
            raise WorkspaceError(f"chmod: {exc}") from exc
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def _kill(proc: subprocess.Popen) -> str:
    """Kill the process group and reap. Returns a note when the child is stuck."""

    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()
    try:
        proc.communicate(timeout=_REAP_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        # A descendant outside the group still holds the pipes.
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()
        return "child did not exit after kill; pipes detached"
    return ""


def _exit_description(exit_code: int) -> str:
    if exit_code < 0:
        return f"terminated by signal {-exit_code}"
    return f"exit status {exit_code}"


def run_for_user(
    username: str,
    binary_path: str,
    query: str,
    timeout_seconds: float,
    *,
    resolver: IdentityResolver | None = None,
    launcher: SessionLauncher | None = None,
    cancel: threading.Event | None = None,
    settings: dict[str, Any] | None = None,
) -> ExecResult:
    """Run `binary_path` with `query` inside `username`'s session.

    Raises a `PerUserError` subclass for failures scoped to this user and
    `WorkspaceError` when the scratch directory cannot be set up.
    """

    settings = settings if settings is not None else resolve_settings()
    resolver = resolver or PasswdIdentityResolver()
    launcher = launcher or default_session_launcher()
    poll = float(settings["poll_interval_seconds"])
    stderr_limit = int(settings["stderr_limit"])

    deadline = Deadline(timeout_seconds, cancel)
    identity = resolver.resolve(username)

    with scratch_workspace(settings["workspace_prefix"], int(settings["workspace_mode"])) as workspace:
        if deadline.cancelled():
            raise ExecCancelledError(
                f"cancelled before running osquery as {username}", username=username
            )
        argv = launcher.wrap(identity, build_osquery_command(binary_path, query))
        start = time.perf_counter()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(workspace),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise SpawnError(
                f"starting {argv[0]} for {username}: {exc}", username=username
            ) from exc

        stopped: str | None = None
        try:
            while True:
                if deadline.cancelled():
                    stopped = "cancelled"
                    break
                remaining = deadline.remaining()
                if remaining <= 0:
                    stopped = f"exceeded {deadline.timeout_seconds:g}s timeout"
                    break
                try:
                    stdout, stderr_bytes = proc.communicate(timeout=min(poll, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        except BaseException:
            _kill(proc)
            raise

        if stopped is not None:
            note = _kill(proc)
            message = f"running osquery as {username}: {stopped}"
            if note:
                message = f"{message}; {note}"
            if stopped == "cancelled":
                raise ExecCancelledError(message, username=username)
            raise ExecTimeoutError(message, username=username)

        duration_ms = int((time.perf_counter() - start) * 1000)
        stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise ProcessFailedError(
                f"running osquery as {username} ({_exit_description(proc.returncode)}). "
                f"Got: '{truncate(stderr, stderr_limit)}'",
                username=username,
                exit_code=proc.returncode,
                stderr=truncate(stderr, stderr_limit),
            )
        return ExecResult(
            stdout=stdout or b"",
            stderr=stderr,
            exit_code=proc.returncode,
            duration_ms=duration_ms,
            workspace=workspace,
        )


def run_for_user_parsed(
    username: str,
    binary_path: str,
    query: str,
    timeout_seconds: float,
    *,
    resolver: IdentityResolver | None = None,
    launcher: SessionLauncher | None = None,
    cancel: threading.Event | None = None,
    settings: dict[str, Any] | None = None,
    logger: Logger | None = None,
) -> list[Row]:
    result = run_for_user(
        username,
        binary_path,
        query,
        timeout_seconds,
        resolver=resolver,
        launcher=launcher,
        cancel=cancel,
        settings=settings,
    )
    try:
        return decode_rows(result.stdout)
    except DecodeError as exc:
        exc.username = username
        (logger or null_logger)(f"error unmarshalling json for {username}: {exc}")
        raise
