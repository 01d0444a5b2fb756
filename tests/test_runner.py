from __future__ import annotations

import os
import stat
import subprocess
import threading
import time
from pathlib import Path

import pytest

from user_exec_table.core import runner
from user_exec_table.core.errors import (
    DecodeError,
    ExecCancelledError,
    ExecTimeoutError,
    ProcessFailedError,
    SpawnError,
    UserLookupError,
    WorkspaceError,
)
from user_exec_table.core.runner import (
    OSQUERY_FLAGS,
    Deadline,
    build_osquery_command,
    run_for_user,
    run_for_user_parsed,
    scratch_workspace,
)

pytestmark = pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")

QUERY = "select enabled from screenlock"


def test_build_osquery_command_is_ephemeral_and_ends_with_query() -> None:
    argv = build_osquery_command("/opt/osqueryd", QUERY)
    assert argv[0] == "/opt/osqueryd"
    assert argv[-1] == QUERY
    for flag in ("--disable_events", "--disable_database", "--disable_audit", "--ephemeral", "--json", "-S"):
        assert flag in argv
    assert argv[1:-1] == list(OSQUERY_FLAGS)


def test_scratch_workspace_is_removed_even_on_error(scratch_root: Path) -> None:
    seen: list[Path] = []
    with pytest.raises(RuntimeError):
        with scratch_workspace("uet-", 0o755) as path:
            seen.append(path)
            (path / "osquery.db").write_text("x", encoding="utf-8")
            assert stat.S_IMODE(path.stat().st_mode) == 0o755
            assert path.parent == scratch_root
            raise RuntimeError("boom")
    assert seen and not seen[0].exists()


def test_scratch_workspace_is_unique(scratch_root: Path) -> None:
    with scratch_workspace() as first, scratch_workspace() as second:
        assert first != second


def test_scratch_workspace_creation_failure_is_workspace_error(monkeypatch) -> None:
    def broken_mkdtemp(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(runner.tempfile, "mkdtemp", broken_mkdtemp)
    with pytest.raises(WorkspaceError):
        with scratch_workspace():
            pass


def test_deadline_observes_outer_cancel() -> None:
    cancel = threading.Event()
    deadline = Deadline(60, cancel)
    assert not deadline.cancelled()
    assert not deadline.expired()
    cancel.set()
    assert deadline.cancelled()
    assert Deadline(0).expired()


def test_run_for_user_runs_in_scratch_workspace(
    fake_osquery, session, resolver, settings
) -> None:
    fake_osquery.behave({"alice": {"rows": [{"key": "v"}]}})
    result = run_for_user(
        "alice", "/opt/osqueryd", QUERY, 5, resolver=resolver, launcher=session, settings=settings
    )
    assert result.exit_code == 0
    assert result.stdout == b'[{"key": "v"}]'
    assert not result.workspace.exists()

    [call] = fake_osquery.invocations()
    assert Path(call["cwd"]).resolve() == result.workspace.resolve()
    assert call["argv"] == build_osquery_command("/opt/osqueryd", QUERY)


def test_run_for_user_unknown_user_never_spawns(fake_osquery, session, resolver, settings) -> None:
    with pytest.raises(UserLookupError):
        run_for_user("mallory", "/opt/osqueryd", QUERY, 5, resolver=resolver, launcher=session, settings=settings)
    assert session.wrapped == []
    assert fake_osquery.invocations() == []


def test_run_for_user_nonzero_exit_embeds_stderr(fake_osquery, session, resolver, settings, scratch_root) -> None:
    fake_osquery.behave({"carol": {"exit": 3, "stderr": "no such table: screenlock"}})
    with pytest.raises(ProcessFailedError) as exc:
        run_for_user("carol", "/opt/osqueryd", QUERY, 5, resolver=resolver, launcher=session, settings=settings)
    assert exc.value.exit_code == 3
    assert exc.value.username == "carol"
    assert "no such table: screenlock" in str(exc.value)
    assert list(scratch_root.iterdir()) == []


def test_run_for_user_timeout_kills_process(fake_osquery, session, resolver, settings, scratch_root) -> None:
    fake_osquery.behave({"bob": {"sleep": 30}})
    start = time.monotonic()
    with pytest.raises(ExecTimeoutError):
        run_for_user("bob", "/opt/osqueryd", QUERY, 0.5, resolver=resolver, launcher=session, settings=settings)
    assert time.monotonic() - start < 10
    assert list(scratch_root.iterdir()) == []


def test_run_for_user_outer_cancel_terminates(fake_osquery, session, resolver, settings, scratch_root) -> None:
    fake_osquery.behave({"bob": {"sleep": 30}})
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        with pytest.raises(ExecCancelledError):
            run_for_user(
                "bob", "/opt/osqueryd", QUERY, 60,
                resolver=resolver, launcher=session, cancel=cancel, settings=settings,
            )
    finally:
        timer.cancel()
    assert time.monotonic() - start < 10
    assert list(scratch_root.iterdir()) == []


def test_run_for_user_spawn_failure(resolver, settings, scratch_root) -> None:
    class MissingLauncher:
        def wrap(self, identity, argv):
            return ["/nonexistent/launcher-for-tests", *argv]

    with pytest.raises(SpawnError) as exc:
        run_for_user("alice", "/opt/osqueryd", QUERY, 5, resolver=resolver, launcher=MissingLauncher(), settings=settings)
    assert exc.value.username == "alice"
    assert list(scratch_root.iterdir()) == []


def test_run_for_user_reports_signal_termination(monkeypatch, session, resolver, settings) -> None:
    class _FakePopen:
        def __init__(self, *args, **kwargs) -> None:
            self.pid = 424242
            self.returncode = -9
            self.stdout = None
            self.stderr = None

        def communicate(self, timeout=None):
            return b"", b"killed"

        def poll(self):
            return self.returncode

    monkeypatch.setattr(subprocess, "Popen", _FakePopen)
    with pytest.raises(ProcessFailedError) as exc:
        run_for_user("alice", "/opt/osqueryd", QUERY, 5, resolver=resolver, launcher=session, settings=settings)
    assert exc.value.exit_code == -9
    assert "signal 9" in str(exc.value)


def test_run_for_user_timeout_detaches_if_child_stuck(monkeypatch, session, resolver, settings) -> None:
    class _Pipe:
        def __init__(self) -> None:
            self.closed = False

        def close(self) -> None:
            self.closed = True

    class _FakeHungPopen:
        instances: list["_FakeHungPopen"] = []

        def __init__(self, *args, **kwargs) -> None:
            self.pid = 424243
            self.returncode = None
            self.stdout = _Pipe()
            self.stderr = _Pipe()
            self.killed = False
            _FakeHungPopen.instances.append(self)

        def communicate(self, timeout=None):
            raise subprocess.TimeoutExpired(cmd="fake", timeout=float(timeout or 0))

        def kill(self) -> None:
            self.killed = True
            self.returncode = -9

        def poll(self):
            return self.returncode

    def fake_killpg(pid, sig):
        raise ProcessLookupError(pid)

    monkeypatch.setattr(subprocess, "Popen", _FakeHungPopen)
    monkeypatch.setattr(runner.os, "killpg", fake_killpg)
    monkeypatch.setattr(runner, "_REAP_TIMEOUT_SECONDS", 0.01)

    with pytest.raises(ExecTimeoutError) as exc:
        run_for_user("bob", "/opt/osqueryd", QUERY, 0.05, resolver=resolver, launcher=session, settings=settings)
    assert "detached" in str(exc.value)
    [proc] = _FakeHungPopen.instances
    assert proc.stdout.closed and proc.stderr.closed


def test_run_for_user_parsed_reports_decode_failure(fake_osquery, session, resolver, settings) -> None:
    fake_osquery.behave({"dave": {"stdout": "Error: near 'selec': syntax error"}})
    lines: list[str] = []
    with pytest.raises(DecodeError) as exc:
        run_for_user_parsed(
            "dave", "/opt/osqueryd", QUERY, 5,
            resolver=resolver, launcher=session, settings=settings, logger=lines.append,
        )
    assert exc.value.username == "dave"
    assert any("error unmarshalling json" in line for line in lines)
