from __future__ import annotations

import json
import sys
import tempfile
from pathlib import Path
from typing import Any

import pytest

from user_exec_table.core.config import resolve_settings
from user_exec_table.core.errors import UserLookupError
from user_exec_table.core.types import UserIdentity


FAKE_OSQUERY = '''
import json
import os
import sys
import time

username = sys.argv[1]
record = os.environ.get("FAKE_OSQUERY_RECORD")
if record:
    with open(record, "a", encoding="utf-8") as handle:
        handle.write(json.dumps({"user": username, "cwd": os.getcwd(), "argv": sys.argv[2:]}) + "\\n")

behavior = json.loads(os.environ.get("FAKE_OSQUERY_BEHAVIORS", "{}")).get(username, {})
if "sleep" in behavior:
    time.sleep(float(behavior["sleep"]))
if "stdout" in behavior:
    sys.stdout.write(behavior["stdout"])
else:
    sys.stdout.write(json.dumps(behavior.get("rows", [])))
if "stderr" in behavior:
    sys.stderr.write(behavior["stderr"])
sys.exit(int(behavior.get("exit", 0)))
'''


class FakeResolver:
    def __init__(self, users: dict[str, int]) -> None:
        self.users = dict(users)
        self.calls: list[str] = []

    def resolve(self, username: str) -> UserIdentity:
        self.calls.append(username)
        if username not in self.users:
            raise UserLookupError(
                f"looking up username {username}: unknown user", username=username
            )
        uid = self.users[username]
        return UserIdentity(username=username, uid=uid, gid=uid)


class ScriptSession:
    """Runs the command through the fake osquery script as the current user."""

    def __init__(self, script: Path) -> None:
        self.script = script
        self.wrapped: list[list[str]] = []

    def wrap(self, identity: UserIdentity, argv: list[str]) -> list[str]:
        self.wrapped.append(list(argv))
        return [sys.executable, str(self.script), identity.username, *argv]


class FakeOsquery:
    def __init__(self, script: Path, record: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.script = script
        self.record = record
        self._monkeypatch = monkeypatch
        monkeypatch.setenv("FAKE_OSQUERY_RECORD", str(record))
        self.behave({})

    def behave(self, behaviors: dict[str, dict[str, Any]]) -> None:
        self._monkeypatch.setenv("FAKE_OSQUERY_BEHAVIORS", json.dumps(behaviors))

    def invocations(self) -> list[dict[str, Any]]:
        if not self.record.exists():
            return []
        lines = self.record.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]


@pytest.fixture()
def scratch_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture()
def fake_osquery(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeOsquery:
    script = tmp_path / "fake_osquery.py"
    script.write_text(FAKE_OSQUERY, encoding="utf-8")
    return FakeOsquery(script, tmp_path / "invocations.jsonl", monkeypatch)


@pytest.fixture()
def session(fake_osquery: FakeOsquery) -> ScriptSession:
    return ScriptSession(fake_osquery.script)


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver({"alice": 501, "bob": 502, "carol": 503, "dave": 504})


@pytest.fixture()
def settings(scratch_root: Path) -> dict[str, Any]:
    return resolve_settings(
        {
            "osquery_path": "/opt/osquery/osqueryd",
            "poll_interval_seconds": 0.02,
            "workspace_prefix": "uet-test-",
        },
        env={},
    )


@pytest.fixture()
def log_lines() -> list[str]:
    return []
