from __future__ import annotations

import json
import os
import re
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more chars]"


_ENV_PLACEHOLDER_RE = re.compile(r"\$\{ENV:([A-Z0-9_]+)\}")


def resolve_env_placeholders(settings: Mapping[str, Any]) -> dict[str, Any]:
    """Expand settings written as `${ENV:NAME}` from the process environment.

    Only a value that is exactly one placeholder expands, which lets a shared
    settings file name a per-host `osquery_path` or `log_path`.
    """

    resolved: dict[str, Any] = {}
    for key, value in settings.items():
        match = _ENV_PLACEHOLDER_RE.fullmatch(value.strip()) if isinstance(value, str) else None
        if match is None:
            resolved[key] = value
            continue
        name = match.group(1)
        if name not in os.environ:
            raise ValueError(f"Setting {key} references unset environment variable {name}")
        resolved[key] = os.environ[name]
    return resolved


def null_logger(msg: str) -> None:
    pass


def stderr_logger(msg: str) -> None:
    print(f"{now_iso()} {msg}", file=sys.stderr)


def file_logger(path: Path) -> Callable[[str], None]:
    """Return a sink appending timestamped lines to `path`.

    Safe to call from worker threads; writes are serialized per sink.
    """

    lock = threading.Lock()

    def _write(msg: str) -> None:
        with lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(f"{now_iso()} {msg}\n")

    return _write
