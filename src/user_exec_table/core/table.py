"""Virtual table that runs osquery inside each requested user's session.

Some macOS tables only return data in a user context: running them as root
yields nothing, and sudo only swaps the effective uid without the keychain
context. This table runs the query as each user named by the `user`
constraint and tags every row with that user.

Resulting data depends on session state. A logged-in user (even inactive)
returns correct data. A user who never configured the settings gets the
defaults. A configured user who is not logged in returns nothing, which is
why a failing user is skipped instead of failing the query.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable

from .config import resolve_settings
from .constraints import extract_usernames
from .errors import PerUserError
from .identity import PasswdIdentityResolver, default_session_launcher
from .runner import run_for_user_parsed
from .types import (
    ColumnDefinition,
    IdentityResolver,
    Logger,
    QueryContext,
    Row,
    SessionLauncher,
    TablePlugin,
    TableRequest,
    TableResult,
    UserOutcome,
)
from .utils import now_iso, null_logger


USER_COLUMN = ColumnDefinition("user", "TEXT")


class UserExecTable:
    def __init__(
        self,
        name: str,
        binary_path: str,
        query: str,
        columns: Iterable[ColumnDefinition],
        *,
        settings: dict[str, Any] | None = None,
        resolver: IdentityResolver | None = None,
        launcher: SessionLauncher | None = None,
        logger: Logger | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.binary_path = binary_path
        self.query = query
        self.settings = settings if settings is not None else resolve_settings()
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else self.settings["timeout_seconds"]
        )
        self.columns = [c for c in columns if c.name != USER_COLUMN.name] + [USER_COLUMN]
        self.resolver = resolver or PasswdIdentityResolver()
        self._launcher = launcher
        self.logger = logger or null_logger

    @property
    def launcher(self) -> SessionLauncher:
        # Resolved lazily so unsupported platforms fail per call, not at import.
        if self._launcher is None:
            self._launcher = default_session_launcher()
        return self._launcher

    def request(self, query_context: QueryContext) -> TableRequest:
        return TableRequest(
            table_name=self.name,
            usernames=tuple(extract_usernames(query_context, self.name)),
            binary_path=self.binary_path,
            query=self.query,
            timeout_seconds=self.timeout_seconds,
        )

    def generate(
        self, query_context: QueryContext, cancel: threading.Event | None = None
    ) -> list[Row]:
        return self.run(query_context, cancel=cancel).rows

    def run(
        self, query_context: QueryContext, cancel: threading.Event | None = None
    ) -> TableResult:
        request = self.request(query_context)
        launcher = self.launcher
        # Call-wide scope: set by the caller, or by us when a fatal error
        # means remaining users should stop.
        scope = threading.Event()
        relay = _relay_cancel(cancel, scope)

        per_user: dict[str, list[Row]] = {}
        outcomes: dict[str, UserOutcome] = {}
        lock = threading.Lock()

        def collect(username: str) -> None:
            rows, outcome = self._collect_user(request, username, launcher, scope)
            with lock:
                per_user[username] = rows
                outcomes[username] = outcome

        try:
            workers = len(request.usernames)
            if self.settings.get("max_workers") is not None:
                workers = min(int(self.settings["max_workers"]), workers)
            if workers <= 1:
                for username in request.usernames:
                    collect(username)
            else:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = [executor.submit(collect, u) for u in request.usernames]
                    try:
                        for future in futures:
                            future.result()
                    except BaseException:
                        scope.set()
                        raise
        finally:
            scope.set()
            if relay is not None:
                relay.join()

        rows: list[Row] = []
        for username in request.usernames:
            rows.extend(per_user.get(username, []))
        return TableResult(
            rows=rows,
            outcomes=[outcomes[u] for u in request.usernames if u in outcomes],
        )

    def _collect_user(
        self,
        request: TableRequest,
        username: str,
        launcher: SessionLauncher,
        scope: threading.Event,
    ) -> tuple[list[Row], UserOutcome]:
        outcome = UserOutcome(username=username, status="ok", started_at=now_iso())
        start = time.perf_counter()
        try:
            rows = run_for_user_parsed(
                username,
                request.binary_path,
                request.query,
                request.timeout_seconds,
                resolver=self.resolver,
                launcher=launcher,
                cancel=scope,
                settings=self.settings,
                logger=self.logger,
            )
        except PerUserError as exc:
            outcome.status = "skipped"
            outcome.error_type = type(exc).__name__
            outcome.error_message = str(exc)
            self.logger(f"{self.name}: skipping user {username}: {type(exc).__name__}: {exc}")
            rows = []
        for row in rows:
            row["user"] = username
        outcome.row_count = len(rows)
        outcome.completed_at = now_iso()
        outcome.duration_ms = int((time.perf_counter() - start) * 1000)
        if outcome.status == "ok":
            self.logger(
                f"{self.name}: user {username} returned {len(rows)} rows in {outcome.duration_ms}ms"
            )
        return rows, outcome

    def plugin(self) -> TablePlugin:
        return TablePlugin(name=self.name, columns=list(self.columns), generate=self.generate)


def _relay_cancel(
    outer: threading.Event | None, scope: threading.Event
) -> threading.Thread | None:
    """Propagate an outer cancel into `scope` until `scope` is set."""

    if outer is None:
        return None

    def _watch() -> None:
        while not scope.is_set():
            if outer.wait(0.05):
                scope.set()
                return

    thread = threading.Thread(target=_watch, daemon=True)
    thread.start()
    return thread


def table_plugin(
    tablename: str,
    osqueryd: str,
    osquery_query: str,
    columns: Iterable[ColumnDefinition],
    **kwargs: Any,
) -> TablePlugin:
    return UserExecTable(tablename, osqueryd, osquery_query, columns, **kwargs).plugin()
