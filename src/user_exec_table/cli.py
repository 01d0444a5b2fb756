from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

from user_exec_table.core.config import load_settings, resolve_settings
from user_exec_table.core.errors import UserExecError
from user_exec_table.core.table_manager import TableManager
from user_exec_table.core.types import Logger, QueryContext, outcome_payload
from user_exec_table.core.utils import file_logger, json_dumps, stderr_logger


DEFAULT_TABLES_DIR = "tables"


def _logger_for(settings: dict[str, Any]) -> Logger:
    if settings.get("log_path"):
        return file_logger(Path(settings["log_path"]))
    return stderr_logger


def cmd_list_tables(tables_dir: str) -> None:
    manager = TableManager(Path(tables_dir))
    for spec in manager.discover():
        print(f"{spec.table_id}: {spec.name} ({len(spec.columns)} columns)")


def cmd_tables_validate(tables_dir: str, table_id: str | None = None) -> None:
    manager = TableManager(Path(tables_dir))
    specs = manager.discover()
    failures = [
        f"{err.table_id}: discovery error: {err.message}"
        for err in manager.discovery_errors
        if table_id is None or err.table_id == table_id
    ]
    if table_id and not any(spec.table_id == table_id for spec in specs) and not failures:
        raise SystemExit(f"Unknown table id: {table_id}")

    for line in sorted(failures):
        print(line)
    if failures:
        raise SystemExit(1)
    print("OK")


def cmd_query(
    table_id: str,
    users: list[str] | None,
    settings_path: str | None,
    tables_dir: str,
    show_outcomes: bool = False,
) -> None:
    try:
        settings = resolve_settings(load_settings(settings_path))
        manager = TableManager(Path(tables_dir))
        try:
            spec = manager.get(table_id)
        except KeyError as exc:
            raise SystemExit(str(exc.args[0])) from exc
        table = manager.build(spec, settings, logger=_logger_for(settings))
        result = table.run(QueryContext.equals("user", *(users or [])))
    except UserExecError as exc:
        raise SystemExit(f"{type(exc).__name__}: {exc}") from exc

    if show_outcomes:
        print(
            json_dumps(
                {
                    "rows": result.rows,
                    "outcomes": [outcome_payload(o) for o in result.outcomes],
                }
            )
        )
    else:
        print(json_dumps(result.rows))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="user-exec-table")
    sub = parser.add_subparsers(dest="command")

    list_parser = sub.add_parser("list-tables")
    list_parser.add_argument("--tables-dir", default=DEFAULT_TABLES_DIR)

    tables_parser = sub.add_parser("tables")
    tables_sub = tables_parser.add_subparsers(dest="tables_command")
    validate_parser = tables_sub.add_parser("validate")
    validate_parser.add_argument("--tables-dir", default=DEFAULT_TABLES_DIR)
    validate_parser.add_argument("--table-id")

    query_parser = sub.add_parser("query")
    query_parser.add_argument("table_id")
    query_parser.add_argument("--user", action="append", dest="users")
    query_parser.add_argument("--settings")
    query_parser.add_argument("--tables-dir", default=DEFAULT_TABLES_DIR)
    query_parser.add_argument("--outcomes", action="store_true")

    args = parser.parse_args(argv)

    if args.command == "list-tables":
        cmd_list_tables(args.tables_dir)
    elif args.command == "tables":
        if args.tables_command == "validate":
            cmd_tables_validate(args.tables_dir, args.table_id)
        else:
            raise SystemExit(2)
    elif args.command == "query":
        cmd_query(
            args.table_id,
            args.users,
            args.settings,
            args.tables_dir,
            show_outcomes=bool(args.outcomes),
        )
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
