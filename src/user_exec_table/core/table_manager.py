from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from .config import SCHEMAS_DIR, fill_schema_defaults, load_schema
from .table import UserExecTable
from .types import ColumnDefinition, IdentityResolver, Logger, SessionLauncher


MANIFEST_SCHEMA_PATH = SCHEMAS_DIR / "table_manifest.schema.json"


@dataclass
class TableSpec:
    table_id: str
    name: str
    description: str
    query: str
    columns: list[ColumnDefinition]
    timeout_seconds: float | None
    path: Path


@dataclass(frozen=True)
class TableDiscoveryError:
    table_id: str
    path: Path
    message: str


class TableManager:
    def __init__(self, tables_dir: Path) -> None:
        self.tables_dir = tables_dir
        self.discovery_errors: list[TableDiscoveryError] = []

    def _record_discovery_error(self, table_id: str, manifest: Path, message: str) -> None:
        self.discovery_errors.append(
            TableDiscoveryError(
                table_id=table_id or manifest.parent.name,
                path=manifest,
                message=message,
            )
        )

    def discover(self) -> list[TableSpec]:
        specs: list[TableSpec] = []
        self.discovery_errors = []
        schema = load_schema(MANIFEST_SCHEMA_PATH)
        seen: set[str] = set()
        for manifest in sorted(self.tables_dir.glob("*/table.yaml")):
            try:
                data = yaml.safe_load(manifest.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                self._record_discovery_error(
                    manifest.parent.name, manifest, f"Invalid YAML: {exc}"
                )
                continue
            if not isinstance(data, dict):
                self._record_discovery_error(
                    manifest.parent.name, manifest, "Invalid manifest payload"
                )
                continue
            table_id = str(data.get("id") or manifest.parent.name)
            try:
                validate(instance=data, schema=schema)
            except ValidationError as exc:
                self._record_discovery_error(
                    table_id, manifest, f"Invalid manifest: {exc.message}"
                )
                continue
            if table_id in seen:
                self._record_discovery_error(table_id, manifest, "Duplicate table id")
                continue
            columns = [dict(column) for column in data["columns"]]
            fill_schema_defaults(schema["properties"]["columns"], columns)
            if any(column["name"] == "user" for column in columns):
                self._record_discovery_error(
                    table_id, manifest, "Column 'user' is reserved"
                )
                continue
            seen.add(table_id)
            timeout = data.get("timeout_seconds")
            specs.append(
                TableSpec(
                    table_id=table_id,
                    name=data["name"],
                    description=str(data.get("description") or ""),
                    query=data["query"],
                    columns=[ColumnDefinition(c["name"], c["type"]) for c in columns],
                    timeout_seconds=float(timeout) if timeout is not None else None,
                    path=manifest.parent,
                )
            )
        return specs

    def get(self, table_id: str) -> TableSpec:
        for spec in self.discover():
            if spec.table_id == table_id:
                return spec
        raise KeyError(f"Unknown table id: {table_id}")

    def build(
        self,
        spec: TableSpec,
        settings: dict[str, Any],
        *,
        resolver: IdentityResolver | None = None,
        launcher: SessionLauncher | None = None,
        logger: Logger | None = None,
    ) -> UserExecTable:
        return UserExecTable(
            spec.name,
            settings["osquery_path"],
            spec.query,
            spec.columns,
            settings=settings,
            resolver=resolver,
            launcher=launcher,
            logger=logger,
            timeout_seconds=spec.timeout_seconds,
        )
