from __future__ import annotations

import json

from jsonschema import ValidationError, validate

from .config import SCHEMAS_DIR, load_schema
from .errors import DecodeError
from .types import Row


ROWS_SCHEMA_PATH = SCHEMAS_DIR / "rows.schema.json"


def decode_rows(raw: bytes | str) -> list[Row]:
    """Parse osquery `--json` output into rows, all or nothing."""

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"unmarshalling json: invalid utf-8: {exc}") from exc
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(f"unmarshalling json: {exc}") from exc
    try:
        validate(instance=payload, schema=load_schema(ROWS_SCHEMA_PATH))
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.path) or "<root>"
        raise DecodeError(f"unmarshalling json: {location}: {exc.message}") from exc
    return [dict(row) for row in payload]
