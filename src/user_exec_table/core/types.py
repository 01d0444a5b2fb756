from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol


Row = dict[str, str]
Logger = Callable[[str], None]


# SQLite virtual-table constraint operator codes.
EQUALS = 2
GREATER_THAN = 4
LESS_THAN_OR_EQUALS = 8
LESS_THAN = 16
GREATER_THAN_OR_EQUALS = 32
MATCH = 64
LIKE = 65
GLOB = 66
REGEXP = 67


@dataclass(frozen=True)
class UserIdentity:
    username: str
    uid: int
    gid: int


@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    type: str = "TEXT"


@dataclass(frozen=True)
class Constraint:
    operator: int
    expression: str


@dataclass
class ConstraintList:
    affinity: str = "TEXT"
    constraints: list[Constraint] = field(default_factory=list)


@dataclass
class QueryContext:
    constraints: dict[str, ConstraintList] = field(default_factory=dict)

    @classmethod
    def equals(cls, column: str, *values: str) -> "QueryContext":
        """Build a context holding `column = value` predicates."""

        return cls(
            constraints={
                column: ConstraintList(
                    constraints=[Constraint(EQUALS, value) for value in values]
                )
            }
        )


@dataclass(frozen=True)
class TableRequest:
    table_name: str
    usernames: tuple[str, ...]
    binary_path: str
    query: str
    timeout_seconds: float


@dataclass
class ExecResult:
    stdout: bytes
    stderr: str
    exit_code: int
    duration_ms: int
    workspace: Path


@dataclass
class UserOutcome:
    username: str
    status: str
    row_count: int = 0
    error_type: str | None = None
    error_message: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_ms: int | None = None


@dataclass
class TableResult:
    rows: list[Row]
    outcomes: list[UserOutcome]


@dataclass
class TablePlugin:
    name: str
    columns: list[ColumnDefinition]
    generate: Callable[..., list[Row]]

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]


class IdentityResolver(Protocol):
    def resolve(self, username: str) -> UserIdentity:  # pragma: no cover - protocol
        ...


class SessionLauncher(Protocol):
    def wrap(self, identity: UserIdentity, argv: list[str]) -> list[str]:  # pragma: no cover - protocol
        ...


def outcome_payload(outcome: UserOutcome) -> dict[str, Any]:
    return {
        "username": outcome.username,
        "status": outcome.status,
        "row_count": outcome.row_count,
        "error_type": outcome.error_type,
        "error_message": outcome.error_message,
        "started_at": outcome.started_at,
        "completed_at": outcome.completed_at,
        "duration_ms": outcome.duration_ms,
    }
