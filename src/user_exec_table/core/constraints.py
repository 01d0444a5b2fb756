from __future__ import annotations

import string
from typing import Iterable

from .errors import MissingConstraintError
from .types import QueryContext


ALLOWED_USERNAME_CHARACTERS = frozenset(
    string.ascii_letters + string.digits + "_-. "
)


def get_constraints(
    query_context: QueryContext,
    column: str,
    *,
    allowed_characters: Iterable[str] | None = None,
    operators: Iterable[int] | None = None,
    defaults: Iterable[str] | None = None,
) -> list[str]:
    """Return the distinct constraint expressions on `column`.

    Values holding a character outside `allowed_characters` are dropped, not
    rejected, so they never reach a command line. First-seen order is kept.
    """

    allowed = frozenset(allowed_characters) if allowed_characters is not None else None
    wanted_ops = frozenset(operators) if operators is not None else None
    constraint_list = query_context.constraints.get(column)

    values: list[str] = []
    seen: set[str] = set()
    for constraint in constraint_list.constraints if constraint_list else []:
        if wanted_ops is not None and constraint.operator not in wanted_ops:
            continue
        value = constraint.expression
        if value in seen:
            continue
        if allowed is not None and not set(value) <= allowed:
            continue
        seen.add(value)
        values.append(value)

    if not values and defaults is not None:
        return list(defaults)
    return values


def extract_usernames(query_context: QueryContext, table_name: str) -> list[str]:
    users = get_constraints(
        query_context, "user", allowed_characters=ALLOWED_USERNAME_CHARACTERS
    )
    if not users:
        raise MissingConstraintError(
            f"missing required constraint: the {table_name} table requires a user"
        )
    return users
