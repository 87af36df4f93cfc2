"""Helpers for hand-assembled parameterized SQL.

Values are always bound through SqlParams; only whitelisted column names and
keywords are ever formatted into query text.
"""

from typing import Any, Iterable


def escape_like(value: str) -> str:
    """Escape SQL LIKE wildcard characters in user input."""
    return value.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")


class SqlParams:
    """Allocates bind names (:p0, :p1, ...) and collects their values."""

    def __init__(self, prefix: str = "p"):
        self._prefix = prefix
        self._values: dict[str, Any] = {}

    def add(self, value: Any) -> str:
        """Bind a value and return its placeholder (":pN")."""
        name = f"{self._prefix}{len(self._values)}"
        self._values[name] = value
        return f":{name}"

    def add_list(self, values: Iterable[Any]) -> str:
        """Bind each value separately and return "(:pN, :pN+1, ...)".

        Callers must not pass an empty list; "IN ()" is invalid SQL.
        """
        placeholders = [self.add(v) for v in values]
        if not placeholders:
            raise ValueError("add_list() requires at least one value")
        return "(" + ", ".join(placeholders) + ")"

    def like(self, text: str) -> str:
        """Bind a case-insensitive substring pattern for LIKE."""
        return self.add(f"%{escape_like(text)}%")

    @property
    def values(self) -> dict[str, Any]:
        return dict(self._values)

    def __len__(self) -> int:
        return len(self._values)


def and_join(clauses: list[str]) -> str:
    """Join WHERE fragments with AND; an empty list yields "TRUE"."""
    clauses = [c for c in clauses if c]
    if not clauses:
        return "TRUE"
    return " AND ".join(f"({c})" if " OR " in c else c for c in clauses)


def normalize_direction(direction: str | None, default: str = "DESC") -> str:
    if not direction:
        return default
    direction = direction.strip().upper()
    if direction in ("ASC", "DESC"):
        return direction
    return default
