"""Exceptions raised by the catalog core."""


class CatalogError(Exception):
    """Base class for catalog core errors."""


class InvalidEntityTypeError(CatalogError, ValueError):
    """A service was asked for an entity type it does not handle."""

    def __init__(self, entity_type: str, allowed=None):
        self.entity_type = entity_type
        self.allowed = tuple(allowed) if allowed else ()
        message = f"Unknown entity type: {entity_type!r}"
        if self.allowed:
            message += f" (expected one of {', '.join(self.allowed)})"
        super().__init__(message)
