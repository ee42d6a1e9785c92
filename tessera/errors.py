"""Exception hierarchy for the ECS store.

Every failure a caller can recover from has its own type so it can be
handled precisely. Only `InvariantViolationError` signals internal
corruption and is never raised for caller misuse.

Exports:
    TesseraError
    EntityError
    EntityNotFoundError
    EntityAlreadyDespawnedError
    ComponentNotFoundError
    ResourceNotFoundError
    BundleError
    BundleMismatchError
    QueryError
    ConflictingAccessError
    UnregisteredComponentError
    BorrowConflictError
    StructuralConflictError
    QueryMismatchError
    InvariantViolationError
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "TesseraError",
    "EntityError",
    "EntityNotFoundError",
    "EntityAlreadyDespawnedError",
    "ComponentNotFoundError",
    "ResourceNotFoundError",
    "BundleError",
    "BundleMismatchError",
    "QueryError",
    "ConflictingAccessError",
    "UnregisteredComponentError",
    "BorrowConflictError",
    "StructuralConflictError",
    "QueryMismatchError",
    "InvariantViolationError",
]


def _type_name(component_type: Any) -> str:
    return getattr(component_type, "__qualname__", repr(component_type))


class TesseraError(Exception):
    """Base exception for all store failures."""


class EntityError(TesseraError):
    """Base exception for entity handle failures."""


class EntityNotFoundError(EntityError):
    """Raised when an entity handle is stale or was never allocated."""

    def __init__(self, entity: Any, msg: str | None = None):
        self.entity = entity
        super().__init__(msg or f"Entity {entity} does not exist")


class EntityAlreadyDespawnedError(EntityNotFoundError):
    """Raised when despawning a handle whose slot was already freed."""

    def __init__(self, entity: Any):
        super().__init__(entity, f"Entity {entity} was already despawned")


class ComponentNotFoundError(TesseraError, KeyError):
    """Raised when an entity does not have the requested component."""

    def __init__(self, entity: Any, component_type: Any):
        self.entity = entity
        self.component_type = component_type
        super().__init__(
            f"Entity {entity} does not have a component of type "
            f"{_type_name(component_type)}"
        )

    def __str__(self) -> str:
        # KeyError would otherwise quote the message
        return str(self.args[0])


class ResourceNotFoundError(TesseraError, KeyError):
    """Raised when the world holds no resource of the requested type."""

    def __init__(self, resource_type: Any):
        self.resource_type = resource_type
        super().__init__(f"No resource of type {_type_name(resource_type)}")

    def __str__(self) -> str:
        return str(self.args[0])


class BundleError(TesseraError, ValueError):
    """Raised for malformed bundles, e.g. one type supplied twice."""


class BundleMismatchError(BundleError):
    """Raised when bundle values do not match an archetype's type-set."""


class QueryError(TesseraError):
    """Base exception for query construction and iteration failures."""


class ConflictingAccessError(QueryError):
    """Raised when a query declares contradictory access to one type."""

    def __init__(self, component_type: Any):
        self.component_type = component_type
        super().__init__(
            f"Conflicting access to {_type_name(component_type)}: a type can be "
            "borrowed exclusively at most once and not shared at the same time"
        )


class UnregisteredComponentError(QueryError):
    """Raised when a type or id was never registered as a component."""

    def __init__(self, component: Any):
        self.component = component
        if isinstance(component, int):
            msg = f"No component registered with id {component}"
        else:
            msg = f"{_type_name(component)} is not a registered component type"
        super().__init__(msg)


class BorrowConflictError(QueryError):
    """Raised when a borrow guard cannot be acquired."""


class StructuralConflictError(BorrowConflictError):
    """Raised when a structural change hits an archetype borrowed by a query."""


class QueryMismatchError(QueryError):
    """Raised by `Query.get` when the entity does not match the query."""

    def __init__(self, entity: Any):
        self.entity = entity
        super().__init__(f"Entity {entity} does not match the query")


class InvariantViolationError(TesseraError, RuntimeError):
    """Raised when internal storage is found in an inconsistent state."""
