"""Component type registry.

Every Python type stored as a component is described once by a
`ComponentDescriptor`: its id, the numpy dtype of its column and the
functions used to move and drop its values. Descriptors are keyed by the
type object itself, so registering a type twice always yields the same id.

Types can be registered manually with
[`register_component`][tessera.registry.register_component], through the
[`component`][tessera.registry.component] decorator, or by subclassing a
component base such as [`Component`][tessera.registry.Component]. Subclasses
of component bases are registered lazily the first time they are looked up.

Exports:
    ComponentId
    ComponentDescriptor
    ComponentRegistry
    Component
    component
    default_registry
    register_component
    register_component_base
    is_component_type
"""

from __future__ import annotations

import inspect
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NewType, Optional, TypeVar, dataclass_transform

import numpy as np

from .errors import UnregisteredComponentError

if TYPE_CHECKING:
    from .entity import Entity
    from .world import World

__all__ = [
    "ComponentId",
    "ComponentDescriptor",
    "ComponentRegistry",
    "Component",
    "component",
    "default_registry",
    "register_component",
    "register_component_base",
    "is_component_type",
]

T = TypeVar("T")

ComponentId = NewType("ComponentId", int)
Hook = Callable[["World", "Entity"], None]

COMPONENT_HINT = "__tessera_component__"
OPTIONS_ATTR = "__tessera_options__"
_OPTION_NAMES = frozenset({"dtype", "move", "drop", "on_insert", "on_remove"})
_COMPONENT_BASES: set[type] = set()


def _move(value: Any) -> Any:
    return value


def _drop(value: Any) -> None:
    return None


@dataclass(frozen=True)
class ComponentDescriptor:
    """Metadata for one registered component type.

    Attributes:
        id: The registry-assigned id, used to order archetype type-sets.
        type: The component type.
        dtype: The numpy dtype of columns storing this component.
        move: Called on a value when it is relocated to another archetype.
            Returns the value to store at the destination.
        drop: Called exactly once on a value when it leaves storage for good.
        on_insert: Hook run after the component was added to an entity.
        on_remove: Hook run before the component is removed from an entity.
    """

    id: ComponentId
    type: type
    dtype: np.dtype = field(default_factory=lambda: np.dtype(object))
    move: Callable[[Any], Any] = _move
    drop: Callable[[Any], None] = _drop
    on_insert: Optional[Hook] = None
    on_remove: Optional[Hook] = None

    @property
    def name(self) -> str:
        return self.type.__qualname__

    @property
    def size(self) -> int:
        """Byte size of one element in this component's column."""
        return self.dtype.itemsize

    @property
    def alignment(self) -> int:
        """Required alignment of one element in this component's column."""
        return self.dtype.alignment

    @property
    def is_object(self) -> bool:
        return self.dtype.hasobject

    def coerce(self, value: Any) -> Any:
        """Convert a value to the column dtype. Object columns keep values as-is.

        Raises:
            TypeError, ValueError, OverflowError: If the value does not fit.
        """
        if self.is_object:
            return value
        array = np.asarray(value, dtype=self.dtype)
        if array.shape != self.dtype.shape:
            raise ValueError(f"Expected one {self.dtype} value, got shape {array.shape}")
        return array[()]

    def __repr__(self) -> str:
        return f"<ComponentDescriptor {self.name} id={self.id} dtype={self.dtype}>"


class ComponentRegistry:
    """Thread-safe mapping from component types to their descriptors.

    Reads go straight to the underlying dicts. Registration takes a lock and
    re-checks, so racing registrations of one type resolve to a single id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_type: dict[type, ComponentDescriptor] = {}
        self._by_id: list[ComponentDescriptor] = []

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[ComponentDescriptor]:
        return iter(list(self._by_id))

    def __contains__(self, component_type: object) -> bool:
        return component_type in self._by_type

    def register(
        self,
        component_type: type[T],
        *,
        dtype: Any = None,
        move: Optional[Callable[[T], T]] = None,
        drop: Optional[Callable[[T], None]] = None,
        on_insert: Optional[Hook] = None,
        on_remove: Optional[Hook] = None,
    ) -> ComponentId:
        """Register a component type, returning its id.

        Registration is idempotent: once a type is registered, later calls
        return the same id and ignore the provided options.

        Args:
            component_type: The type to register.
            dtype: numpy dtype for the column. Defaults to ``object``.
            move: Function applied to values relocated between archetypes.
            drop: Function applied once to values leaving storage.
            on_insert: Hook run after the component is added to an entity.
            on_remove: Hook run before the component is removed from an entity.

        Returns:
            The id of the component type.

        Raises:
            TypeError: If `component_type` is not a class.
        """
        descriptor = self._by_type.get(component_type)
        if descriptor is not None:
            return descriptor.id
        if not inspect.isclass(component_type):
            raise TypeError(f"Component types must be classes, got {component_type!r}")

        options = dict(component_type.__dict__.get(OPTIONS_ATTR, {}))
        explicit = {
            "dtype": dtype,
            "move": move,
            "drop": drop,
            "on_insert": on_insert,
            "on_remove": on_remove,
        }
        options.update({k: v for k, v in explicit.items() if v is not None})
        if "dtype" in options:
            options["dtype"] = np.dtype(options["dtype"])

        with self._lock:
            descriptor = self._by_type.get(component_type)
            if descriptor is None:
                descriptor = ComponentDescriptor(
                    id=ComponentId(len(self._by_id)), type=component_type, **options
                )
                self._by_id.append(descriptor)
                self._by_type[component_type] = descriptor
        return descriptor.id

    def descriptor(self, component_id: int) -> ComponentDescriptor:
        """Return the descriptor registered under an id.

        Raises:
            UnregisteredComponentError: If no type was registered with that id.
        """
        if not 0 <= component_id < len(self._by_id):
            raise UnregisteredComponentError(component_id)
        return self._by_id[component_id]

    def lookup(self, component_type: Any) -> Optional[ComponentDescriptor]:
        """Return the descriptor of a type, or None if it is not a component.

        Types declared through a component base are registered on first lookup.
        """
        descriptor = self._by_type.get(component_type)
        if descriptor is None and is_component_type(component_type):
            descriptor = self.descriptor(self.register(component_type))
        return descriptor

    def resolve(self, component_type: Any) -> ComponentDescriptor:
        """Return the descriptor of a type.

        Raises:
            TypeError: If `component_type` is not a class.
            UnregisteredComponentError: If the type is not a registered component.
        """
        if not inspect.isclass(component_type):
            raise TypeError(f"Component types must be classes, got {component_type!r}")
        descriptor = self.lookup(component_type)
        if descriptor is None:
            raise UnregisteredComponentError(component_type)
        return descriptor

    def ids_of(self, component_types: Iterable[Any]) -> tuple[ComponentId, ...]:
        """Resolve several types to their ids, preserving order."""
        return tuple(self.resolve(t).id for t in component_types)


_DEFAULT_REGISTRY = ComponentRegistry()


def default_registry() -> ComponentRegistry:
    """Return the process-wide registry used by worlds created without one."""
    return _DEFAULT_REGISTRY


def register_component(component_type: type[T], **options: Any) -> ComponentId:
    """Register a component type in the default registry.

    This is the manual entry point for code that declares component types
    without one of the component bases.

    Args:
        component_type: The type to register.
        **options: Forwarded to [`ComponentRegistry.register`][tessera.registry.ComponentRegistry.register].

    Returns:
        The id of the component type.
    """
    return _DEFAULT_REGISTRY.register(component_type, **options)


def register_component_base(cls: type[Any]) -> None:
    """Mark a base class whose subclasses are component types."""
    setattr(cls, COMPONENT_HINT, True)
    _COMPONENT_BASES.add(cls)


def is_component_type(cls: Any) -> bool:
    """Checks whether a class was declared as a component type.

    Args:
        cls: The class to check.

    Returns:
        True if the class derives from a component base or was decorated
        with [`component`][tessera.registry.component].
    """
    return (
        inspect.isclass(cls)
        and cls not in _COMPONENT_BASES
        and getattr(cls, COMPONENT_HINT, False) is True
    )


def _check_options(cls: type, options: dict[str, Any]) -> None:
    unknown = set(options) - _OPTION_NAMES
    if unknown:
        raise TypeError(
            f"Unknown component options for {cls.__qualname__}: {sorted(unknown)}"
        )


@dataclass_transform()
class Component:
    """Base class for declaring dataclass components.

    Subclasses are turned into dataclasses and registered lazily. Registry
    options can be passed as class keywords::

        class Handle(Component, drop=lambda h: h.close()):
            fd: int
    """

    def __init_subclass__(cls, **options: Any):
        _check_options(cls, options)
        super().__init_subclass__()
        setattr(cls, OPTIONS_ATTR, options)
        return dataclass(cls)


register_component_base(Component)


def component(cls: Optional[type[T]] = None, /, **options: Any) -> Any:
    """Decorator marking a class as a component and registering it.

    Can be used bare (``@component``) or with registry options
    (``@component(drop=release)``). The class is registered in the default
    registry immediately.
    """

    def wrap(target: type[T]) -> type[T]:
        _check_options(target, options)
        setattr(target, COMPONENT_HINT, True)
        setattr(target, OPTIONS_ATTR, options)
        register_component(target)
        return target

    if cls is None:
        return wrap
    return wrap(cls)
