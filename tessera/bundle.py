"""Bundles: ordered groups of component values supplied together.

A `Bundle` is a transient, type-erased list of ``(component type, value)``
pairs handed to `World.spawn` and `World.insert`. Bundles are built from
component instances, from explicit ``(type, value)`` pairs, or from
declared bundle types whose fields are components. Declared bundle types
are flattened by bundle adapters, so other modelling libraries can plug in
their own (see `tessera.extras`).

Exports:
    Bundle
    BundleType
    BundleAdapter
    register_bundle_adapter
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any, Protocol, Self, dataclass_transform

from .errors import BundleError

if TYPE_CHECKING:
    from .registry import ComponentDescriptor, ComponentRegistry

__all__ = ["Bundle", "BundleType", "BundleAdapter", "register_bundle_adapter"]


class BundleAdapter(Protocol):
    """Flattens instances of a declared bundle type into component values."""

    def is_applicable(self, obj: Any) -> bool: ...

    def values(self, obj: Any) -> Iterable[Any]: ...


_ADAPTERS: list[BundleAdapter] = []


def register_bundle_adapter(adapter: BundleAdapter) -> None:
    """Register an adapter. Adapters registered last are tried first."""
    _ADAPTERS.insert(0, adapter)


def _find_adapter(obj: Any) -> BundleAdapter | None:
    for adapter in _ADAPTERS:
        if adapter.is_applicable(obj):
            return adapter
    return None


class Bundle:
    """An ordered group of component values.

    Each component type may appear at most once. Values are kept as given;
    nested bundles and declared bundle types are flattened in order.

    Example::

        Bundle(Position(0, 0), Velocity(1, 0))
        Bundle().add(Mass, 2.5).add(Name, Name("scout"))
    """

    __slots__ = ("_entries",)

    def __init__(self, *values: Any):
        self._entries: dict[type, Any] = {}
        for value in values:
            self._extend(value)

    @classmethod
    def coerce(cls, values: tuple[Any, ...]) -> Bundle:
        """Return a bundle for the positional arguments of a world call."""
        if len(values) == 1 and isinstance(values[0], Bundle):
            return values[0]
        return cls(*values)

    def add(self, component_type: type, value: Any) -> Self:
        """Add a value under an explicit component type.

        Use this for components whose stored value is not an instance of
        the component type, e.g. numeric components with a numpy dtype.

        Returns:
            The bundle itself, allowing method chaining.

        Raises:
            BundleError: If the type is already part of the bundle.
            TypeError: If `component_type` is not a class.
        """
        if not isinstance(component_type, type):
            raise TypeError(f"Component types must be classes, got {component_type!r}")
        if component_type in self._entries:
            raise BundleError(
                f"Component {component_type.__qualname__} appears twice in bundle"
            )
        self._entries[component_type] = value
        return self

    def _extend(self, value: Any) -> None:
        if isinstance(value, Bundle):
            for component_type, inner in value:
                self.add(component_type, inner)
            return
        if isinstance(value, type):
            raise TypeError(
                f"Expected a component value, got the type {value.__qualname__}"
            )
        adapter = _find_adapter(value)
        if adapter is not None:
            for inner in adapter.values(value):
                self._extend(inner)
            return
        self.add(type(value), value)

    @property
    def types(self) -> tuple[type, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[tuple[type, Any]]:
        return iter(self._entries.items())

    def __contains__(self, component_type: object) -> bool:
        return component_type in self._entries

    def __repr__(self) -> str:
        inner = ", ".join(repr(v) for v in self._entries.values())
        return f"Bundle({inner})"

    def resolve(
        self, registry: ComponentRegistry
    ) -> list[tuple[ComponentDescriptor, Any]]:
        """Register every type in the bundle and pair values with descriptors.

        Values of numeric components are converted to their column dtype.

        Raises:
            BundleError: If a value does not fit its column dtype.
        """
        resolved = []
        for component_type, value in self._entries.items():
            descriptor = registry.descriptor(registry.register(component_type))
            try:
                value = descriptor.coerce(value)
            except (TypeError, ValueError, OverflowError) as exc:
                raise BundleError(
                    f"Value {value!r} does not fit the {descriptor.dtype} column "
                    f"of {descriptor.name}"
                ) from exc
            resolved.append((descriptor, value))
        return resolved


@dataclass_transform()
class BundleType:
    """Base class for declaring reusable bundles as dataclasses.

    Every field holds one component value::

        class PersonBundle(BundleType):
            person: Person
            name: Name
    """

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        return dataclasses.dataclass(cls)


class DataclassBundleAdapter:
    def is_applicable(self, obj: Any) -> bool:
        return isinstance(obj, BundleType)

    def values(self, obj: Any) -> Iterable[Any]:
        return [getattr(obj, f.name) for f in dataclasses.fields(obj)]


register_bundle_adapter(DataclassBundleAdapter())
