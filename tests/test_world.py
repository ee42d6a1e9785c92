from dataclasses import dataclass

import numpy as np
import pytest

from tessera import (
    Bundle,
    BundleError,
    Component,
    ComponentNotFoundError,
    Entity,
    EntityAlreadyDespawnedError,
    EntityHandle,
    EntityNotFoundError,
    ResourceNotFoundError,
)
from tests.components import Frozen, Health, Name, Position, Velocity


class Mass:
    pass


@dataclass
class Clock:
    tick: int


def assert_locations_consistent(world):
    for archetype in world.archetypes():
        archetype.check_invariants()
        for row, entity in enumerate(archetype.entities):
            location = world._entities.locate(entity)
            assert location.archetype == archetype.key
            assert location.row == row


# ---------------------------------------------------------------------------
# Spawn / despawn
# ---------------------------------------------------------------------------
def test_spawn_and_get(world):
    e = world.spawn(Position(1, 2), Velocity(0, 1))
    assert world.is_alive(e)
    assert e in world
    assert world.get(e, Position) == Position(1, 2)
    assert world.get(e, Velocity) == Velocity(0, 1)
    assert set(world.components_of(e)) == {Position, Velocity}
    assert len(world) == 1


def test_spawn_without_components(world):
    e = world.spawn()
    assert world.components_of(e) == ()
    assert list(world) == [e]


def test_spawn_with_duplicate_type_leaves_world_untouched(world):
    with pytest.raises(BundleError):
        world.spawn(Name("a"), Name("b"))
    assert len(world) == 0
    assert world.archetypes() == ()


def test_spawn_batch(world):
    entities = world.spawn_batch(
        [
            Bundle(Name("a"), Health(1)),
            (Name("b"), Health(2)),
            Name("c"),
        ]
    )
    assert [world.get(e, Name).value for e in entities] == ["a", "b", "c"]
    assert world.has(entities[1], Health)
    assert not world.has(entities[2], Health)


def test_value_not_fitting_its_column_leaves_world_untouched(registry, world):
    registry.register(Mass, dtype=np.float64)
    e = world.spawn(Name("a"))

    with pytest.raises(BundleError, match="float64"):
        world.spawn(Bundle(Name("b")).add(Mass, "heavy"))
    with pytest.raises(BundleError):
        world.insert(e, Bundle().add(Mass, "heavy"))

    assert len(world) == 1
    assert world.components_of(e) == (Name,)
    assert list(world.query(Name)) == [(Name("a"),)]
    assert_locations_consistent(world)

    f = world.spawn(Bundle(Name("c")).add(Mass, 2.5))
    assert f == Entity(1)
    assert world.get(f, Mass) == 2.5


def test_spawn_batch_validates_every_item_first(registry, world):
    registry.register(Mass, dtype=np.float64)
    with pytest.raises(BundleError):
        world.spawn_batch([Name("a"), Bundle(Name("b")).add(Mass, "heavy")])
    assert len(world) == 0
    assert world.archetypes() == ()


def test_failed_move_leaves_entity_in_place(registry, world):
    def pinned(value):
        raise RuntimeError("pinned")

    registry.register(Health, move=pinned)
    e = world.spawn(Health(1), Name("a"))
    other = world.spawn(Health(2), Name("b"))

    with pytest.raises(RuntimeError, match="pinned"):
        world.insert(e, Frozen())
    assert set(world.components_of(e)) == {Health, Name}
    assert world.get(e, Health) == Health(1)
    assert world.get(other, Health) == Health(2)
    assert_locations_consistent(world)


def test_despawn_and_slot_reuse(world):
    e = world.spawn(Name("a"))
    world.despawn(e)
    assert not world.is_alive(e)
    assert len(world) == 0

    reused = world.spawn(Name("b"))
    assert reused.index == e.index
    assert reused.generation > e.generation
    with pytest.raises(EntityNotFoundError):
        world.get(e, Name)


def test_double_despawn_raises(world):
    e = world.spawn(Name("a"))
    world.despawn(e)
    with pytest.raises(EntityAlreadyDespawnedError):
        world.despawn(e)


def test_despawn_keeps_swapped_entity_locations(world):
    entities = [world.spawn(Name(str(i)), Health(i)) for i in range(5)]
    world.despawn(entities[0])
    world.despawn(entities[2])

    assert_locations_consistent(world)
    for i in (1, 3, 4):
        assert world.get(entities[i], Name) == Name(str(i))


def test_despawn_drops_each_component_once(registry, world):
    drops = []
    registry.register(Name, drop=drops.append)
    registry.register(Health, drop=drops.append)

    e = world.spawn(Name("a"), Health(1))
    world.spawn(Name("b"), Health(2))
    world.despawn(e)
    assert drops == [Name("a"), Health(1)]


# ---------------------------------------------------------------------------
# Insert / remove / take
# ---------------------------------------------------------------------------
def test_insert_moves_entity_to_new_archetype(world):
    e = world.spawn(Position(0, 0))
    world.insert(e, Velocity(1, 1))
    assert set(world.components_of(e)) == {Position, Velocity}
    assert world.get(e, Position) == Position(0, 0)
    assert_locations_consistent(world)


def test_insert_overwrites_and_drops_old_value(registry, world):
    drops = []
    registry.register(Health, drop=drops.append)
    e = world.spawn(Health(1), Name("a"))
    archetype = world.archetype_of(e)

    world.insert(e, Health(5))
    assert world.get(e, Health) == Health(5)
    assert world.archetype_of(e) is archetype
    assert drops == [Health(1)]

    world.insert(e, Health(6), Frozen())
    assert world.get(e, Health) == Health(6)
    assert drops == [Health(1), Health(5)]


def test_insert_uses_move(registry, world):
    moved = []

    def move(value):
        moved.append(value)
        return value

    registry.register(Name, move=move)
    e = world.spawn(Name("a"))
    world.insert(e, Health(1))
    assert moved == [Name("a")]


def test_remove(registry, world):
    drops = []
    registry.register(Velocity, drop=drops.append)
    e = world.spawn(Position(0, 0), Velocity(1, 1))
    world.remove(e, Velocity)

    assert world.components_of(e) == (Position,)
    assert drops == [Velocity(1, 1)]
    assert world.get(e, Position) == Position(0, 0)


def test_remove_absent_types_is_a_no_op(world):
    e = world.spawn(Position(0, 0))
    generation = world.generation
    world.remove(e, Velocity, Frozen)
    assert world.components_of(e) == (Position,)
    assert world.generation == generation
    with pytest.raises(TypeError):
        world.remove(e, "Position")


def test_take_returns_value_without_dropping(registry, world):
    drops = []
    registry.register(Name, drop=drops.append)
    e = world.spawn(Name("a"), Health(1))

    assert world.take(e, Name) == Name("a")
    assert drops == []
    assert not world.has(e, Name)
    with pytest.raises(ComponentNotFoundError):
        world.take(e, Name)


def test_get_missing_component_raises(world):
    e = world.spawn(Position(0, 0))
    with pytest.raises(ComponentNotFoundError) as excinfo:
        world.get(e, Velocity)
    assert "Velocity" in str(excinfo.value)
    assert isinstance(excinfo.value, KeyError)


def test_operations_on_dead_entities_raise(world):
    e = world.spawn(Position(0, 0))
    world.despawn(e)
    for operation in (
        lambda: world.insert(e, Velocity(0, 0)),
        lambda: world.remove(e, Position),
        lambda: world.get(e, Position),
        lambda: world.has(e, Position),
    ):
        with pytest.raises(EntityNotFoundError):
            operation()


def test_locations_stay_consistent_under_mixed_changes(world):
    entities = [world.spawn(Position(i, i)) for i in range(10)]
    for e in entities[::2]:
        world.insert(e, Velocity(1, 0))
    for e in entities[::3]:
        world.insert(e, Frozen())
    world.remove(entities[4], Position)
    world.despawn(entities[5])
    world.take(entities[6], Velocity)

    assert_locations_consistent(world)
    assert world.components_of(entities[4]) == (Velocity,)
    assert set(world.components_of(entities[6])) == {Position, Frozen}


# ---------------------------------------------------------------------------
# Archetype graph
# ---------------------------------------------------------------------------
def test_edges_are_cached_and_reused(world):
    a = world.spawn(Position(0, 0))
    world.insert(a, Velocity(0, 0))
    generation = world.generation

    b = world.spawn(Position(1, 1))
    world.insert(b, Velocity(1, 1))
    assert world.generation == generation
    assert world.archetype_of(a) is world.archetype_of(b)

    source = world.archetypes()[0]
    pos_id, vel_id = (world.registry.resolve(t).id for t in (Position, Velocity))
    target = world.archetype_of(a)
    assert source.add_edges[(vel_id,)] == target.key
    assert target.remove_edges[(vel_id,)] == source.key
    assert pos_id in target.id_set


def test_generation_only_changes_on_new_archetypes(world):
    assert world.generation == 0
    e = world.spawn(Name("a"))
    assert world.generation == 1
    world.spawn(Name("b"))
    world.insert(e, Name("c"))
    assert world.generation == 1
    world.insert(e, Health(1))
    assert world.generation == 2


def test_clear(registry, world):
    drops = []
    registry.register(Name, drop=drops.append)
    entities = [world.spawn(Name(str(i))) for i in range(3)]
    archetypes = world.archetypes()

    world.clear()
    assert len(world) == 0
    assert len(drops) == 3
    assert world.archetypes() == archetypes
    assert not any(world.is_alive(e) for e in entities)


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------
def test_hooks_run_on_add_and_remove(registry, world):
    events = []
    registry.register(
        Health,
        on_insert=lambda w, e: events.append(("insert", e, w.get(e, Health))),
        on_remove=lambda w, e: events.append(("remove", e, w.get(e, Health))),
    )
    e = world.spawn(Health(1))
    world.insert(e, Health(2))
    world.insert(e, Name("x"))
    world.remove(e, Health)

    assert events == [("insert", e, Health(1)), ("remove", e, Health(2))]


def test_hooks_can_make_structural_changes(world):
    class Burning(Component, on_insert=lambda w, e: w.insert(e, Frozen())):
        pass

    e = world.spawn(Position(0, 0))
    world.insert(e, Burning())
    assert set(world.components_of(e)) == {Position, Burning, Frozen}
    assert_locations_consistent(world)


def test_remove_hook_removing_component_first(world):
    calls = []

    def strip_shield(w, e):
        if not calls:
            calls.append(e)
            w.remove(e, Shield)

    class Shield(Component, on_remove=strip_shield):
        pass

    e = world.spawn(Shield())
    with pytest.raises(ComponentNotFoundError):
        world.take(e, Shield)
    assert world.components_of(e) == ()


# ---------------------------------------------------------------------------
# Entity handles
# ---------------------------------------------------------------------------
def test_entity_handle(world):
    e = world.spawn(Position(0, 0))
    handle = world.entity(e)
    assert isinstance(handle, EntityHandle)

    handle.insert(Velocity(1, 0)).insert(Frozen()).remove(Frozen)
    assert handle[Velocity] == Velocity(1, 0)
    assert Position in handle
    assert Frozen not in handle
    assert set(handle.components) == {Position, Velocity}
    assert handle.take(Velocity) == Velocity(1, 0)
    assert handle == world.entity(e)

    handle.despawn()
    assert not handle.is_alive()
    assert not world.is_alive(e)
    with pytest.raises(EntityNotFoundError):
        world.entity(e)


def test_insert_hook_skips_overwritten_components(registry, world):
    inserted = []
    registry.register(Name, on_insert=lambda w, e: inserted.append(w.get(e, Name)))
    e = world.spawn(Name("a"))
    world.insert(e, Name("b"))
    world.insert(e, Name("c"), Health(1))

    assert inserted == [Name("a")]
    assert world.get(e, Name) == Name("c")


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------
def test_reserved_entities_spawn_later(world):
    e = world.reserve()
    assert world.is_reserved(e)
    assert not world.is_alive(e)
    assert list(world) == []

    other = world.spawn(Name("b"))
    assert other != e
    assert world.spawn_reserved(e, Name("a")) == e
    assert world.get(e, Name) == Name("a")
    assert not world.is_reserved(e)
    assert_locations_consistent(world)

    with pytest.raises(EntityNotFoundError, match="not reserved"):
        world.spawn_reserved(e, Name("c"))
    assert len(world) == 2


def test_cancelled_reservation_cannot_be_spawned(world):
    e = world.reserve()
    world.cancel_reservation(e)
    with pytest.raises(EntityNotFoundError):
        world.spawn_reserved(e, Name("a"))
    assert len(world) == 0
    assert world.spawn(Name("b")) == Entity(e.index, e.generation + 1)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------
def test_resources(world):
    assert not world.has_resource(Clock)
    with pytest.raises(ResourceNotFoundError, match="Clock"):
        world.resource(Clock)

    assert world.insert_resource(Clock(1)) is None
    assert world.insert_resource(Clock(2)) == Clock(1)
    assert world.resource(Clock) == Clock(2)

    world.spawn(Name("a"))
    world.clear()
    assert world.has_resource(Clock)

    assert world.remove_resource(Clock) == Clock(2)
    with pytest.raises(KeyError):
        world.remove_resource(Clock)


def test_resources_under_explicit_type(world):
    world.insert_resource(3, resource_type=Clock)
    assert world.resource(Clock) == 3
    world.clear_resources()
    assert not world.has_resource(Clock)
