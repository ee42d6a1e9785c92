import threading
import time

import pytest

from tessera import (
    BorrowConflictError,
    BorrowMode,
    BorrowTracker,
    ComponentRegistry,
    Entity,
    Read,
    StructuralConflictError,
    World,
    WorldSettings,
    Write,
)
from tests.components import Frozen, Health, Name


# ---------------------------------------------------------------------------
# Tracker and guards
# ---------------------------------------------------------------------------
def test_shared_borrows_stack():
    tracker = BorrowTracker()
    cell = tracker.cell("c")
    first = cell.borrow(BorrowMode.SHARED)
    second = cell.borrow(BorrowMode.SHARED)
    assert cell.readers == 2

    with pytest.raises(BorrowConflictError):
        cell.borrow(BorrowMode.EXCLUSIVE)

    first.release()
    second.release()
    assert cell.is_free


def test_exclusive_borrow_blocks_everything():
    tracker = BorrowTracker()
    cell = tracker.cell("c")
    with cell.borrow(BorrowMode.EXCLUSIVE) as guard:
        assert guard.active
        assert cell.is_exclusive
        with pytest.raises(BorrowConflictError, match="already borrowed as exclusive"):
            cell.borrow(BorrowMode.SHARED)
    assert not guard.active
    assert cell.is_free


def test_acquire_is_all_or_nothing():
    tracker = BorrowTracker()
    a, b = tracker.cell("a"), tracker.cell("b")
    held = b.borrow(BorrowMode.EXCLUSIVE)

    with pytest.raises(BorrowConflictError):
        tracker.acquire([(a, BorrowMode.EXCLUSIVE), (b, BorrowMode.SHARED)])
    assert a.is_free

    held.release()
    held.release()
    assert b.is_free


# ---------------------------------------------------------------------------
# Query guards
# ---------------------------------------------------------------------------
def test_shared_queries_iterate_together(world):
    world.spawn(Name("a"))
    first = iter(world.query(Read(Name)))
    second = iter(world.query(Name))
    assert next(first) == next(second)


def test_writer_conflicts_with_reader(world):
    e = world.spawn(Health(1))
    writer = iter(world.query(Write(Health)))
    next(writer)

    with pytest.raises(BorrowConflictError):
        next(iter(world.query(Read(Health))))
    with pytest.raises(BorrowConflictError):
        world.get(e, Health)

    writer.close()
    assert list(world.query(Read(Health))) == [(Health(1),)]


def test_get_conflicts_only_with_writers(world):
    e = world.spawn(Health(1), Name("a"))
    reader = iter(world.query(Read(Name), Write(Health)))
    next(reader)

    assert world.get(e, Name) == Name("a")
    with pytest.raises(BorrowConflictError):
        world.get(e, Health)
    reader.close()
    assert world.get(e, Health) == Health(1)


def test_writers_on_disjoint_archetypes_do_not_conflict(world):
    world.spawn(Health(1))
    world.spawn(Health(2), Frozen())

    thawed = iter(world.query(Write(Health), without=(Frozen,)))
    frozen = iter(world.query(Write(Health), with_=(Frozen,)))
    assert next(thawed) == (Health(1),)
    assert next(frozen) == (Health(2),)


def test_guards_are_released_after_iteration(world):
    world.spawn(Health(1))
    for _ in world.query(Write(Health)):
        pass
    assert all(not a.is_borrowed() for a in world.archetypes())

    partial = iter(world.query(Write(Health)))
    next(partial)
    assert world.archetypes()[0].is_borrowed()
    del partial
    assert not world.archetypes()[0].is_borrowed()


def test_failed_iteration_releases_earlier_guards(world):
    world.spawn(Health(1))
    world.spawn(Health(2), Frozen())
    blocker = iter(world.query(Write(Health), with_=(Frozen,)))
    next(blocker)

    with pytest.raises(BorrowConflictError):
        list(world.query(Read(Health)))
    assert not world.archetypes()[0].is_borrowed()


# ---------------------------------------------------------------------------
# Structural changes while guards are held
# ---------------------------------------------------------------------------
def test_reject_policy_refuses_borrowed_archetypes(world):
    e = world.spawn(Name("a"))
    query = iter(world.query(Name))
    next(query)

    with pytest.raises(StructuralConflictError):
        world.spawn(Name("b"))
    with pytest.raises(StructuralConflictError):
        world.despawn(e)
    with pytest.raises(StructuralConflictError):
        world.insert(e, Health(1))
    with pytest.raises(StructuralConflictError):
        world.clear()

    assert len(world) == 1
    assert world.components_of(e) == (Name,)

    # unrelated archetypes stay writable
    other = world.spawn(Health(1))
    world.insert(other, Frozen())
    query.close()
    world.despawn(e)


def test_structural_conflict_is_a_borrow_conflict(world):
    e = world.spawn(Name("a"))
    for _ in world.query(Name):
        with pytest.raises(BorrowConflictError):
            world.remove(e, Name)


def test_block_policy_waits_for_release(blocking_world):
    world = blocking_world
    e = world.spawn(Name("a"))
    query = iter(world.query(Name))
    next(query)

    started = threading.Event()
    errors = []

    def despawn():
        started.set()
        try:
            world.despawn(e)
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=despawn)
    worker.start()
    started.wait()
    worker.join(timeout=0.1)
    assert worker.is_alive()
    assert world.is_alive(e)

    query.close()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert errors == []
    assert not world.is_alive(e)


def test_block_policy_times_out():
    world = World(
        WorldSettings(_env_file=None, structural_policy="block", block_timeout=0.05),
        registry=ComponentRegistry(),
    )
    e = world.spawn(Name("a"))
    query = iter(world.query(Name))
    next(query)

    with pytest.raises(StructuralConflictError, match="Timed out"):
        world.despawn(e)
    assert world.is_alive(e)
    query.close()


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------
def test_shared_queries_iterate_in_separate_threads(world):
    for i in range(10):
        world.spawn(Health(i))
    both_reading = threading.Barrier(2, timeout=5)
    results, errors = [], []

    def read():
        try:
            rows = iter(world.query(Read(Health)))
            first = next(rows)
            both_reading.wait()
            results.append([first, *rows])
        except Exception as exc:
            errors.append(exc)

    readers = [threading.Thread(target=read) for _ in range(2)]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join(timeout=5)

    assert errors == []
    assert results == [[(Health(i),) for i in range(10)]] * 2
    assert not world.archetypes()[0].is_borrowed()


def test_writer_in_another_thread_conflicts(world):
    world.spawn(Health(1))
    reader = iter(world.query(Read(Health)))
    next(reader)
    errors = []

    def write():
        try:
            list(world.query(Write(Health)))
        except BorrowConflictError as exc:
            errors.append(exc)

    writer = threading.Thread(target=write)
    writer.start()
    writer.join(timeout=5)
    assert len(errors) == 1
    reader.close()


@pytest.mark.parametrize("timeout", [5.0, None])
def test_guard_holder_keeps_reading_while_a_change_waits(registry, timeout):
    world = World(
        WorldSettings(_env_file=None, structural_policy="block", block_timeout=timeout),
        registry=registry,
    )
    e = world.spawn(Name("a"), Health(1))
    other = world.spawn(Name("b"))
    query = world.query(Entity, Read(Name), with_=(Health,))
    rows = iter(query)
    next(rows)
    errors = []

    def despawn():
        try:
            world.despawn(e)
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=despawn, daemon=True)
    worker.start()
    worker.join(timeout=0.1)
    assert worker.is_alive()

    started = time.monotonic()
    assert world.get(e, Name) == Name("a")
    assert world.has(e, Health)
    assert world.get(other, Name) == Name("b")
    assert query.get(e) == (e, Name("a"))
    assert query.contains(e)
    assert len(world.archetypes()) == 2
    assert time.monotonic() - started < 1.0
    assert worker.is_alive()

    rows.close()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert errors == []
    assert not world.is_alive(e)
    assert world.is_alive(other)
