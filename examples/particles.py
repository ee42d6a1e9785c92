import argparse
import random
from dataclasses import dataclass

import numpy as np

import tessera
from tessera import Bundle, Read, Write

VEC2 = np.dtype([("x", np.float64), ("y", np.float64)])


class Position:
    pass


class Velocity:
    pass


class Radius:
    pass


class Frozen(tessera.Component):
    since: int


tessera.register_component(Position, dtype=VEC2)
tessera.register_component(Velocity, dtype=VEC2)
tessera.register_component(Radius, dtype=np.float64)


@dataclass
class Arguments:
    num_particles: int
    steps: int
    size: tuple[int, int]
    freeze_every: int


def spawn_particles(world: tessera.World, args: Arguments) -> list[tessera.Entity]:
    width, height = args.size
    return world.spawn_batch(
        Bundle()
        .add(Position, (random.uniform(0, width), random.uniform(0, height)))
        .add(Velocity, (random.uniform(-5, 5), random.uniform(-5, 5)))
        .add(Radius, random.uniform(2, 7))
        for _ in range(args.num_particles)
    )


def move_particles(world: tessera.World, domain: tuple[int, int], dt: float) -> None:
    query = world.query(Write(Position), Write(Velocity), without=(Frozen,))
    for batch in query.batches():
        pos, vel = batch[Position], batch[Velocity]
        pos["x"] += dt * vel["x"]
        pos["y"] += dt * vel["y"]
        vel["x"][(pos["x"] < 0) | (pos["x"] > domain[0])] *= -1
        vel["y"][(pos["y"] < 0) | (pos["y"] > domain[1])] *= -1


def kinetic_energy(world: tessera.World) -> float:
    total = 0.0
    for batch in world.query(Read(Velocity), Read(Radius)).batches():
        vel, radius = batch[Velocity], batch[Radius]
        total += float(np.sum(0.5 * radius**2 * (vel["x"] ** 2 + vel["y"] ** 2)))
    return total


def main(args: Arguments):
    print("Running a particle simulation:")
    print(f"  Number of particles    {args.num_particles}")
    print(f"  Steps                  {args.steps}")

    world = tessera.World()
    particles = spawn_particles(world, args)

    for step in range(args.steps):
        if args.freeze_every and step % args.freeze_every == 0:
            world.insert(random.choice(particles), Frozen(step))
        move_particles(world, args.size, dt=1.0)

    frozen = len(world.query(tessera.Entity, with_=(Frozen,)))
    print(f"  Archetypes             {len(world.archetypes())}")
    print(f"  Frozen particles       {frozen}")
    print(f"  Kinetic energy         {kinetic_energy(world):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-n", "--num-particles", type=int, default=500)
    parser.add_argument("--steps", type=int, default=200)
    parser.add_argument("--size", nargs=2, type=int, default=(600, 600))
    parser.add_argument("--freeze-every", type=int, default=10)
    args = parser.parse_args()

    main(Arguments(args.num_particles, args.steps, tuple(args.size), args.freeze_every))
