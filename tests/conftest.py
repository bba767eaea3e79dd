"""Pytest fixtures for kinematic evaluator tests."""

from typing import NamedTuple

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp
import numpy as np
import pytest

from dynamics_model import DynamicsModel

GRAVITY = 9.81


class PointMassState(NamedTuple):
    q: jax.Array
    v: jax.Array


class PointMassModel(DynamicsModel):
    """Point mass moving freely in 3-D under gravity. Body 0 is the world, body 1 the mass."""

    def __init__(self, mass: float = 2.0, gravity: float = GRAVITY, mass_diag=None):
        self.mass = mass
        self.gravity = gravity
        if mass_diag is None:
            mass_diag = [mass, mass, mass]
        self._mass_diag = jnp.asarray(mass_diag, dtype=jnp.float64)

    @property
    def num_positions(self) -> int:
        return 3

    @property
    def num_velocities(self) -> int:
        return 3

    @property
    def num_actuators(self) -> int:
        return 0

    def positions(self, state: PointMassState) -> jax.Array:
        return state.q

    def velocities(self, state: PointMassState) -> jax.Array:
        return state.v

    def make_state(self, q, v) -> PointMassState:
        return PointMassState(
            jnp.asarray(q, dtype=jnp.float64), jnp.asarray(v, dtype=jnp.float64)
        )

    def update_state(self, state: PointMassState, q, v) -> PointMassState:
        return self.make_state(q, v)

    def mass_matrix(self, state: PointMassState) -> jax.Array:
        return jnp.diag(self._mass_diag)

    def bias_forces(self, state: PointMassState) -> jax.Array:
        return jnp.array([0.0, 0.0, self.mass * self.gravity])

    def generalized_forces(self, state: PointMassState) -> jax.Array:
        return jnp.zeros(3)

    def kinematic_map(self, state: PointMassState) -> jax.Array:
        return jnp.eye(3)

    def point_position(self, state: PointMassState, body: int, point: jax.Array) -> jax.Array:
        if body == 0:
            return point
        return state.q + point

    def point_jacobian(self, state: PointMassState, body: int, point: jax.Array) -> jax.Array:
        if body == 0:
            return jnp.zeros((3, 3))
        return jnp.eye(3)

    def body_id(self, name: str) -> int:
        ids = {"world": 0, "ball": 1}
        if name not in ids:
            raise ValueError(f"Body '{name}' not found")
        return ids[name]


SLIDER_XML = """
<mujoco model="slider">
  <option gravity="0 0 -9.81"/>
  <worldbody>
    <body name="ball" pos="0 0 0">
      <joint name="x" type="slide" axis="1 0 0"/>
      <joint name="y" type="slide" axis="0 1 0"/>
      <joint name="z" type="slide" axis="0 0 1"/>
      <geom type="sphere" size="0.05" mass="2"/>
    </body>
  </worldbody>
</mujoco>
"""

PENDULUM_XML = """
<mujoco model="pendulum">
  <option gravity="0 0 -9.81"/>
  <worldbody>
    <body name="link" pos="0 0 0">
      <joint name="hinge" type="hinge" axis="0 1 0"/>
      <geom type="sphere" pos="0 0 -1" size="0.05" mass="1"/>
    </body>
  </worldbody>
</mujoco>
"""

FREE_BODY_XML = """
<mujoco model="free_body">
  <worldbody>
    <body name="box" pos="0 0 1">
      <freejoint/>
      <geom type="box" size="0.1 0.2 0.3" mass="1"/>
    </body>
    <body name="arm" pos="1 0 0">
      <joint name="shoulder" type="ball"/>
      <geom type="capsule" fromto="0 0 0 0 0 -0.5" size="0.05" mass="1"/>
      <body name="forearm" pos="0 0 -0.5">
        <joint name="elbow" type="hinge" axis="0 1 0"/>
        <geom type="capsule" fromto="0 0 0 0 0 -0.5" size="0.04" mass="0.5"/>
      </body>
    </body>
  </worldbody>
</mujoco>
"""


@pytest.fixture
def point_mass() -> PointMassModel:
    return PointMassModel()


@pytest.fixture
def random_state(point_mass):
    """Off-manifold state with a generic velocity."""
    rng = np.random.default_rng(42)
    return point_mass.make_state(rng.uniform(-1.0, 1.0, 3), rng.uniform(-1.0, 1.0, 3))


@pytest.fixture
def pendulum_state(point_mass):
    """Unit pendulum exactly on the manifold, moving tangentially."""
    return point_mass.make_state([0.6, 0.0, -0.8], [0.8, 0.0, 0.6])
