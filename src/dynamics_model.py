"""Abstract base class for the rigid-body dynamics model used by kinematic evaluators."""

from abc import ABC, abstractmethod
from typing import Any

import jax


class DynamicsModel(ABC):
    """
    Read-only view of a rigid-body model. A state snapshot is an opaque JAX
    pytree produced by make_state/update_state; every query below is a pure
    function of it, so the same model can be shared by many evaluators and
    traced by jit, vmap, jvp and grad.

    Sign convention follows MuJoCo: M(q) @ v_dot = generalized_forces - bias_forces.
    Body 0 is the world.
    """

    @property
    @abstractmethod
    def num_positions(self) -> int:
        pass

    @property
    @abstractmethod
    def num_velocities(self) -> int:
        pass

    @property
    @abstractmethod
    def num_actuators(self) -> int:
        pass

    @abstractmethod
    def positions(self, state: Any) -> jax.Array:
        """Generalized positions q. Shape: [num_positions]."""
        pass

    @abstractmethod
    def velocities(self, state: Any) -> jax.Array:
        """Generalized velocities v. Shape: [num_velocities]."""
        pass

    @abstractmethod
    def make_state(self, q: jax.Array, v: jax.Array) -> Any:
        """Fresh snapshot at (q, v) with kinematic caches computed."""
        pass

    @abstractmethod
    def update_state(self, state: Any, q: jax.Array, v: jax.Array) -> Any:
        """Copy of state moved to (q, v); other inputs it carries are kept."""
        pass

    @abstractmethod
    def mass_matrix(self, state: Any) -> jax.Array:
        """Dense M(q). Shape: [num_velocities, num_velocities]."""
        pass

    @abstractmethod
    def bias_forces(self, state: Any) -> jax.Array:
        """C(q, v) @ v - tau_gravity(q). Shape: [num_velocities]."""
        pass

    @abstractmethod
    def generalized_forces(self, state: Any) -> jax.Array:
        """Passive, actuator and applied forces already carried by the state."""
        pass

    @abstractmethod
    def kinematic_map(self, state: Any) -> jax.Array:
        """N(q) with q_dot = N(q) @ v. Shape: [num_positions, num_velocities]."""
        pass

    @abstractmethod
    def point_position(self, state: Any, body: int, point: jax.Array) -> jax.Array:
        """World position of a point fixed in body. Returns [3]."""
        pass

    @abstractmethod
    def point_jacobian(self, state: Any, body: int, point: jax.Array) -> jax.Array:
        """Translational Jacobian of a point fixed in body w.r.t. v. Returns [3, num_velocities]."""
        pass

    @abstractmethod
    def body_id(self, name: str) -> int:
        raise NotImplementedError

    def check_state(self, state: Any) -> None:
        """Raise ValueError if state does not match this model's dimensions."""
        q_shape = self.positions(state).shape
        v_shape = self.velocities(state).shape
        if q_shape != (self.num_positions,):
            raise ValueError(
                f"State positions have shape {q_shape}, expected ({self.num_positions},)"
            )
        if v_shape != (self.num_velocities,):
            raise ValueError(
                f"State velocities have shape {v_shape}, expected ({self.num_velocities},)"
            )
