from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import jax
import numpy as np

from dynamics_model import DynamicsModel
from kinematics_utils import jacobian_dot_times_v


class KinematicEvaluator(ABC):
    """
    Abstract base class for holonomic constraints phi(q) = 0.

    Subclasses implement eval_full and eval_full_jacobian; everything else
    follows from those two. The Jacobian is taken w.r.t. v, not q_dot, so
    d/dt phi = J @ v and d^2/dt^2 phi = J @ v_dot + J_dot @ v even for
    quaternion-based coordinates.

    Only active rows enter a constrained solve. The active rows are fixed at
    construction; inactive rows are still evaluated so that forces and
    residuals can be reported over the full row set.
    """

    def __init__(
        self,
        plant: DynamicsModel,
        num_full: int,
        active_inds: Sequence[int] | None = None,
        relative: bool = False,
    ) -> None:
        if num_full < 0:
            raise ValueError(f"num_full must be non-negative, got {num_full}")
        if active_inds is None:
            active_inds = range(num_full)
        inds = tuple(int(i) for i in active_inds)
        if len(set(inds)) != len(inds):
            raise ValueError(f"Duplicate active indices {inds}")
        if any(i < 0 or i >= num_full for i in inds):
            raise ValueError(f"Active indices {inds} out of range for {num_full} rows")

        self._plant = plant
        self._num_full = num_full
        self._active_inds = tuple(sorted(inds))
        self._active_index_array = np.array(self._active_inds, dtype=np.int32)
        self._relative = relative

    @abstractmethod
    def eval_full(self, state: Any) -> jax.Array:
        raise NotImplementedError

    @abstractmethod
    def eval_full_jacobian(self, state: Any) -> jax.Array:
        raise NotImplementedError

    def eval_full_jacobian_dot_times_v(self, state: Any) -> jax.Array:
        return jacobian_dot_times_v(self._plant, state, self.eval_full_jacobian)

    def eval_full_time_derivative(self, state: Any) -> jax.Array:
        return self.eval_full_jacobian(state) @ self._plant.velocities(state)

    def eval_active(self, state: Any) -> jax.Array:
        return self.eval_full(state)[self._active_index_array]

    def eval_active_jacobian(self, state: Any) -> jax.Array:
        return self.eval_full_jacobian(state)[self._active_index_array]

    def eval_active_jacobian_dot_times_v(self, state: Any) -> jax.Array:
        return self.eval_full_jacobian_dot_times_v(state)[self._active_index_array]

    def eval_active_time_derivative(self, state: Any) -> jax.Array:
        return self.eval_active_jacobian(state) @ self._plant.velocities(state)

    @property
    def plant(self) -> DynamicsModel:
        return self._plant

    @property
    def num_full(self) -> int:
        return self._num_full

    @property
    def num_active(self) -> int:
        return len(self._active_inds)

    @property
    def active_inds(self) -> tuple[int, ...]:
        return self._active_inds

    @property
    def active_mask(self) -> np.ndarray:
        mask = np.zeros(self._num_full, dtype=bool)
        mask[self._active_index_array] = True
        return mask

    @property
    def is_relative(self) -> bool:
        return self._relative

    def is_active(self, row: int) -> bool:
        if row < 0 or row >= self._num_full:
            raise IndexError(f"Row {row} out of range for {self._num_full} rows")
        return row in self._active_inds

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(num_full={self._num_full}, "
            f"active_inds={self._active_inds}, relative={self._relative})"
        )


@dataclass
class EvaluatorConfig(ABC):
    @abstractmethod
    def build_evaluator(self, plant: DynamicsModel) -> KinematicEvaluator:
        raise NotImplementedError


def resolve_body(plant: DynamicsModel, body: str | int) -> int:
    """Body id from a name or an id."""
    if isinstance(body, str):
        return plant.body_id(body)
    return int(body)
