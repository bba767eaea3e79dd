"""Concrete kinematic evaluators: world points, surface contacts, loop closures and manifolds."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from dynamics_model import DynamicsModel
from kinematic_evaluator import EvaluatorConfig, KinematicEvaluator, resolve_body
from kinematics_utils import orthonormal_frame

logger = logging.getLogger(__name__)


def _float_dtype() -> np.dtype:
    return jax.dtypes.canonicalize_dtype(jnp.float64)


def _as_vector3(value: Any, name: str) -> jax.Array:
    arr = jnp.asarray(value, dtype=_float_dtype())
    if arr.shape != (3,):
        raise ValueError(f"{name} must have shape (3,), got {arr.shape}")
    return arr


class WorldPointEvaluator(KinematicEvaluator):
    """
    Position of a body-fixed point in a world-fixed view frame:

        phi = rotation @ (p_world - offset)

    The default view frame is the world frame, pinning the point at offset.
    Use from_normal for a point that must stay on a plane; only the normal
    row is active there unless tangential sliding is also forbidden.
    """

    def __init__(
        self,
        plant: DynamicsModel,
        point: Sequence[float] | jax.Array,
        body: int,
        rotation: Sequence[Sequence[float]] | jax.Array | None = None,
        offset: Sequence[float] | jax.Array | None = None,
        active_inds: Sequence[int] | None = None,
        relative: bool = False,
    ) -> None:
        super().__init__(plant, 3, active_inds=active_inds, relative=relative)
        self._point = _as_vector3(point, "point")
        self._body = body
        if rotation is None:
            self._rotation = jnp.eye(3, dtype=self._point.dtype)
        else:
            self._rotation = jnp.asarray(rotation, dtype=_float_dtype())
            if self._rotation.shape != (3, 3):
                raise ValueError(
                    f"rotation must have shape (3, 3), got {self._rotation.shape}"
                )
        if offset is None:
            self._offset = jnp.zeros(3, dtype=self._point.dtype)
        else:
            self._offset = _as_vector3(offset, "offset")

    @classmethod
    def from_normal(
        cls,
        plant: DynamicsModel,
        point: Sequence[float] | jax.Array,
        body: int,
        normal: Sequence[float] | jax.Array,
        offset: Sequence[float] | jax.Array | None = None,
        tangent_active: bool = False,
        relative: bool = False,
    ) -> "WorldPointEvaluator":
        """Point on the plane through offset with the given normal. Rows: (tangent, tangent, normal)."""
        normal_np = np.asarray(normal, dtype=float)
        if normal_np.shape != (3,):
            raise ValueError(f"normal must have shape (3,), got {normal_np.shape}")
        norm = float(np.linalg.norm(normal_np))
        if norm == 0.0:
            raise ValueError("normal must be non-zero")
        if abs(norm - 1.0) > 1e-9:
            logger.warning("Surface normal %s has norm %g, renormalising", normal_np, norm)
        rotation = orthonormal_frame(jnp.asarray(normal_np / norm, dtype=_float_dtype()))
        return cls(
            plant,
            point,
            body,
            rotation=rotation,
            offset=offset,
            active_inds=(0, 1, 2) if tangent_active else (2,),
            relative=relative,
        )

    @property
    def body(self) -> int:
        return self._body

    @property
    def rotation(self) -> jax.Array:
        return self._rotation

    def eval_full(self, state: Any) -> jax.Array:
        pos = self._plant.point_position(state, self._body, self._point)
        return self._rotation @ (pos - self._offset)

    def eval_full_jacobian(self, state: Any) -> jax.Array:
        jac = self._plant.point_jacobian(state, self._body, self._point)
        return self._rotation @ jac


class DistanceEvaluator(KinematicEvaluator):
    """Loop closure keeping two body-fixed points at a fixed distance.

    phi = |p_a - p_b| - distance, J = u^T (J_a - J_b) with u the unit separation.
    Undefined when the two points coincide.
    """

    def __init__(
        self,
        plant: DynamicsModel,
        point_a: Sequence[float] | jax.Array,
        body_a: int,
        point_b: Sequence[float] | jax.Array,
        body_b: int,
        distance: float,
        relative: bool = False,
    ) -> None:
        if distance <= 0:
            raise ValueError(f"distance must be positive, got {distance}")
        super().__init__(plant, 1, relative=relative)
        self._point_a = _as_vector3(point_a, "point_a")
        self._point_b = _as_vector3(point_b, "point_b")
        self._body_a = body_a
        self._body_b = body_b
        self._distance = distance

    @property
    def distance(self) -> float:
        return self._distance

    def _separation(self, state: Any) -> jax.Array:
        pos_a = self._plant.point_position(state, self._body_a, self._point_a)
        pos_b = self._plant.point_position(state, self._body_b, self._point_b)
        return pos_a - pos_b

    def eval_full(self, state: Any) -> jax.Array:
        return jnp.linalg.norm(self._separation(state))[None] - self._distance

    def eval_full_jacobian(self, state: Any) -> jax.Array:
        rel = self._separation(state)
        unit = rel / jnp.linalg.norm(rel)
        jac_a = self._plant.point_jacobian(state, self._body_a, self._point_a)
        jac_b = self._plant.point_jacobian(state, self._body_b, self._point_b)
        return (unit @ (jac_a - jac_b))[None, :]


class ManifoldEvaluator(KinematicEvaluator):
    """
    Virtual constraint phi = weights @ features(q), where

        features(q) = [1, q_i..., cos(q_i)..., sin(q_i)...]

    over the selected position indices. Typically the weights come from a
    fitted low-dimensional model of the robot's motion. The Jacobian is
    obtained with forward-mode autodiff and mapped to velocity space through
    the kinematic map.
    """

    def __init__(
        self,
        plant: DynamicsModel,
        weights: Sequence[Sequence[float]] | jax.Array,
        position_indices: Sequence[int],
        active_inds: Sequence[int] | None = None,
        relative: bool = False,
    ) -> None:
        weights = jnp.asarray(weights, dtype=_float_dtype())
        if weights.ndim != 2:
            raise ValueError(f"weights must be 2-D, got shape {weights.shape}")
        indices = tuple(int(i) for i in position_indices)
        if any(i < 0 or i >= plant.num_positions for i in indices):
            raise ValueError(
                f"Position indices {indices} out of range for {plant.num_positions} positions"
            )
        n_features = 1 + 3 * len(indices)
        if weights.shape[1] != n_features:
            raise ValueError(
                f"weights must have {n_features} columns for {len(indices)} positions, "
                f"got {weights.shape[1]}"
            )
        super().__init__(plant, weights.shape[0], active_inds=active_inds, relative=relative)
        self._weights = weights
        self._position_indices = np.array(indices, dtype=np.int32)

    @property
    def num_features(self) -> int:
        return self._weights.shape[1]

    def features(self, q: jax.Array) -> jax.Array:
        x = q[self._position_indices]
        return jnp.concatenate([jnp.ones(1, dtype=q.dtype), x, jnp.cos(x), jnp.sin(x)])

    def _phi(self, q: jax.Array) -> jax.Array:
        return self._weights @ self.features(q)

    def eval_full(self, state: Any) -> jax.Array:
        return self._phi(self._plant.positions(state))

    def eval_full_jacobian(self, state: Any) -> jax.Array:
        dphi_dq = jax.jacfwd(self._phi)(self._plant.positions(state))
        return dphi_dq @ self._plant.kinematic_map(state)


@dataclass
class WorldPointConfig(EvaluatorConfig):
    body: str | int
    point: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    rotation: list[list[float]] | None = None
    offset: list[float] | None = None
    active_inds: list[int] | None = None
    relative: bool = False

    def build_evaluator(self, plant: DynamicsModel) -> KinematicEvaluator:
        return WorldPointEvaluator(
            plant,
            self.point,
            resolve_body(plant, self.body),
            rotation=self.rotation,
            offset=self.offset,
            active_inds=self.active_inds,
            relative=self.relative,
        )


@dataclass
class SurfacePointConfig(EvaluatorConfig):
    body: str | int
    point: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    normal: list[float] = field(default_factory=lambda: [0.0, 0.0, 1.0])
    offset: list[float] | None = None
    tangent_active: bool = False
    relative: bool = False

    def build_evaluator(self, plant: DynamicsModel) -> KinematicEvaluator:
        return WorldPointEvaluator.from_normal(
            plant,
            self.point,
            resolve_body(plant, self.body),
            self.normal,
            offset=self.offset,
            tangent_active=self.tangent_active,
            relative=self.relative,
        )


@dataclass
class DistanceConfig(EvaluatorConfig):
    body_a: str | int
    body_b: str | int
    distance: float
    point_a: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    point_b: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    relative: bool = False

    def build_evaluator(self, plant: DynamicsModel) -> KinematicEvaluator:
        return DistanceEvaluator(
            plant,
            self.point_a,
            resolve_body(plant, self.body_a),
            self.point_b,
            resolve_body(plant, self.body_b),
            self.distance,
            relative=self.relative,
        )


@dataclass
class ManifoldConfig(EvaluatorConfig):
    weights: list[list[float]]
    position_indices: list[int]
    active_inds: list[int] | None = None
    relative: bool = False

    def build_evaluator(self, plant: DynamicsModel) -> KinematicEvaluator:
        return ManifoldEvaluator(
            plant,
            self.weights,
            self.position_indices,
            active_inds=self.active_inds,
            relative=self.relative,
        )
