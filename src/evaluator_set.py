import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import jax
import jax.numpy as jnp
import numpy as np
from jax.scipy.linalg import cho_solve, solve_triangular

from dynamics_model import DynamicsModel
from kinematic_evaluator import EvaluatorConfig, KinematicEvaluator

logger = logging.getLogger(__name__)


class ConstraintSolveError(ArithmeticError):
    """Singular mass matrix or inconsistent active constraints."""


def raise_if_not_finite(*arrays: jax.Array) -> None:
    """Check results for nan/inf with one device-host sync per array.

    Under jit or vmap a failed solve cannot raise, so its outputs are filled
    with nan instead; call this on the results once they are concrete.
    """
    for arr in arrays:
        if bool(jnp.any(~jnp.isfinite(arr))):
            raise ConstraintSolveError("nan/inf detected in constrained dynamics")


def _is_traced(x: Any) -> bool:
    return isinstance(x, jax.core.Tracer)


@dataclass
class SolverConfig:
    # None picks a dtype-based default: nv * eps for the mass matrix pivots,
    # sqrt(eps) for the constraint residual.
    mass_matrix_rtol: float | None = None
    residual_rtol: float | None = None


class EvaluatorSet:
    """Ordered collection of kinematic evaluators stacked into one constraint.

    Insertion order defines row offsets. Evaluators are held by reference and
    compared by identity, so the same instance can be shared between sets
    (e.g. a full contact set and a per-stance subset).

    Constrained dynamics solve

        M v_dot - J_a^T lam = tau + g - bias
        J_a v_dot = -J_a_dot v - kp phi_a - kd phi_a_dot

    with kp = alpha^2, kd = 2 alpha, by Udwadia-Kalaba:
    with M = L L^T and B = J_a L^-T, y = B^+ (b - J_a a_free),
    v_dot = a_free + L^-T y and lam_a = (B^+)^T y, the minimum-norm multiplier.
    The pseudo-inverse handles redundant active rows; an inconsistent system
    or a singular mass matrix is reported as ConstraintSolveError.
    """

    def __init__(self, plant: DynamicsModel, solver_cfg: SolverConfig | None = None) -> None:
        self._plant = plant
        self._solver_cfg = solver_cfg or SolverConfig()
        self._evaluators: list[KinematicEvaluator] = []

    @property
    def plant(self) -> DynamicsModel:
        return self._plant

    @property
    def solver_cfg(self) -> SolverConfig:
        return self._solver_cfg

    def add_evaluator(self, e: KinematicEvaluator) -> int:
        """Append an evaluator, returning its index."""
        if e.plant.num_velocities != self._plant.num_velocities:
            raise ValueError(
                f"Evaluator has {e.plant.num_velocities} velocities, "
                f"set plant has {self._plant.num_velocities}"
            )
        self._evaluators.append(e)
        index = len(self._evaluators) - 1
        logger.debug("Added %r at index %d", e, index)
        return index

    def get_evaluator(self, index: int) -> KinematicEvaluator:
        self._check_index(index)
        return self._evaluators[index]

    def num_evaluators(self) -> int:
        return len(self._evaluators)

    def count_full(self) -> int:
        return sum(e.num_full for e in self._evaluators)

    def count_active(self) -> int:
        return sum(e.num_active for e in self._evaluators)

    def evaluator_full_start(self, index: int) -> int:
        """Starting row of evaluator index in phi_full."""
        self._check_index(index)
        return sum(e.num_full for e in self._evaluators[:index])

    def evaluator_active_start(self, index: int) -> int:
        """Starting row of evaluator index in phi_active."""
        self._check_index(index)
        return sum(e.num_active for e in self._evaluators[:index])

    def find_union(self, other: "EvaluatorSet") -> list[int]:
        """
        Indices into other (not self) of the evaluators that self also holds,
        as judged by instance identity rather than equality.
        """
        mine = {id(e) for e in self._evaluators}
        return [j for j, e in enumerate(other._evaluators) if id(e) in mine]

    def relative_mask(self, active: bool = True) -> np.ndarray:
        """Per-row is_relative flags over the active (or full) rows."""
        masks = [
            np.full(e.num_active if active else e.num_full, e.is_relative)
            for e in self._evaluators
        ]
        if not masks:
            return np.zeros(0, dtype=bool)
        return np.concatenate(masks)

    def eval_full(self, state: Any) -> jax.Array:
        return self._stack(state, lambda e: e.eval_full(state), active=False)

    def eval_active(self, state: Any) -> jax.Array:
        return self._stack(state, lambda e: e.eval_active(state), active=True)

    def eval_full_jacobian(self, state: Any) -> jax.Array:
        return self._stack(
            state, lambda e: e.eval_full_jacobian(state), active=False, jacobian=True
        )

    def eval_active_jacobian(self, state: Any) -> jax.Array:
        return self._stack(
            state, lambda e: e.eval_active_jacobian(state), active=True, jacobian=True
        )

    def eval_full_jacobian_dot_times_v(self, state: Any) -> jax.Array:
        return self._stack(
            state, lambda e: e.eval_full_jacobian_dot_times_v(state), active=False
        )

    def eval_active_jacobian_dot_times_v(self, state: Any) -> jax.Array:
        return self._stack(
            state, lambda e: e.eval_active_jacobian_dot_times_v(state), active=True
        )

    def eval_full_time_derivative(self, state: Any) -> jax.Array:
        return self.eval_full_jacobian(state) @ self._plant.velocities(state)

    def eval_active_time_derivative(self, state: Any) -> jax.Array:
        return self.eval_active_jacobian(state) @ self._plant.velocities(state)

    def calc_mass_matrix_times_vdot(
        self,
        state: Any,
        lam: jax.Array,
        tau: jax.Array | None = None,
    ) -> jax.Array:
        """
        M(q) @ v_dot = tau + g - bias + J_full^T @ lam for given constraint
        forces lam over the full rows. Does not invert M.
        """
        lam = jnp.asarray(lam)
        if lam.shape != (self.count_full(),):
            raise ValueError(
                f"lam has shape {lam.shape}, expected ({self.count_full()},)"
            )
        forces = self._applied_forces(state, tau)
        return forces + self.eval_full_jacobian(state).T @ lam

    def calc_time_derivatives(
        self,
        state: Any,
        lam: jax.Array | None = None,
        alpha: float = 0.0,
        tau: jax.Array | None = None,
    ) -> jax.Array:
        """
        [q_dot; v_dot]. With lam, v_dot = M^-1 (tau + g - bias + J_full^T lam).
        Without lam, the constraint forces are solved for (see
        calc_time_derivatives_and_forces); alpha is the inverse time constant
        of the stabilization and only applies in that case.
        """
        if lam is None:
            xdot, _ = self.calc_time_derivatives_and_forces(state, alpha=alpha, tau=tau)
            return xdot
        if not _is_traced(alpha) and alpha != 0:
            raise ValueError("alpha only applies when lam is solved for, not given")

        rhs = self.calc_mass_matrix_times_vdot(state, lam, tau)
        chol, mass_ok = self._mass_cholesky(state)
        vdot = cho_solve((chol, True), rhs)
        xdot = self._state_derivative(state, vdot)
        (xdot,) = self._guard(mass_ok, "Mass matrix is singular to working precision", xdot)
        return xdot

    def calc_time_derivatives_and_forces(
        self,
        state: Any,
        alpha: float = 0.0,
        tau: jax.Array | None = None,
    ) -> tuple[jax.Array, jax.Array]:
        """
        Solve for [q_dot; v_dot] and lam such that the active rows satisfy
        phi_ddot = -alpha^2 phi - 2 alpha phi_dot.

        Only active rows enter the solve but lam is returned over the full
        rows, with zeros on inactive ones.
        """
        if not _is_traced(alpha) and alpha < 0:
            raise ValueError(f"alpha must be non-negative, got {alpha}")

        forces = self._applied_forces(state, tau)
        chol, mass_ok = self._mass_cholesky(state)
        a_free = cho_solve((chol, True), forces)
        lam = jnp.zeros(self.count_full(), dtype=forces.dtype)

        if self.count_active() == 0:
            xdot = self._state_derivative(state, a_free)
            return self._guard(
                mass_ok, "Mass matrix is singular to working precision", xdot, lam
            )

        v = self._plant.velocities(state)
        jac = self.eval_active_jacobian(state)
        phi = self.eval_active(state)
        phi_dot = jac @ v
        kp = alpha**2
        kd = 2 * alpha
        target = -self.eval_active_jacobian_dot_times_v(state) - kp * phi - kd * phi_dot

        b_mat = solve_triangular(chol, jac.T, lower=True).T
        rhs = target - jac @ a_free
        b_pinv = jnp.linalg.pinv(b_mat)
        y = b_pinv @ rhs
        vdot = a_free + solve_triangular(chol, y, lower=True, trans="T")
        lam = lam.at[self._active_full_indices()].set(b_pinv.T @ y)

        residual_rtol = self._solver_cfg.residual_rtol
        if residual_rtol is None:
            residual_rtol = float(np.sqrt(jnp.finfo(rhs.dtype).eps))
        residual = jnp.linalg.norm(b_mat @ y - rhs)
        consistent = residual <= residual_rtol * (1 + jnp.linalg.norm(rhs))

        xdot = self._state_derivative(state, vdot)
        xdot, lam = self._guard(
            mass_ok, "Mass matrix is singular to working precision", xdot, lam
        )
        return self._guard(
            consistent,
            "Active constraints are inconsistent; no acceleration satisfies them",
            xdot,
            lam,
        )

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self._evaluators):
            raise IndexError(
                f"Evaluator index {index} out of range for {len(self._evaluators)} evaluators"
            )

    def _stack(
        self,
        state: Any,
        fetch: Callable[[KinematicEvaluator], jax.Array],
        active: bool,
        jacobian: bool = False,
    ) -> jax.Array:
        self._plant.check_state(state)
        nv = self._plant.num_velocities
        blocks = []
        for e in self._evaluators:
            block = fetch(e)
            rows = e.num_active if active else e.num_full
            expected = (rows, nv) if jacobian else (rows,)
            if block.shape != expected:
                raise ValueError(
                    f"{e!r} returned shape {block.shape}, expected {expected}"
                )
            blocks.append(block)
        if not blocks:
            dtype = self._plant.velocities(state).dtype
            return jnp.zeros((0, nv) if jacobian else (0,), dtype=dtype)
        return jnp.concatenate(blocks, axis=0)

    def _active_full_indices(self) -> np.ndarray:
        """Row in phi_full of every row of phi_active."""
        inds = []
        start = 0
        for e in self._evaluators:
            inds.extend(start + i for i in e.active_inds)
            start += e.num_full
        return np.array(inds, dtype=np.int32)

    def _applied_forces(self, state: Any, tau: jax.Array | None) -> jax.Array:
        self._plant.check_state(state)
        forces = self._plant.generalized_forces(state) - self._plant.bias_forces(state)
        if tau is None:
            return forces
        tau = jnp.asarray(tau)
        if tau.shape != (self._plant.num_velocities,):
            raise ValueError(
                f"tau has shape {tau.shape}, expected ({self._plant.num_velocities},)"
            )
        return forces + tau

    def _mass_cholesky(self, state: Any) -> tuple[jax.Array, jax.Array]:
        """Lower Cholesky factor of M(q) and whether it is usable."""
        mass = self._plant.mass_matrix(state)
        chol = jnp.linalg.cholesky(mass)
        rtol = self._solver_cfg.mass_matrix_rtol
        if rtol is None:
            rtol = mass.shape[0] * float(jnp.finfo(mass.dtype).eps)
        pivots = jnp.diagonal(chol)
        scale = jnp.max(jnp.abs(jnp.diagonal(mass)))
        ok = jnp.all(jnp.isfinite(chol)) & (jnp.min(pivots**2) > rtol * scale)
        return chol, ok

    def _state_derivative(self, state: Any, vdot: jax.Array) -> jax.Array:
        qdot = self._plant.kinematic_map(state) @ self._plant.velocities(state)
        return jnp.concatenate([qdot, vdot])

    def _guard(self, ok: jax.Array, message: str, *arrays: jax.Array) -> tuple[jax.Array, ...]:
        """Raise on a concrete failure; under tracing, poison the outputs with nan."""
        if not _is_traced(ok):
            if not bool(ok):
                raise ConstraintSolveError(message)
            return arrays
        return tuple(jnp.where(ok, arr, jnp.nan) for arr in arrays)


@dataclass
class EvaluatorSetConfig:
    evaluators: list[EvaluatorConfig] = field(default_factory=list)
    solver: SolverConfig = field(default_factory=SolverConfig)

    def build(self, plant: DynamicsModel) -> EvaluatorSet:
        """New set with freshly built evaluators, in list order."""
        evaluators = EvaluatorSet(plant, self.solver)
        for cfg in self.evaluators:
            evaluators.add_evaluator(cfg.build_evaluator(plant))
        logger.debug(
            "Built evaluator set: %d evaluators, %d full rows, %d active rows",
            evaluators.num_evaluators(),
            evaluators.count_full(),
            evaluators.count_active(),
        )
        return evaluators
