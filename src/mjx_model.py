import logging
from dataclasses import dataclass
from typing import cast

import jax
import jax.numpy as jnp
import mujoco
from mujoco import mjx
from mujoco.mjx._src import support as mjx_support

from dynamics_model import DynamicsModel
from kinematics_utils import qvel_to_qpos_map

logger = logging.getLogger(__name__)


@dataclass
class MjxModelConfig:
    xml_path: str | None = None
    xml: str | None = None
    disable_builtin_constraints: bool = True


class MjxDynamicsModel(DynamicsModel):
    """MuJoCo MJX implementation of the dynamics model.

    State snapshots are mjx.Data after mjx.forward, so mass matrix, bias
    forces and body poses are read from the snapshot instead of recomputed.
    MuJoCo's own constraint solver is disabled by default: holonomic
    constraints are enforced by an EvaluatorSet on top of the smooth dynamics.
    """

    def __init__(
        self,
        model: mujoco.MjModel,
        device: jax.Device | None = None,
        disable_builtin_constraints: bool = True,
    ) -> None:
        if disable_builtin_constraints:
            model.opt.disableflags |= int(mujoco.mjtDisableBit.mjDSBL_CONSTRAINT)
            model.opt.disableflags |= int(mujoco.mjtDisableBit.mjDSBL_CONTACT)

        self._device = cast(jax.Device, device or jax.devices()[0])
        self._model_cpu = model
        self._model = mjx.put_model(model, device=self._device)

        data_cpu = mujoco.MjData(model)
        mujoco.mj_forward(model, data_cpu)
        self._data = mjx.put_data(model, data_cpu, device=self._device)

        logger.info(
            "Loaded MJX model: nq=%d nv=%d nu=%d nbody=%d",
            model.nq,
            model.nv,
            model.nu,
            model.nbody,
        )

    @classmethod
    def from_config(
        cls, cfg: MjxModelConfig, device: jax.Device | None = None
    ) -> "MjxDynamicsModel":
        if (cfg.xml_path is None) == (cfg.xml is None):
            raise ValueError("Exactly one of xml_path and xml must be set")
        if cfg.xml_path is not None:
            model = mujoco.MjModel.from_xml_path(cfg.xml_path)
        else:
            model = mujoco.MjModel.from_xml_string(cast(str, cfg.xml))
        return cls(
            model,
            device=device,
            disable_builtin_constraints=cfg.disable_builtin_constraints,
        )

    @property
    def mj_model(self) -> mujoco.MjModel:
        return self._model_cpu

    @property
    def mjx_model(self) -> mjx.Model:
        return self._model

    @property
    def device(self) -> jax.Device:
        return self._device

    @property
    def num_positions(self) -> int:
        return self._model_cpu.nq

    @property
    def num_velocities(self) -> int:
        return self._model_cpu.nv

    @property
    def num_actuators(self) -> int:
        return self._model_cpu.nu

    def positions(self, state: mjx.Data) -> jax.Array:
        return state.qpos

    def velocities(self, state: mjx.Data) -> jax.Array:
        return state.qvel

    def make_state(self, q: jax.Array, v: jax.Array) -> mjx.Data:
        return self.update_state(self._data, q, v)

    def update_state(self, state: mjx.Data, q: jax.Array, v: jax.Array) -> mjx.Data:
        q = jnp.asarray(q)
        v = jnp.asarray(v)
        if q.shape != (self.num_positions,) or v.shape != (self.num_velocities,):
            raise ValueError(
                f"Expected q of shape ({self.num_positions},) and v of shape "
                f"({self.num_velocities},), got {q.shape} and {v.shape}"
            )
        return mjx.forward(self._model, state.replace(qpos=q, qvel=v))

    def mass_matrix(self, state: mjx.Data) -> jax.Array:
        """Full dense mass matrix M (nv x nv). The snapshot already holds qM."""
        return mjx_support.full_m(self._model, state)

    def bias_forces(self, state: mjx.Data) -> jax.Array:
        return state.qfrc_bias

    def generalized_forces(self, state: mjx.Data) -> jax.Array:
        return state.qfrc_passive + state.qfrc_actuator + state.qfrc_applied

    def kinematic_map(self, state: mjx.Data) -> jax.Array:
        return qvel_to_qpos_map(self._model_cpu, state.qpos)

    def point_position(self, state: mjx.Data, body: int, point: jax.Array) -> jax.Array:
        return state.xpos[body] + state.xmat[body] @ point

    def point_jacobian(self, state: mjx.Data, body: int, point: jax.Array) -> jax.Array:
        jacp, _ = mjx_support.jac(
            self._model,
            state,
            self.point_position(state, body, point),
            jnp.int32(body),
        )
        return jacp.T

    def body_id(self, name: str) -> int:
        body_id = mujoco.mj_name2id(self._model_cpu, mujoco.mjtObj.mjOBJ_BODY, name)
        if body_id == -1:
            raise ValueError(f"Body '{name}' not found")
        return body_id
