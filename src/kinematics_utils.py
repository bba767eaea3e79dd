from typing import Any, Callable

import jax
import jax.numpy as jnp
import mujoco

from dynamics_model import DynamicsModel


def quat_mult(q0: jax.Array, q1: jax.Array) -> jax.Array:
    """Quaternion product (w, x, y, z)."""
    w0, x0, y0, z0 = q0[0], q0[1], q0[2], q0[3]
    w1, x1, y1, z1 = q1[0], q1[1], q1[2], q1[3]
    return jnp.array(
        [
            w0 * w1 - x0 * x1 - y0 * y1 - z0 * z1,
            w0 * x1 + x0 * w1 + y0 * z1 - z0 * y1,
            w0 * y1 - x0 * z1 + y0 * w1 + z0 * x1,
            w0 * z1 + x0 * y1 - y0 * x1 + z0 * w1,
        ],
    )


def quat_deriv(quat: jax.Array, omega: jax.Array) -> jax.Array:
    """d(quat)/dt = 0.5 * quat * [0, omega] for body-frame angular velocity omega."""
    zero = jnp.zeros(1, dtype=omega.dtype)
    return 0.5 * quat_mult(quat, jnp.concatenate([zero, omega]))


JNT_FREE = int(mujoco.mjtJoint.mjJNT_FREE)
JNT_BALL = int(mujoco.mjtJoint.mjJNT_BALL)
JNT_SLIDE = int(mujoco.mjtJoint.mjJNT_SLIDE)
JNT_HINGE = int(mujoco.mjtJoint.mjJNT_HINGE)


def qvel_to_qpos_deriv(model: mujoco.MjModel, q: jax.Array, v: jax.Array) -> jax.Array:
    """dq/dt from (q, v).

    Joint layout is static, so the loop runs over model.jnt_type, jnt_qposadr
    and jnt_dofadr at trace time and only the per-joint math is traced.
    """
    dq_dt = jnp.zeros(model.nq, dtype=v.dtype)
    for jnt_type, qadr, dofadr in zip(
        model.jnt_type, model.jnt_qposadr, model.jnt_dofadr
    ):
        qadr, dofadr = int(qadr), int(dofadr)
        if jnt_type == JNT_FREE:
            seg = jnp.concatenate(
                [
                    v[dofadr : dofadr + 3],
                    quat_deriv(q[qadr + 3 : qadr + 7], v[dofadr + 3 : dofadr + 6]),
                ]
            )
        elif jnt_type == JNT_BALL:
            seg = quat_deriv(q[qadr : qadr + 4], v[dofadr : dofadr + 3])
        elif jnt_type in (JNT_SLIDE, JNT_HINGE):
            seg = v[dofadr : dofadr + 1]
        else:
            raise ValueError(f"Unsupported joint type {jnt_type}")
        dq_dt = dq_dt.at[qadr : qadr + seg.shape[0]].set(seg)
    return dq_dt


def qvel_to_qpos_map(model: mujoco.MjModel, q: jax.Array) -> jax.Array:
    """N(q) with dq/dt = N(q) @ v. Shape: [nq, nv]."""
    v = jnp.zeros(model.nv, dtype=q.dtype)
    return jax.jacfwd(lambda v_arg: qvel_to_qpos_deriv(model, q, v_arg))(v)


def jacobian_dot_times_v(
    plant: DynamicsModel,
    state: Any,
    jacobian_fn: Callable[[Any], jax.Array],
) -> jax.Array:
    """
    dJ/dt @ v for a Jacobian that depends on q only.

    dJ/dt = (dJ/dq) @ dq_dt, so J_dot @ v is the directional derivative of
    q -> J(q) @ v along dq_dt = N(q) @ v, taken with v held fixed.
    """
    q = plant.positions(state)
    v = plant.velocities(state)
    dq_dt = plant.kinematic_map(state) @ v

    def jac_times_v(q_arg: jax.Array) -> jax.Array:
        return jacobian_fn(plant.update_state(state, q_arg, v)) @ v

    _, jdot_v = jax.jvp(jac_times_v, (q,), (dq_dt,))
    return jdot_v


def orthonormal_frame(normal: jax.Array) -> jax.Array:
    """Rotation whose last row is the unit normal; the first two rows span the tangent plane."""
    normal = normal / jnp.linalg.norm(normal)
    # seed with the world axis least aligned with the normal
    seed = jnp.eye(3, dtype=normal.dtype)[jnp.argmin(jnp.abs(normal))]
    t1 = jnp.cross(normal, seed)
    t1 = t1 / jnp.linalg.norm(t1)
    t2 = jnp.cross(normal, t1)
    return jnp.stack([t1, t2, normal])
