"""Tests for the MuJoCo MJX dynamics model backend."""

import jax
import jax.numpy as jnp
import mujoco
import numpy as np
import pytest

from conftest import FREE_BODY_XML, GRAVITY, PENDULUM_XML, SLIDER_XML, PointMassModel
from evaluator_set import EvaluatorSet, EvaluatorSetConfig
from evaluators import DistanceConfig, DistanceEvaluator, WorldPointEvaluator
from kinematics_utils import qvel_to_qpos_map
from mjx_model import MjxDynamicsModel, MjxModelConfig


@pytest.fixture(scope="module")
def slider() -> MjxDynamicsModel:
    """Point mass of 2 kg on three slide joints; matches PointMassModel."""
    return MjxDynamicsModel.from_config(MjxModelConfig(xml=SLIDER_XML))


@pytest.fixture(scope="module")
def pendulum_model() -> MjxDynamicsModel:
    """Unit-length pendulum hinged about the world y axis."""
    return MjxDynamicsModel.from_config(MjxModelConfig(xml=PENDULUM_XML))


@pytest.fixture(scope="module")
def free_body() -> MjxDynamicsModel:
    """Free-floating box plus a ball-jointed arm with a hinged forearm."""
    return MjxDynamicsModel.from_config(MjxModelConfig(xml=FREE_BODY_XML))


def random_free_body_qpos(model: mujoco.MjModel, rng: np.random.Generator) -> np.ndarray:
    """Random configuration of FREE_BODY_XML with unit quaternions."""
    q = np.array(model.qpos0)
    q[:3] = rng.normal(size=3)
    quat_free = rng.normal(size=4)
    q[3:7] = quat_free / np.linalg.norm(quat_free)
    quat_ball = rng.normal(size=4)
    q[7:11] = quat_ball / np.linalg.norm(quat_ball)
    q[11] = 0.3
    return q


class TestMjxDynamicsModel:
    """Tests for the dynamics model queries."""

    def test_counts(self, slider):
        assert slider.num_positions == 3
        assert slider.num_velocities == 3
        assert slider.num_actuators == 0

    def test_body_id(self, slider):
        assert slider.body_id("world") == 0
        assert slider.body_id("ball") == 1
        with pytest.raises(ValueError):
            slider.body_id("foot")

    def test_builtin_constraints_disabled(self, slider):
        assert slider.mj_model.opt.disableflags & int(mujoco.mjtDisableBit.mjDSBL_CONSTRAINT)

    def test_mass_matrix_and_bias(self, slider):
        state = slider.make_state(jnp.array([0.3, -0.2, 0.5]), jnp.array([1.0, 0.0, -1.0]))
        np.testing.assert_allclose(slider.mass_matrix(state), 2.0 * np.eye(3), atol=1e-10)
        np.testing.assert_allclose(
            slider.bias_forces(state), [0.0, 0.0, 2.0 * GRAVITY], atol=1e-8
        )
        np.testing.assert_allclose(slider.generalized_forces(state), np.zeros(3), atol=1e-12)

    def test_point_kinematics(self, slider):
        q = jnp.array([0.3, -0.2, 0.5])
        state = slider.make_state(q, jnp.zeros(3))
        point = jnp.array([0.0, 0.0, 0.1])

        np.testing.assert_allclose(
            slider.point_position(state, 1, point), q + point, atol=1e-12
        )
        np.testing.assert_allclose(slider.point_jacobian(state, 1, point), np.eye(3), atol=1e-12)
        np.testing.assert_allclose(
            slider.point_jacobian(state, 0, point), np.zeros((3, 3)), atol=1e-12
        )

    def test_state_dimension_mismatch(self, slider):
        with pytest.raises(ValueError):
            slider.make_state(jnp.zeros(4), jnp.zeros(3))

    def test_config_requires_one_source(self):
        with pytest.raises(ValueError):
            MjxDynamicsModel.from_config(MjxModelConfig())
        with pytest.raises(ValueError):
            MjxDynamicsModel.from_config(MjxModelConfig(xml_path="a.xml", xml=SLIDER_XML))


class TestKinematicMap:
    """Tests for the qvel -> qpos derivative map."""

    def test_matches_mujoco_integration(self):
        model = mujoco.MjModel.from_xml_string(FREE_BODY_XML)
        rng = np.random.default_rng(1)
        q = random_free_body_qpos(model, rng)
        v = rng.normal(size=model.nv)

        h = 1e-6
        q_plus, q_minus = q.copy(), q.copy()
        mujoco.mj_integratePos(model, q_plus, v, h)
        mujoco.mj_integratePos(model, q_minus, v, -h)
        fd = (q_plus - q_minus) / (2 * h)

        kinematic_map = qvel_to_qpos_map(model, jnp.asarray(q))
        assert kinematic_map.shape == (model.nq, model.nv)
        np.testing.assert_allclose(kinematic_map @ v, fd, atol=1e-6)

    def test_identity_for_slide_joints(self, slider):
        state = slider.make_state(jnp.array([0.3, -0.2, 0.5]), jnp.zeros(3))
        np.testing.assert_allclose(slider.kinematic_map(state), np.eye(3))


class TestMjxEvaluators:
    """Tests for evaluators and constrained dynamics on top of MJX."""

    def test_hinge_point_kinematics(self, pendulum_model):
        theta, theta_dot = 0.4, 1.3
        state = pendulum_model.make_state(jnp.array([theta]), jnp.array([theta_dot]))
        e = WorldPointEvaluator(pendulum_model, [0, 0, -1], pendulum_model.body_id("link"))

        s, c = np.sin(theta), np.cos(theta)
        np.testing.assert_allclose(e.eval_full(state), [-s, 0.0, -c], atol=1e-10)
        np.testing.assert_allclose(e.eval_full_jacobian(state), [[-c], [0.0], [s]], atol=1e-10)
        np.testing.assert_allclose(
            e.eval_full_jacobian_dot_times_v(state),
            np.array([s, 0.0, c]) * theta_dot**2,
            atol=1e-8,
        )

    def test_matches_analytic_point_mass(self, slider, pendulum_state):
        analytic = PointMassModel()
        expected = EvaluatorSet(analytic)
        expected.add_evaluator(DistanceEvaluator(analytic, [0, 0, 0], 1, [0, 0, 0], 0, 1.0))
        evaluators = EvaluatorSetConfig(
            evaluators=[DistanceConfig(body_a="ball", body_b="world", distance=1.0)]
        ).build(slider)

        state = slider.make_state(pendulum_state.q, pendulum_state.v)
        xdot, lam = jax.jit(
            lambda s: evaluators.calc_time_derivatives_and_forces(s, alpha=2.0)
        )(state)
        xdot_expected, lam_expected = expected.calc_time_derivatives_and_forces(
            pendulum_state, alpha=2.0
        )

        np.testing.assert_allclose(xdot, xdot_expected, atol=1e-6)
        np.testing.assert_allclose(lam, lam_expected, atol=1e-6)

    def test_constrained_pendulum_holds_point(self, pendulum_model):
        """Pinning the tip of a hinge pendulum in x leaves no motion."""
        body = pendulum_model.body_id("link")
        evaluators = EvaluatorSet(pendulum_model)
        evaluators.add_evaluator(
            WorldPointEvaluator(pendulum_model, [0, 0, -1], body, active_inds=[0])
        )
        state = pendulum_model.make_state(jnp.array([0.4]), jnp.array([0.0]))

        xdot, lam = jax.jit(evaluators.calc_time_derivatives_and_forces)(state)

        np.testing.assert_allclose(xdot, np.zeros(2), atol=1e-8)
        np.testing.assert_allclose(lam[1:], [0.0, 0.0])
        np.testing.assert_allclose(
            evaluators.calc_mass_matrix_times_vdot(state, lam), np.zeros(1), atol=1e-8
        )

    def test_jacobian_dot_times_v_with_quaternions(self, free_body):
        """J_dot v against a central difference of J v along MuJoCo's own integrator."""
        model = free_body.mj_model
        rng = np.random.default_rng(4)
        q = random_free_body_qpos(model, rng)
        v = rng.normal(size=model.nv)

        evaluators = EvaluatorSet(free_body)
        evaluators.add_evaluator(
            WorldPointEvaluator(free_body, [0.1, 0.2, 0.3], free_body.body_id("box"))
        )
        evaluators.add_evaluator(
            DistanceEvaluator(
                free_body,
                [0.1, 0.0, 0.0],
                free_body.body_id("box"),
                [0.0, 0.0, -0.5],
                free_body.body_id("forearm"),
                distance=1.0,
            )
        )

        def jac_times_v(q_arg: np.ndarray) -> np.ndarray:
            state = free_body.make_state(jnp.asarray(q_arg), jnp.asarray(v))
            return np.asarray(evaluators.eval_full_jacobian(state)) @ v

        h = 1e-6
        q_plus, q_minus = q.copy(), q.copy()
        mujoco.mj_integratePos(model, q_plus, v, h)
        mujoco.mj_integratePos(model, q_minus, v, -h)
        fd = (jac_times_v(q_plus) - jac_times_v(q_minus)) / (2 * h)

        state = free_body.make_state(jnp.asarray(q), jnp.asarray(v))
        jdot_v = evaluators.eval_full_jacobian_dot_times_v(state)
        assert jdot_v.shape == (4,)
        np.testing.assert_allclose(jdot_v, fd, atol=1e-5)
