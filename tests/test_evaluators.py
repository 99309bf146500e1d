"""Unit tests for discrete and swept collision evaluators."""

import numpy as np
import pytest

from trajopt_collision import (
    CastCollisionEvaluator,
    CollisionShape,
    CollisionTermError,
    Environment,
    SafetyMarginData,
    SingleTimestepCollisionEvaluator,
)
from trajopt_collision.environment import translation_pose
from trajopt_collision.evaluators import CACHE_CAPACITY, make_adjacency_map
from trajopt_collision.modeling import VarArray


def _single(env, margins=None, n_steps=1, step=0):
    variables = VarArray(n_steps, env.kinematics.n_dof, env.kinematics.joint_names)
    evaluator = SingleTimestepCollisionEvaluator(
        env.kinematics, env, make_adjacency_map(env), env.base_pose,
        margins or SafetyMarginData(0.025, 1.0), variables.row(step),
    )
    return evaluator, variables


def _cast(env, margins=None):
    variables = VarArray(2, env.kinematics.n_dof, env.kinematics.joint_names)
    evaluator = CastCollisionEvaluator(
        env.kinematics, env, make_adjacency_map(env), env.base_pose,
        margins or SafetyMarginData(0.025, 20.0), variables.row(0), variables.row(1),
    )
    return evaluator, variables


def _numeric_gradient(evaluator, x, index, eps=1e-6):
    """Central differences of every contact distance w.r.t. x[index]."""
    dx = np.zeros_like(x)
    dx[index] = eps
    return (evaluator.calc_dists(x + dx) - evaluator.calc_dists(x - dx)) / (2 * eps)


# ============================================================
# TestSingleTimestepEvaluator
# ============================================================

class TestSingleTimestepEvaluator:
    """Tests for discrete evaluation at one configuration."""

    def test_reports_penetration(self, point_env):
        evaluator, _ = _single(point_env)
        contacts = evaluator.get_collisions_cached(np.zeros(2))
        assert len(contacts) == 1
        assert contacts[0].distance == pytest.approx(-0.01)
        assert contacts[0].link_names == ("boxbot_link", "ball")

    def test_contact_distance_includes_buffer(self, point_env):
        margins = SafetyMarginData.from_pairs(0.025, 1.0, {("boxbot_link", "ball"): (0.1, 1.0)})
        evaluator, _ = _single(point_env, margins)
        assert evaluator.contact_distance == pytest.approx(0.15)

    def test_repeated_query_hits_cache(self, point_env):
        evaluator, _ = _single(point_env)
        x = np.zeros(2)
        first = evaluator.get_collisions_cached(x)
        second = evaluator.get_collisions_cached(x.copy())
        assert evaluator.query_count == 1
        assert first is second
        evaluator.calc_dist_expressions(x)
        evaluator.calc_dists(x)
        assert evaluator.query_count == 1

    def test_cache_key_ignores_other_timesteps(self, point_env):
        evaluator, _ = _single(point_env, n_steps=2, step=1)
        x = np.zeros(4)
        evaluator.get_collisions_cached(x)
        x[:2] = [5.0, -5.0]
        evaluator.get_collisions_cached(x)
        assert evaluator.query_count == 1

    def test_least_recently_used_configuration_is_evicted(self, point_env):
        evaluator, _ = _single(point_env)
        configs = [np.array([0.001 * i, 0.0]) for i in range(CACHE_CAPACITY + 1)]
        for x in configs:
            evaluator.get_collisions_cached(x)
        assert evaluator.query_count == CACHE_CAPACITY + 1
        assert len(evaluator.cache) == CACHE_CAPACITY

        evaluator.get_collisions_cached(configs[-1])
        assert evaluator.query_count == CACHE_CAPACITY + 1
        evaluator.get_collisions_cached(configs[0])
        assert evaluator.query_count == CACHE_CAPACITY + 2

    def test_fingerprint_match_with_different_values_recomputes(self, point_env):
        evaluator, _ = _single(point_env)
        x = np.zeros(2)
        evaluator.cache.put(hash(x.tobytes()), (b"stale", ()))
        contacts = evaluator.get_collisions_cached(x)
        assert len(contacts) == 1
        assert evaluator.query_count == 1

    def test_gradient_points_away_from_obstacle(self, point_env):
        evaluator, variables = _single(point_env)
        x = np.zeros(2)
        (expr,) = evaluator.calc_dist_expressions(x)
        np.testing.assert_allclose(expr.coeffs, [-1.0, 0.0], atol=1e-12)
        assert [v.index for v in expr.vars] == [v.index for v in variables.row(0)]
        assert expr.value(x) == pytest.approx(-0.01)

    def test_linearization_matches_finite_differences(self, planar_env):
        evaluator, _ = _single(planar_env, SafetyMarginData(0.025, 1.0))
        x = np.array([np.pi / 4, 0.05])
        exprs = evaluator.calc_dist_expressions(x)
        assert len(exprs) == 2
        for j in range(2):
            numeric = _numeric_gradient(evaluator, x, j)
            analytic = np.array([expr.coeffs[j] for expr in exprs])
            np.testing.assert_allclose(analytic, numeric, atol=1e-5)

    def test_zero_coeff_pair_is_not_reported(self, point_env):
        margins = SafetyMarginData.from_pairs(0.025, 1.0, {("boxbot_link", "ball"): (0.025, 0.0)})
        evaluator, _ = _single(point_env, margins)
        assert evaluator.get_collisions_cached(np.zeros(2)) == ()

    def test_links_on_one_body_are_pruned(self, boxbot_kin):
        env = Environment(boxbot_kin)
        env.add_link_geometry("boxbot_link", [CollisionShape.sphere(0.2)])
        env.add_link_geometry(
            "box_attached", [CollisionShape.sphere(0.15, (-0.5, 0.5, 0.0))],
        )
        evaluator, _ = _single(env)
        for x in (np.zeros(2), np.array([5.0, 5.0])):
            assert evaluator.get_collisions_cached(x) == ()

    def test_no_manipulator_geometry_raises(self, boxbot_kin):
        env = Environment(boxbot_kin)
        env.add_obstacle("ball", [CollisionShape.sphere(0.1)], translation_pose([1.0, 0.0, 0.0]))
        with pytest.raises(CollisionTermError):
            _single(env)

    def test_unknown_pair_link_raises(self, point_env):
        margins = SafetyMarginData.from_pairs(0.025, 1.0, {("boxbot_link", "shelf"): (0.05, 1.0)})
        with pytest.raises(CollisionTermError):
            _single(point_env, margins)


# ============================================================
# TestCastEvaluator
# ============================================================

class TestCastEvaluator:
    """Tests for swept evaluation between two configurations."""

    X_SWEEP = np.array([-0.95, 0.0, 0.0, 0.0])

    def test_vars_are_start_then_end(self, boxbot_env):
        evaluator, variables = _cast(boxbot_env)
        expected = variables.row(0) + variables.row(1)
        assert [v.index for v in evaluator.get_vars()] == [v.index for v in expected]

    def test_attached_link_sweep_is_detected(self, boxbot_env):
        evaluator, _ = _cast(boxbot_env)
        (contact,) = evaluator.get_collisions_cached(self.X_SWEEP)
        assert contact.link_names == ("box_attached", "post")
        assert contact.distance == pytest.approx(-0.35)
        assert contact.cc_time == pytest.approx(0.45 / 0.95)

    def test_gradient_is_split_by_time(self, boxbot_env):
        evaluator, _ = _cast(boxbot_env)
        (contact,) = evaluator.get_collisions_cached(self.X_SWEEP)
        (expr,) = evaluator.calc_dist_expressions(self.X_SWEEP)
        t = contact.cc_time
        np.testing.assert_allclose(expr.coeffs, [0.0, 1.0 - t, 0.0, t], atol=1e-9)
        assert expr.value(self.X_SWEEP) == pytest.approx(contact.distance)

    def test_linearization_matches_finite_differences(self, boxbot_env):
        evaluator, _ = _cast(boxbot_env)
        x = np.array([-0.95, 0.05, 0.1, 0.1])
        (expr,) = evaluator.calc_dist_expressions(x)
        for j in range(4):
            numeric = _numeric_gradient(evaluator, x, j)
            assert expr.coeffs[j] == pytest.approx(numeric[0], abs=1e-5)

    def test_repeated_query_hits_cache(self, boxbot_env):
        evaluator, _ = _cast(boxbot_env)
        evaluator.calc_dist_expressions(self.X_SWEEP)
        evaluator.calc_dists(self.X_SWEEP)
        assert evaluator.query_count == 1

    def test_capsule_on_moving_link_raises(self, planar_kin):
        env = Environment(planar_kin)
        env.add_link_geometry(
            "link2", [CollisionShape.capsule(0.05, (0.0, 0.0, 0.0), (1.0, 0.0, 0.0))],
        )
        with pytest.raises(CollisionTermError):
            _cast(env)
