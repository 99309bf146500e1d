"""Unit tests for term descriptors and problem construction."""

import copy

import numpy as np
import pytest

from trajopt_collision import (
    CastCollisionEvaluator,
    CollisionConstraint,
    CollisionCost,
    CollisionShape,
    CollisionTermError,
    CollisionTermInfo,
    ProblemConstructionInfo,
    SingleTimestepCollisionEvaluator,
    TermInfoRegistry,
    TermType,
    construct_problem,
    default_registry,
)
from trajopt_collision.kinematic_terms import JointPosConstraint, JointVelCost
from trajopt_collision.modeling import ConstraintType
from trajopt_collision.problem import JointVelTermInfo, TermInfo, TrajOptProb, parse_term_type


def _collision_entry(**params) -> dict:
    base = {
        "continuous": True,
        "safety_margins": {"default_margin": 0.025, "default_coeff": 20.0},
    }
    base.update(params)
    return {"type": "collision", "name": "coll", "params": base}


def _config(box_cast_config, costs=None, constraints=None) -> dict:
    config = copy.deepcopy(box_cast_config)
    if costs is not None:
        config["costs"] = costs
    if constraints is not None:
        config["constraints"] = constraints
    return config


# ============================================================
# TestTermType
# ============================================================

class TestTermType:
    """Tests for parsing term roles."""

    def test_parse(self):
        assert parse_term_type("cost", TermType.CNT) == TermType.COST
        assert parse_term_type("constraint", TermType.COST) == TermType.CNT
        assert parse_term_type(["cost", "constraint"], TermType.COST) == (
            TermType.COST | TermType.CNT
        )
        assert parse_term_type(None, TermType.CNT) == TermType.CNT

    def test_unknown_raises(self):
        with pytest.raises(ValueError):
            parse_term_type("penalty", TermType.COST)


# ============================================================
# TestTermInfoRegistry
# ============================================================

class TestTermInfoRegistry:
    """Tests for the explicit term type registry."""

    def test_default_names(self):
        registry = default_registry()
        assert registry.names == [
            "cart_vel", "collision", "joint_acc", "joint_jerk", "joint_pos",
            "joint_vel", "joint_vel_limits", "static_cart_pose",
        ]
        assert isinstance(registry.create("collision"), CollisionTermInfo)

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            default_registry().create("orientation")

    def test_duplicate_registration_raises(self):
        registry = TermInfoRegistry()
        registry.register("joint_vel", JointVelTermInfo)
        with pytest.raises(ValueError):
            registry.register("joint_vel", JointVelTermInfo)

    def test_registries_are_independent(self):
        registry = default_registry()

        class ScaledVelTermInfo(JointVelTermInfo):
            pass

        registry.register("scaled_vel", ScaledVelTermInfo)
        assert "scaled_vel" in registry
        assert "scaled_vel" not in default_registry()

    def test_custom_term_is_hatched(self, boxbot_env, box_cast_config):
        hatched = []

        class MarkerTermInfo(TermInfo):
            def from_dict(self, pci, data):
                self.value = data["params"]["value"]

            def hatch(self, prob):
                hatched.append((self.name, self.value, prob.num_steps))

        registry = default_registry()
        registry.register("marker", MarkerTermInfo)
        config = _config(
            box_cast_config,
            costs=[{"type": "marker", "name": "m", "params": {"value": 3}}],
            constraints=[],
        )
        pci = ProblemConstructionInfo.from_dict(config, boxbot_env, registry)
        construct_problem(pci)
        assert hatched == [("m", 3, 5)]


# ============================================================
# TestCollisionTermInfo
# ============================================================

class TestCollisionTermInfo:
    """Tests for collision term parsing and hatching."""

    def test_box_cast_problem(self, boxbot_env, box_cast_config):
        pci = ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env)
        prob = construct_problem(pci)
        assert isinstance(prob.costs[0], JointVelCost)
        collision_costs = prob.costs[1:]
        assert [c.name for c in collision_costs] == [f"cast_coll_{i}" for i in range(4)]
        assert all(isinstance(c.evaluator, CastCollisionEvaluator) for c in collision_costs)
        assert [c.name for c in prob.constraints] == ["goal"]
        assert isinstance(prob.constraints[0], JointPosConstraint)
        assert prob.constraints[0].constraint_type is ConstraintType.EQ

    def test_cast_terms_bind_consecutive_rows(self, boxbot_env, box_cast_config):
        prob = construct_problem(ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env))
        for i, cost in enumerate(prob.costs[1:]):
            expected = prob.get_var_row(i) + prob.get_var_row(i + 1)
            assert [v.index for v in cost.get_vars()] == [v.index for v in expected]

    def test_gap(self, boxbot_env, box_cast_config):
        config = _config(
            box_cast_config,
            costs=[_collision_entry(first_step=0, last_step=4, gap=2)],
        )
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert [c.name for c in prob.costs] == ["coll_0", "coll_1", "coll_2"]
        expected = prob.get_var_row(1) + prob.get_var_row(3)
        assert [v.index for v in prob.costs[1].get_vars()] == [v.index for v in expected]

    def test_discrete_covers_inclusive_range(self, boxbot_env, box_cast_config):
        config = _config(
            box_cast_config,
            costs=[_collision_entry(continuous=False, first_step=1, last_step=3)],
        )
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert [c.name for c in prob.costs] == ["coll_1", "coll_2", "coll_3"]
        assert all(
            isinstance(c.evaluator, SingleTimestepCollisionEvaluator) for c in prob.costs
        )

    def test_cost_and_constraint_share_evaluator(self, boxbot_env, box_cast_config):
        entry = _collision_entry()
        entry["term_type"] = ["cost", "constraint"]
        config = _config(box_cast_config, costs=[entry], constraints=[])
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert len(prob.costs) == len(prob.constraints) == 4
        for cost, cnt in zip(prob.costs, prob.constraints):
            assert isinstance(cost, CollisionCost)
            assert isinstance(cnt, CollisionConstraint)
            assert cost.evaluator is cnt.evaluator
            assert cost.name == cnt.name

    def test_constraint_only(self, boxbot_env, box_cast_config):
        config = _config(box_cast_config, costs=[], constraints=[_collision_entry()])
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert prob.costs == []
        assert all(isinstance(c, CollisionConstraint) for c in prob.constraints)

    def test_per_step_safety_margins(self, boxbot_env, box_cast_config):
        entry = _collision_entry()
        entry["params"]["safety_margins"] = [
            {"default_margin": 0.01 * (i + 1), "default_coeff": 1.0} for i in range(4)
        ]
        config = _config(box_cast_config, costs=[entry], constraints=[])
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        margins = [c.evaluator.safety_margin_data.default_margin for c in prob.costs]
        np.testing.assert_allclose(margins, [0.01, 0.02, 0.03, 0.04])

    def test_dist_pen_and_coeffs(self, boxbot_env, box_cast_config):
        entry = {
            "type": "collision",
            "params": {"continuous": False, "dist_pen": [0.04], "coeffs": [5.0]},
        }
        config = _config(box_cast_config, costs=[entry], constraints=[])
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert len(prob.costs) == 5
        data = prob.costs[2].evaluator.safety_margin_data
        assert data.lookup("box_attached", "post") == (0.04, 5.0)

    def test_safety_margin_count_mismatch_raises(self, boxbot_env, box_cast_config):
        entry = _collision_entry()
        entry["params"]["safety_margins"] = [
            {"default_margin": 0.01, "default_coeff": 1.0} for _ in range(3)
        ]
        config = _config(box_cast_config, costs=[entry])
        with pytest.raises(CollisionTermError):
            ProblemConstructionInfo.from_dict(config, boxbot_env)

    @pytest.mark.parametrize("params", [
        {"first_step": 3, "last_step": 2},
        {"first_step": 0, "last_step": 5},
        {"first_step": -1, "last_step": 2},
        {"first_step": 2, "last_step": 2},
        {"first_step": 0, "last_step": 4, "gap": 0},
    ])
    def test_invalid_step_range_raises(self, boxbot_env, box_cast_config, params):
        config = _config(box_cast_config, costs=[_collision_entry(**params)])
        with pytest.raises(CollisionTermError):
            ProblemConstructionInfo.from_dict(config, boxbot_env)

    def test_single_discrete_step_is_valid(self, boxbot_env, box_cast_config):
        config = _config(
            box_cast_config,
            costs=[_collision_entry(continuous=False, first_step=2, last_step=2)],
        )
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        assert [c.name for c in prob.costs] == ["coll_2"]

    def test_unknown_pair_link_raises(self, boxbot_env, box_cast_config):
        entry = _collision_entry()
        entry["params"]["safety_margins"]["pairs"] = [
            {"pair": ["box_attached", "shelf"], "margin": 0.1, "coeff": 1.0},
        ]
        config = _config(box_cast_config, costs=[entry])
        pci = ProblemConstructionInfo.from_dict(config, boxbot_env)
        with pytest.raises(CollisionTermError):
            construct_problem(pci)

    def test_failed_hatch_adds_no_terms(self, boxbot_env, box_cast_config):
        config = _config(box_cast_config, costs=[_collision_entry()], constraints=[])
        pci = ProblemConstructionInfo.from_dict(config, boxbot_env)
        prob = TrajOptProb(5, boxbot_env)
        boxbot_env.add_link_geometry(
            "x_carriage", [CollisionShape.capsule(0.1, (0, 0, 0), (0, 0, 1))],
        )
        with pytest.raises(CollisionTermError):
            pci.cost_infos[0].hatch(prob)
        assert prob.costs == []


# ============================================================
# TestProblemConstruction
# ============================================================

class TestProblemConstruction:
    """Tests for variables, bounds and initialization."""

    def test_given_traj_is_used(self, boxbot_env, box_cast_config):
        prob = construct_problem(ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env))
        np.testing.assert_allclose(prob.init_traj, box_cast_config["init_info"]["data"])
        assert prob.num_steps == 5
        assert prob.num_dof == 2
        assert prob.num_vars == 10

    def test_start_is_fixed(self, boxbot_env, box_cast_config):
        prob = construct_problem(ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env))
        np.testing.assert_allclose(prob.lower_bounds[:2], [-1.9, 0.0])
        np.testing.assert_allclose(prob.upper_bounds[:2], [-1.9, 0.0])
        np.testing.assert_allclose(prob.lower_bounds[2:], -10.0)
        np.testing.assert_allclose(prob.upper_bounds[2:], 10.0)

    def test_stationary_init(self, boxbot_env, box_cast_config):
        config = _config(box_cast_config)
        config["init_info"] = {"type": "stationary"}
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        np.testing.assert_allclose(prob.init_traj, np.tile([-1.9, 0.0], (5, 1)))

    def test_dofs_fixed(self, boxbot_env, box_cast_config):
        config = _config(box_cast_config)
        config["basic_info"]["dofs_fixed"] = [1]
        prob = construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))
        y_indices = [prob.vars.at(i, 1).index for i in range(5)]
        np.testing.assert_allclose(prob.lower_bounds[y_indices], 0.0)
        np.testing.assert_allclose(prob.upper_bounds[y_indices], 0.0)

    def test_given_traj_shape_mismatch_raises(self, boxbot_env, box_cast_config):
        config = _config(box_cast_config)
        config["init_info"]["data"] = [[0.0, 0.0]] * 4
        with pytest.raises(ValueError):
            construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))

    def test_joint_vel_as_constraint_raises(self, boxbot_env, box_cast_config):
        config = _config(
            box_cast_config,
            costs=[],
            constraints=[{"type": "joint_vel", "params": {"coeffs": [1.0]}}],
        )
        with pytest.raises(ValueError):
            construct_problem(ProblemConstructionInfo.from_dict(config, boxbot_env))

    def test_joint_pos_value(self, boxbot_env, box_cast_config):
        prob = construct_problem(ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env))
        goal = prob.constraints[0]
        x = prob.init_traj.ravel().copy()
        np.testing.assert_allclose(goal.value(x), [0.0, 0.0])
        x[-2] = 1.5
        np.testing.assert_allclose(goal.violations(x), [0.4, 0.0])

    def test_joint_vel_value(self, boxbot_env, box_cast_config):
        prob = construct_problem(ProblemConstructionInfo.from_dict(box_cast_config, boxbot_env))
        joint_vel = prob.costs[0]
        assert joint_vel.value(prob.init_traj.ravel()) == pytest.approx(3.8)
