"""Collision costs and constraints for the SQP solver.

Both adapters wrap a :class:`CollisionEvaluator`. A cost and a constraint
created from the same term hold the same evaluator instance, so they share
one cache and observe identical contacts for a given ``x``.

Sign convention: for each contact, ``margin - distance`` is positive when
the pair is closer than its safety margin.
"""

import numpy as np

from .environment import AdjacencyMap, Environment
from .evaluators import (
    CastCollisionEvaluator,
    CollisionEvaluator,
    SingleTimestepCollisionEvaluator,
)
from .kinematics import PinocchioKinematics
from .modeling import (
    Constraint,
    ConvexConstraints,
    ConvexModel,
    ConvexObjective,
    Cost,
    Var,
)
from .safety_margin import SafetyMarginData


def _margins_and_coeffs(
    evaluator: CollisionEvaluator,
    x: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Distances, margins and coefficients of the cached contacts at ``x``."""
    contacts = evaluator.get_collisions_cached(x)
    data = evaluator.safety_margin_data
    distances = np.array([c.distance for c in contacts], dtype=np.float64)
    margins = np.empty(len(contacts))
    coeffs = np.empty(len(contacts))
    for i, contact in enumerate(contacts):
        margins[i], coeffs[i] = data.lookup(*contact.link_names)
    return distances, margins, coeffs


class CollisionCost(Cost):
    """Hinge-loss penalty ``sum coeff * max(0, margin - distance)``."""

    def __init__(self, evaluator: CollisionEvaluator, name: str = "collision"):
        super().__init__(name)
        self.evaluator = evaluator

    @classmethod
    def single_timestep(
        cls,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        variables: list[Var],
        name: str = "collision",
    ) -> "CollisionCost":
        return cls(SingleTimestepCollisionEvaluator(
            manip, env, adjacency_map, world_to_base, safety_margin_data, variables,
        ), name)

    @classmethod
    def cast(
        cls,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        vars0: list[Var],
        vars1: list[Var],
        name: str = "collision",
    ) -> "CollisionCost":
        return cls(CastCollisionEvaluator(
            manip, env, adjacency_map, world_to_base, safety_margin_data, vars0, vars1,
        ), name)

    def value(self, x: np.ndarray) -> float:
        distances, margins, coeffs = _margins_and_coeffs(self.evaluator, x)
        return float(np.sum(coeffs * np.maximum(0.0, margins - distances)))

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexObjective:
        """Piecewise-linear surrogate, accurate near ``x`` only."""
        objective = ConvexObjective(model)
        exprs = self.evaluator.calc_dist_expressions(x)
        _, margins, coeffs = _margins_and_coeffs(self.evaluator, x)
        for expr, margin, coeff in zip(exprs, margins, coeffs):
            if coeff > 0.0:
                objective.add_hinge(float(margin) - expr, float(coeff))
        return objective

    def get_vars(self) -> list[Var]:
        return self.evaluator.get_vars()

    def plot(self, plotter, x: np.ndarray) -> None:
        self.evaluator.plot(plotter, x)


class CollisionConstraint(Constraint):
    """Inequality ``margin - distance <= 0`` for every contact."""

    def __init__(self, evaluator: CollisionEvaluator, name: str = "collision"):
        super().__init__(name)
        self.evaluator = evaluator

    @classmethod
    def single_timestep(
        cls,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        variables: list[Var],
        name: str = "collision",
    ) -> "CollisionConstraint":
        return cls(SingleTimestepCollisionEvaluator(
            manip, env, adjacency_map, world_to_base, safety_margin_data, variables,
        ), name)

    @classmethod
    def cast(
        cls,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        vars0: list[Var],
        vars1: list[Var],
        name: str = "collision",
    ) -> "CollisionConstraint":
        return cls(CastCollisionEvaluator(
            manip, env, adjacency_map, world_to_base, safety_margin_data, vars0, vars1,
        ), name)

    def value(self, x: np.ndarray) -> np.ndarray:
        distances, margins, _ = _margins_and_coeffs(self.evaluator, x)
        return margins - distances

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        constraints = ConvexConstraints(model)
        exprs = self.evaluator.calc_dist_expressions(x)
        _, margins, _ = _margins_and_coeffs(self.evaluator, x)
        for expr, margin in zip(exprs, margins):
            constraints.add_ineq(float(margin) - expr)
        return constraints

    def get_vars(self) -> list[Var]:
        return self.evaluator.get_vars()

    def plot(self, plotter, x: np.ndarray) -> None:
        self.evaluator.plot(plotter, x)
