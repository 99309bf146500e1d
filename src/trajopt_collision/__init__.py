"""Collision costs and constraints for trust-region trajectory optimization.

Provides tools for:
- Per-pair safety margins and penalty coefficients
- Discrete and swept-volume collision evaluators with memoized queries
- Collision costs and constraints sharing one evaluator
- Problem construction from term descriptors and an SQP solver
"""

from .cache import Cache
from .collision_terms import CollisionConstraint, CollisionCost
from .contact_managers import (
    ContactResult,
    ContactTestType,
    ContinuousCollisionType,
    ContinuousContactManager,
    DiscreteContactManager,
    check_trajectory,
)
from .environment import AdjacencyMap, AdjacencyMapPair, CollisionShape, Environment
from .errors import CollisionQueryError, CollisionTermError, TrajoptCollisionError
from .evaluators import (
    CastCollisionEvaluator,
    CollisionEvaluator,
    SingleTimestepCollisionEvaluator,
)
from .kinematics import PinocchioKinematics
from .optimizer import (
    BasicTrustRegionSQP,
    OptimizerConfig,
    OptResults,
    OptStatus,
    TrajOptResult,
    optimize_problem,
)
from .problem import (
    BasicInfo,
    CollisionTermInfo,
    InitInfo,
    ProblemConstructionInfo,
    TermInfoRegistry,
    TermType,
    TrajOptProb,
    construct_problem,
    default_registry,
)
from .safety_margin import SafetyMarginData, create_safety_margin_data_vector

__all__ = [
    "AdjacencyMap",
    "AdjacencyMapPair",
    "BasicInfo",
    "BasicTrustRegionSQP",
    "Cache",
    "CastCollisionEvaluator",
    "CollisionConstraint",
    "CollisionCost",
    "CollisionEvaluator",
    "CollisionQueryError",
    "CollisionShape",
    "CollisionTermError",
    "CollisionTermInfo",
    "ContactResult",
    "ContactTestType",
    "ContinuousCollisionType",
    "ContinuousContactManager",
    "DiscreteContactManager",
    "Environment",
    "InitInfo",
    "OptResults",
    "OptStatus",
    "OptimizerConfig",
    "PinocchioKinematics",
    "ProblemConstructionInfo",
    "SafetyMarginData",
    "SingleTimestepCollisionEvaluator",
    "TermInfoRegistry",
    "TermType",
    "TrajOptProb",
    "TrajOptResult",
    "TrajoptCollisionError",
    "check_trajectory",
    "construct_problem",
    "create_safety_margin_data_vector",
    "default_registry",
    "optimize_problem",
]
