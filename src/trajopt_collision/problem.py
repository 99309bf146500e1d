"""Trajectory optimization problems built from term descriptors.

A problem description is a JSON-shaped dict::

    {"basic_info": {"n_steps": 10, "start_fixed": true},
     "init_info": {"type": "stationary"},
     "costs": [{"type": "collision", "name": "coll",
                "params": {"continuous": true, "first_step": 0,
                           "last_step": 9, "gap": 1,
                           "safety_margins": {"default_margin": 0.025,
                                              "default_coeff": 20}}}],
     "constraints": [{"type": "joint_pos",
                      "params": {"vals": [1.9, 0.0], "timestep": 9}}]}

Each entry is parsed into a :class:`TermInfo` created through a
:class:`TermInfoRegistry`, then hatched into costs and constraints.
"""

import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import Mapping, Type

import numpy as np

from .collision_terms import CollisionConstraint, CollisionCost
from .environment import AdjacencyMap, Environment
from .errors import CollisionTermError
from .evaluators import (
    DEFAULT_SAFETY_MARGIN_BUFFER,
    CastCollisionEvaluator,
    SingleTimestepCollisionEvaluator,
)
from .kinematic_terms import (
    CartPoseError,
    CartVelConstraint,
    JointAccCost,
    JointJerkCost,
    JointPosConstraint,
    JointPosCost,
    JointVelConstraint,
    JointVelCost,
    StaticCartPoseConstraint,
    StaticCartPoseCost,
)
from .kinematics import PinocchioKinematics, pose_from_xyz_wxyz
from .modeling import Constraint, Cost, Var, VarArray
from .safety_margin import SafetyMarginData, create_safety_margin_data_vector

logger = logging.getLogger(__name__)

# Position limits at or beyond this magnitude are treated as unbounded.
_UNBOUNDED = 1e20


class TermType(enum.Flag):
    COST = enum.auto()
    CNT = enum.auto()


def parse_term_type(value, default: TermType) -> TermType:
    """Parse ``"cost"``, ``"constraint"`` or a list of both."""
    if value is None:
        return default
    names = [value] if isinstance(value, str) else list(value)
    out = TermType(0)
    for name in names:
        if name in ("cost", "COST"):
            out |= TermType.COST
        elif name in ("constraint", "cnt", "CNT"):
            out |= TermType.CNT
        else:
            raise ValueError(f"Unknown term type '{name}'")
    return out


def _broadcast(values, n: int, what: str) -> np.ndarray:
    values = np.atleast_1d(np.asarray(values, dtype=np.float64))
    if values.shape[0] == 1:
        return np.full(n, values[0])
    if values.shape[0] != n:
        raise ValueError(f"{what} must have length 1 or {n}, got {values.shape[0]}")
    return values


class TrajOptProb:
    """Decision variables, bounds, costs and constraints of one problem."""

    def __init__(self, n_steps: int, env: Environment):
        """Create a problem with an ``n_steps x n_dof`` variable grid.

        Args:
            n_steps: Number of trajectory timesteps.
            env: Collision scene; also provides the kinematics.
        """
        if n_steps < 1:
            raise ValueError(f"n_steps must be positive, got {n_steps}")
        self.env = env
        self.kinematics: PinocchioKinematics = env.kinematics
        n_dof = self.kinematics.n_dof
        self.vars = VarArray(n_steps, n_dof, self.kinematics.joint_names)
        self.lower_bounds = np.tile(self.kinematics.lower_limits, n_steps)
        self.upper_bounds = np.tile(self.kinematics.upper_limits, n_steps)
        self.lower_bounds[self.lower_bounds <= -_UNBOUNDED] = -np.inf
        self.upper_bounds[self.upper_bounds >= _UNBOUNDED] = np.inf
        self.costs: list[Cost] = []
        self.constraints: list[Constraint] = []
        self.init_traj = np.tile(env.joint_values, (n_steps, 1))

    @property
    def num_steps(self) -> int:
        return self.vars.n_steps

    @property
    def num_dof(self) -> int:
        return self.vars.n_dof

    @property
    def num_vars(self) -> int:
        return self.vars.size

    def get_var_row(self, i: int) -> list[Var]:
        return self.vars.row(i)

    def add_cost(self, cost: Cost) -> None:
        self.costs.append(cost)

    def add_constraint(self, constraint: Constraint) -> None:
        self.constraints.append(constraint)

    def set_init_traj(self, traj: np.ndarray) -> None:
        traj = np.asarray(traj, dtype=np.float64)
        if traj.shape != self.vars.shape:
            raise ValueError(
                f"Initial trajectory shape {traj.shape} != {self.vars.shape}"
            )
        self.init_traj = traj.copy()

    def fix_var(self, var: Var, value: float) -> None:
        self.lower_bounds[var.index] = value
        self.upper_bounds[var.index] = value


class TermInfo(abc.ABC):
    """Parameters of one cost or constraint entry, before hatching."""

    supported_term_types = TermType.COST | TermType.CNT

    def __init__(self, name: str = "", term_type: TermType = TermType.COST):
        self.name = name
        self.term_type = term_type

    @abc.abstractmethod
    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        """Read parameters from a term entry."""

    @abc.abstractmethod
    def hatch(self, prob: TrajOptProb) -> None:
        """Create the costs and constraints and add them to ``prob``."""

    def _check_term_type(self) -> None:
        if not self.term_type or self.term_type & ~self.supported_term_types:
            raise ValueError(
                f"{type(self).__name__} '{self.name}' does not support "
                f"term type {self.term_type}"
            )


class CollisionTermInfo(TermInfo):
    """Collision penalty or constraint over a range of timesteps.

    Attributes:
        first_step: First timestep covered (inclusive).
        last_step: Last timestep covered (inclusive).
        continuous: Check swept volumes between steps ``i`` and ``i + gap``.
        gap: Step offset of the swept pair.
        info: Safety margins, one entry shared by every step or one per
            evaluator.
        safety_margin_buffer: Query distance beyond the largest margin.
    """

    def __init__(self, name: str = "collision", term_type: TermType = TermType.COST):
        super().__init__(name, term_type)
        self.first_step = 0
        self.last_step = -1
        self.continuous = True
        self.gap = 1
        self.info: list[SafetyMarginData] = []
        self.safety_margin_buffer = DEFAULT_SAFETY_MARGIN_BUFFER

    def steps(self) -> list[int]:
        """First timestep of every evaluator this term creates."""
        if self.continuous:
            return list(range(self.first_step, self.last_step - self.gap + 1))
        return list(range(self.first_step, self.last_step + 1))

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        n_steps = pci.basic_info.n_steps
        self.first_step = int(params.get("first_step", 0))
        self.last_step = int(params.get("last_step", n_steps - 1))
        self.continuous = bool(params.get("continuous", True))
        self.gap = int(params.get("gap", 1))
        self.safety_margin_buffer = float(
            params.get("safety_margin_buffer", DEFAULT_SAFETY_MARGIN_BUFFER)
        )
        self.validate(n_steps)

        n_terms = len(self.steps())
        margins = params.get("safety_margins")
        if margins is None:
            dist_pen = _broadcast(params.get("dist_pen", [0.025]), n_terms, "dist_pen")
            coeffs = _broadcast(params.get("coeffs", [20.0]), n_terms, "coeffs")
            self.info = [
                data_i
                for pen, coeff in zip(dist_pen, coeffs)
                for data_i in create_safety_margin_data_vector(1, pen, coeff)
            ]
        elif isinstance(margins, Mapping):
            self.info = [SafetyMarginData.from_dict(margins)]
        else:
            self.info = [SafetyMarginData.from_dict(entry) for entry in margins]
        if len(self.info) not in (1, n_terms):
            raise CollisionTermError(
                f"Collision term '{self.name}' has {len(self.info)} safety "
                f"margin entries for {n_terms} timesteps"
            )

    def validate(self, n_steps: int) -> None:
        """Check the step range against the problem size.

        Raises:
            CollisionTermError: If the range is empty or out of bounds.
        """
        if not 0 <= self.first_step <= self.last_step < n_steps:
            raise CollisionTermError(
                f"Collision term '{self.name}': invalid step range "
                f"[{self.first_step}, {self.last_step}] for {n_steps} steps"
            )
        if self.continuous and self.gap < 1:
            raise CollisionTermError(
                f"Collision term '{self.name}': gap must be >= 1, got {self.gap}"
            )
        if not self.steps():
            raise CollisionTermError(
                f"Collision term '{self.name}': no step pairs with gap "
                f"{self.gap} in [{self.first_step}, {self.last_step}]"
            )

    def hatch(self, prob: TrajOptProb) -> None:
        """Add one evaluator per step, shared by its cost and constraint."""
        self._check_term_type()
        self.validate(prob.num_steps)
        if not self.info:
            raise CollisionTermError(f"Collision term '{self.name}' has no safety margins")

        env = prob.env
        adjacency_map = AdjacencyMap(
            env, prob.kinematics.active_link_names, env.get_link_transforms(),
        )
        costs, constraints = [], []
        for k, step in enumerate(self.steps()):
            info = self.info[k] if len(self.info) > 1 else self.info[0]
            if self.continuous:
                evaluator = CastCollisionEvaluator(
                    prob.kinematics, env, adjacency_map, env.base_pose, info,
                    prob.get_var_row(step), prob.get_var_row(step + self.gap),
                    self.safety_margin_buffer,
                )
            else:
                evaluator = SingleTimestepCollisionEvaluator(
                    prob.kinematics, env, adjacency_map, env.base_pose, info,
                    prob.get_var_row(step), self.safety_margin_buffer,
                )
            term_name = f"{self.name}_{step}"
            if self.term_type & TermType.COST:
                costs.append(CollisionCost(evaluator, term_name))
            if self.term_type & TermType.CNT:
                constraints.append(CollisionConstraint(evaluator, term_name))

        for cost in costs:
            prob.add_cost(cost)
        for constraint in constraints:
            prob.add_constraint(constraint)
        logger.debug(
            "Collision term '%s': %d costs, %d constraints",
            self.name, len(costs), len(constraints),
        )


class _JointDiffTermInfo(TermInfo):
    """L1 cost on a finite difference of the joint trajectory."""

    supported_term_types = TermType.COST
    cost_class: Type[Cost] = JointVelCost

    def __init__(self, name: str = "", term_type: TermType = TermType.COST):
        super().__init__(name, term_type)
        self.coeffs = np.ones(1)
        self.first_step = 0
        self.last_step = -1

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        n_dof = pci.kinematics.n_dof
        self.coeffs = _broadcast(params.get("coeffs", [1.0]), n_dof, "coeffs")
        self.first_step = int(params.get("first_step", 0))
        self.last_step = int(params.get("last_step", pci.basic_info.n_steps - 1))

    def hatch(self, prob: TrajOptProb) -> None:
        self._check_term_type()
        if not 0 <= self.first_step < self.last_step < prob.num_steps:
            raise ValueError(
                f"{type(self).__name__} '{self.name}': invalid step range "
                f"[{self.first_step}, {self.last_step}]"
            )
        coeffs = _broadcast(self.coeffs, prob.num_dof, "coeffs")
        prob.add_cost(self.cost_class(
            prob.vars, coeffs, self.first_step, self.last_step, self.name,
        ))


class JointVelTermInfo(_JointDiffTermInfo):
    """L1 joint-velocity smoothing cost."""

    cost_class = JointVelCost

    def __init__(self, name: str = "joint_vel", term_type: TermType = TermType.COST):
        super().__init__(name, term_type)


class JointAccTermInfo(_JointDiffTermInfo):
    """L1 joint-acceleration smoothing cost."""

    cost_class = JointAccCost

    def __init__(self, name: str = "joint_acc", term_type: TermType = TermType.COST):
        super().__init__(name, term_type)


class JointJerkTermInfo(_JointDiffTermInfo):
    """L1 joint-jerk smoothing cost."""

    cost_class = JointJerkCost

    def __init__(self, name: str = "joint_jerk", term_type: TermType = TermType.COST):
        super().__init__(name, term_type)


class JointVelLimitsTermInfo(TermInfo):
    """Per-step joint displacement limits over a range of timesteps."""

    supported_term_types = TermType.CNT

    def __init__(self, name: str = "joint_vel_limits", term_type: TermType = TermType.CNT):
        super().__init__(name, term_type)
        self.vals = np.zeros(1)
        self.first_step = 0
        self.last_step = -1

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        self.vals = _broadcast(params["vals"], pci.kinematics.n_dof, "vals")
        if np.any(self.vals < 0):
            raise ValueError(f"Joint velocity limits '{self.name}' must be >= 0")
        self.first_step = int(params.get("first_step", 0))
        self.last_step = int(params.get("last_step", pci.basic_info.n_steps - 1))

    def hatch(self, prob: TrajOptProb) -> None:
        self._check_term_type()
        if not 0 <= self.first_step < self.last_step < prob.num_steps:
            raise ValueError(
                f"Joint velocity limits '{self.name}': invalid step range "
                f"[{self.first_step}, {self.last_step}]"
            )
        prob.add_constraint(JointVelConstraint(
            prob.vars, _broadcast(self.vals, prob.num_dof, "vals"),
            self.first_step, self.last_step, self.name,
        ))


class JointPosTermInfo(TermInfo):
    """Joint-space target at one timestep.

    As a cost, the weighted L1 distance to ``vals``; as a constraint, an
    equality on every joint. A single value is expanded to every joint. The
    default timestep is the last one.
    """

    def __init__(self, name: str = "joint_pos", term_type: TermType = TermType.CNT):
        super().__init__(name, term_type)
        self.vals = np.zeros(1)
        self.coeffs = np.ones(1)
        self.timestep = -1

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        n_dof = pci.kinematics.n_dof
        self.vals = _broadcast(params["vals"], n_dof, "vals")
        self.coeffs = _broadcast(params.get("coeffs", [1.0]), n_dof, "coeffs")
        self.timestep = int(params.get("timestep", pci.basic_info.n_steps - 1))

    def hatch(self, prob: TrajOptProb) -> None:
        self._check_term_type()
        timestep = self.timestep % prob.num_steps
        variables = prob.get_var_row(timestep)
        vals = _broadcast(self.vals, prob.num_dof, "vals")
        if self.term_type & TermType.COST:
            prob.add_cost(JointPosCost(
                variables, vals, _broadcast(self.coeffs, prob.num_dof, "coeffs"), self.name,
            ))
        if self.term_type & TermType.CNT:
            prob.add_constraint(JointPosConstraint(variables, vals, self.name))


class CartVelTermInfo(TermInfo):
    """Limit on the Cartesian displacement of a link between steps."""

    supported_term_types = TermType.CNT

    def __init__(self, name: str = "cart_vel", term_type: TermType = TermType.CNT):
        super().__init__(name, term_type)
        self.link = ""
        self.max_displacement = 0.0
        self.first_step = 0
        self.last_step = -1

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        self.link = params["link"]
        self.max_displacement = float(params["max_displacement"])
        self.first_step = int(params.get("first_step", 0))
        self.last_step = int(params.get("last_step", pci.basic_info.n_steps - 1))

    def hatch(self, prob: TrajOptProb) -> None:
        self._check_term_type()
        if not 0 <= self.first_step < self.last_step < prob.num_steps:
            raise ValueError(
                f"Cartesian velocity term '{self.name}': invalid step range "
                f"[{self.first_step}, {self.last_step}]"
            )
        prob.add_constraint(CartVelConstraint(
            prob.kinematics, prob.vars, self.link, self.max_displacement,
            self.first_step, self.last_step, self.name,
        ))


class StaticCartPoseTermInfo(TermInfo):
    """Pose of a link at one timestep against a fixed world target.

    Attributes:
        timestep: Step the term applies to; defaults to the last one.
        xyz: Target position, world frame.
        wxyz: Target orientation quaternion.
        pos_coeffs: Weights of the position error.
        rot_coeffs: Weights of the rotation error; zero ignores orientation.
        link: Link that should reach the target.
        tcp_xyz: Offset of the tool point in the link frame.
    """

    def __init__(self, name: str = "static_cart_pose", term_type: TermType = TermType.CNT):
        super().__init__(name, term_type)
        self.timestep = -1
        self.xyz = np.zeros(3)
        self.wxyz = np.array([1.0, 0.0, 0.0, 0.0])
        self.pos_coeffs = np.ones(3)
        self.rot_coeffs = np.ones(3)
        self.link = ""
        self.tcp_xyz = np.zeros(3)

    def from_dict(self, pci: "ProblemConstructionInfo", data: Mapping) -> None:
        params = data.get("params", {})
        self.timestep = int(params.get("timestep", pci.basic_info.n_steps - 1))
        self.xyz = np.asarray(params["xyz"], dtype=np.float64)
        self.wxyz = np.asarray(params.get("wxyz", [1.0, 0.0, 0.0, 0.0]), dtype=np.float64)
        self.pos_coeffs = _broadcast(params.get("pos_coeffs", [1.0]), 3, "pos_coeffs")
        self.rot_coeffs = _broadcast(params.get("rot_coeffs", [1.0]), 3, "rot_coeffs")
        self.link = params["link"]
        self.tcp_xyz = np.asarray(params.get("tcp_xyz", [0.0, 0.0, 0.0]), dtype=np.float64)
        if self.xyz.shape != (3,) or self.wxyz.shape != (4,) or self.tcp_xyz.shape != (3,):
            raise ValueError(
                f"Cartesian pose term '{self.name}': xyz and tcp_xyz need 3 "
                f"values and wxyz needs 4"
            )

    def hatch(self, prob: TrajOptProb) -> None:
        self._check_term_type()
        timestep = self.timestep % prob.num_steps
        error = CartPoseError(
            prob.kinematics, prob.env.base_pose, prob.get_var_row(timestep),
            self.link, pose_from_xyz_wxyz(self.xyz, self.wxyz),
            self.pos_coeffs, self.rot_coeffs, pose_from_xyz_wxyz(self.tcp_xyz),
        )
        if self.term_type & TermType.COST:
            prob.add_cost(StaticCartPoseCost(error, self.name))
        if self.term_type & TermType.CNT:
            prob.add_constraint(StaticCartPoseConstraint(error, self.name))


class TermInfoRegistry:
    """Maps term type names to TermInfo classes.

    Constructed explicitly and passed to problem construction; callers add
    their own term types with :meth:`register`.
    """

    def __init__(self) -> None:
        self._makers: dict[str, Type[TermInfo]] = {}

    def register(self, type_name: str, maker: Type[TermInfo]) -> None:
        if type_name in self._makers:
            raise ValueError(f"Term type '{type_name}' is already registered")
        self._makers[type_name] = maker

    def create(self, type_name: str) -> TermInfo:
        try:
            maker = self._makers[type_name]
        except KeyError:
            raise ValueError(
                f"Unknown term type '{type_name}'. Registered: {sorted(self._makers)}"
            ) from None
        return maker()

    @property
    def names(self) -> list[str]:
        return sorted(self._makers)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._makers


def default_registry() -> TermInfoRegistry:
    """New registry holding the built-in term types."""
    registry = TermInfoRegistry()
    registry.register("collision", CollisionTermInfo)
    registry.register("joint_vel", JointVelTermInfo)
    registry.register("joint_pos", JointPosTermInfo)
    registry.register("joint_acc", JointAccTermInfo)
    registry.register("joint_jerk", JointJerkTermInfo)
    registry.register("joint_vel_limits", JointVelLimitsTermInfo)
    registry.register("cart_vel", CartVelTermInfo)
    registry.register("static_cart_pose", StaticCartPoseTermInfo)
    return registry


@dataclass
class BasicInfo:
    """Problem size and fixed variables.

    Attributes:
        n_steps: Number of timesteps.
        start_fixed: Pin the first timestep to the initial trajectory.
        dofs_fixed: Joint indices pinned at every timestep.
    """

    n_steps: int
    start_fixed: bool = True
    dofs_fixed: list[int] = field(default_factory=list)


@dataclass
class InitInfo:
    """Initial trajectory: ``stationary`` at the current state or ``given_traj``."""

    type: str = "stationary"
    data: np.ndarray | None = None


@dataclass
class ProblemConstructionInfo:
    """Everything needed to construct a :class:`TrajOptProb`."""

    env: Environment
    basic_info: BasicInfo
    init_info: InitInfo = field(default_factory=InitInfo)
    cost_infos: list[TermInfo] = field(default_factory=list)
    cnt_infos: list[TermInfo] = field(default_factory=list)

    @property
    def kinematics(self) -> PinocchioKinematics:
        return self.env.kinematics

    @classmethod
    def from_dict(
        cls,
        config: Mapping,
        env: Environment,
        registry: TermInfoRegistry | None = None,
    ) -> "ProblemConstructionInfo":
        """Parse a problem description.

        Raises:
            CollisionTermError: If a collision term is malformed.
            ValueError: If any other part of the description is malformed.
        """
        registry = registry or default_registry()
        basic = config["basic_info"]
        pci = cls(
            env=env,
            basic_info=BasicInfo(
                n_steps=int(basic["n_steps"]),
                start_fixed=bool(basic.get("start_fixed", True)),
                dofs_fixed=[int(j) for j in basic.get("dofs_fixed", [])],
            ),
        )
        init = config.get("init_info", {})
        init_data = init.get("data")
        pci.init_info = InitInfo(
            type=init.get("type", "stationary"),
            data=None if init_data is None else np.asarray(init_data, dtype=np.float64),
        )

        for key, default_type, infos in (
            ("costs", TermType.COST, pci.cost_infos),
            ("constraints", TermType.CNT, pci.cnt_infos),
        ):
            for entry in config.get(key, []):
                term = registry.create(entry["type"])
                term.name = entry.get("name", entry["type"])
                term.term_type = parse_term_type(entry.get("term_type"), default_type)
                term.from_dict(pci, entry)
                infos.append(term)
        return pci


def construct_problem(pci: ProblemConstructionInfo) -> TrajOptProb:
    """Create the problem: variables, initial trajectory and all terms."""
    prob = TrajOptProb(pci.basic_info.n_steps, pci.env)

    if pci.init_info.type == "stationary":
        prob.set_init_traj(np.tile(pci.env.joint_values, (prob.num_steps, 1)))
    elif pci.init_info.type == "given_traj":
        if pci.init_info.data is None:
            raise ValueError("init_info 'given_traj' requires data")
        prob.set_init_traj(pci.init_info.data)
    else:
        raise ValueError(f"Unknown init_info type '{pci.init_info.type}'")

    if pci.basic_info.start_fixed:
        for var, value in zip(prob.get_var_row(0), prob.init_traj[0]):
            prob.fix_var(var, value)
    for j in pci.basic_info.dofs_fixed:
        for i in range(prob.num_steps):
            prob.fix_var(prob.vars.at(i, j), prob.init_traj[i, j])

    for term in pci.cost_infos + pci.cnt_infos:
        term.hatch(prob)

    logger.info(
        "Constructed problem: %d steps, %d dof, %d costs, %d constraints",
        prob.num_steps, prob.num_dof, len(prob.costs), len(prob.constraints),
    )
    return prob
