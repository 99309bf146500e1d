"""Joint-space and Cartesian terms that shape a collision-avoiding trajectory.

The convex subproblem is a linear program, so the quadratic smoothing
costs of a QP formulation are expressed here as weighted L1 norms
(``coeff * |diff|``). Each one is piecewise linear and its convex model
is exact.
"""

from typing import Sequence

import numpy as np

from .kinematics import PinocchioKinematics, pose_error
from .modeling import (
    AffExpr,
    Constraint,
    ConstraintType,
    ConvexConstraints,
    ConvexModel,
    ConvexObjective,
    Cost,
    Var,
    VarArray,
    get_traj,
    get_vec,
)

# Central-difference step for Cartesian pose errors [rad or m].
_POSE_JAC_EPS = 1e-6


class _JointDiffCost(Cost):
    """Weighted L1 norm of the ``order``-th finite difference along time."""

    order = 1

    def __init__(
        self,
        variables: VarArray,
        coeffs: np.ndarray,
        first_step: int,
        last_step: int,
        name: str,
    ):
        super().__init__(name)
        if last_step - first_step < self.order:
            raise ValueError(
                f"{type(self).__name__} '{name}' needs at least {self.order + 1} "
                f"steps, got [{first_step}, {last_step}]"
            )
        self._vars = variables
        self._coeffs = np.asarray(coeffs, dtype=np.float64)
        self._first_step = first_step
        self._last_step = last_step
        # np.diff(q, n=order) applies these weights to q[i], ..., q[i + order].
        self._stencil = np.diff(np.eye(self.order + 1), n=self.order, axis=0)[0]

    def value(self, x: np.ndarray) -> float:
        traj = get_traj(x, self._vars)[self._first_step:self._last_step + 1]
        diffs = np.diff(traj, n=self.order, axis=0)
        return float(np.sum(np.abs(diffs) @ self._coeffs))

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexObjective:
        objective = ConvexObjective(model)
        for i in range(self._first_step, self._last_step - self.order + 1):
            for j, coeff in enumerate(self._coeffs):
                variables = [self._vars.at(i + k, j) for k in range(self.order + 1)]
                objective.add_abs(AffExpr(0.0, self._stencil, variables), coeff)
        return objective

    def get_vars(self) -> list[Var]:
        return [
            v for i in range(self._first_step, self._last_step + 1)
            for v in self._vars.row(i)
        ]


class JointVelCost(_JointDiffCost):
    """Weighted L1 norm of the joint displacement between consecutive steps."""

    order = 1

    def __init__(self, variables, coeffs, first_step, last_step, name="joint_vel"):
        super().__init__(variables, coeffs, first_step, last_step, name)


class JointAccCost(_JointDiffCost):
    """Weighted L1 norm of the second difference ``q[t+2] - 2 q[t+1] + q[t]``."""

    order = 2

    def __init__(self, variables, coeffs, first_step, last_step, name="joint_acc"):
        super().__init__(variables, coeffs, first_step, last_step, name)


class JointJerkCost(_JointDiffCost):
    """Weighted L1 norm of the third difference along time."""

    order = 3

    def __init__(self, variables, coeffs, first_step, last_step, name="joint_jerk"):
        super().__init__(variables, coeffs, first_step, last_step, name)


class JointPosCost(Cost):
    """Weighted L1 distance of one timestep from target joint values."""

    def __init__(
        self,
        variables: Sequence[Var],
        vals: np.ndarray,
        coeffs: np.ndarray,
        name: str = "joint_pos",
    ):
        super().__init__(name)
        self._vars = list(variables)
        self._vals = np.asarray(vals, dtype=np.float64)
        self._coeffs = np.asarray(coeffs, dtype=np.float64)

    def value(self, x: np.ndarray) -> float:
        return float(np.abs(get_vec(x, self._vars) - self._vals) @ self._coeffs)

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexObjective:
        objective = ConvexObjective(model)
        for var, val, coeff in zip(self._vars, self._vals, self._coeffs):
            objective.add_abs(AffExpr(-float(val), [1.0], [var]), coeff)
        return objective

    def get_vars(self) -> list[Var]:
        return list(self._vars)


class JointPosConstraint(Constraint):
    """Pin every joint of one timestep to a target value."""

    constraint_type = ConstraintType.EQ

    def __init__(self, variables: list[Var], vals: np.ndarray, name: str = "joint_pos"):
        super().__init__(name)
        self._vars = list(variables)
        self._vals = np.asarray(vals, dtype=np.float64)

    def value(self, x: np.ndarray) -> np.ndarray:
        return get_vec(x, self._vars) - self._vals

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        constraints = ConvexConstraints(model)
        for var, val in zip(self._vars, self._vals):
            constraints.add_eq(AffExpr(-float(val), [1.0], [var]))
        return constraints

    def get_vars(self) -> list[Var]:
        return list(self._vars)


class JointVelConstraint(Constraint):
    """Bound the per-step joint displacement: ``|q[t+1, j] - q[t, j]| <= v_j``.

    Values are ordered per step and joint as ``(d - v, -d - v)``.
    """

    def __init__(
        self,
        variables: VarArray,
        limits: np.ndarray,
        first_step: int,
        last_step: int,
        name: str = "joint_vel_limits",
    ):
        super().__init__(name)
        if not first_step < last_step:
            raise ValueError(
                f"Joint velocity constraint '{name}': invalid step range "
                f"[{first_step}, {last_step}]"
            )
        self._vars = variables
        self._limits = np.asarray(limits, dtype=np.float64)
        self._first_step = first_step
        self._last_step = last_step

    def value(self, x: np.ndarray) -> np.ndarray:
        traj = get_traj(x, self._vars)[self._first_step:self._last_step + 1]
        diffs = np.diff(traj, axis=0)
        return np.stack([diffs - self._limits, -diffs - self._limits], axis=-1).ravel()

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        constraints = ConvexConstraints(model)
        for i in range(self._first_step, self._last_step):
            for j, limit in enumerate(self._limits):
                step = AffExpr(
                    0.0, [-1.0, 1.0], [self._vars.at(i, j), self._vars.at(i + 1, j)],
                )
                constraints.add_ineq(step - float(limit))
                constraints.add_ineq(-step - float(limit))
        return constraints

    def get_vars(self) -> list[Var]:
        return [
            v for i in range(self._first_step, self._last_step + 1)
            for v in self._vars.row(i)
        ]


class CartVelConstraint(Constraint):
    """Bound the Cartesian displacement of a link origin between steps.

    For every step pair and axis ``k``, ``p1_k - p0_k <= max_displacement``
    and ``p0_k - p1_k <= max_displacement``, positions in the base frame.
    The constraint is linearized with the link Jacobian.
    """

    def __init__(
        self,
        kinematics: PinocchioKinematics,
        variables: VarArray,
        link: str,
        max_displacement: float,
        first_step: int,
        last_step: int,
        name: str = "cart_vel",
    ):
        super().__init__(name)
        if not kinematics.has_link(link):
            raise ValueError(f"Cartesian velocity constraint '{name}': unknown link '{link}'")
        if not first_step < last_step:
            raise ValueError(
                f"Cartesian velocity constraint '{name}': invalid step range "
                f"[{first_step}, {last_step}]"
            )
        self._kin = kinematics
        self._vars = variables
        self._link = link
        self._max_displacement = float(max_displacement)
        self._first_step = first_step
        self._last_step = last_step

    def _position(self, q: np.ndarray) -> np.ndarray:
        return self._kin.calc_fwd_kin(q)[self._link][:3, 3]

    def value(self, x: np.ndarray) -> np.ndarray:
        traj = get_traj(x, self._vars)
        out = []
        for i in range(self._first_step, self._last_step):
            delta = self._position(traj[i + 1]) - self._position(traj[i])
            out.append(np.concatenate([
                delta - self._max_displacement,
                -delta - self._max_displacement,
            ]))
        return np.concatenate(out)

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        constraints = ConvexConstraints(model)
        traj = get_traj(x, self._vars)
        positions = [self._position(q) for q in traj]
        jacobians = [
            self._kin.calc_jacobian(q, self._link)[:3] for q in traj
        ]
        for i in range(self._first_step, self._last_step):
            variables = self._vars.row(i) + self._vars.row(i + 1)
            x0 = np.concatenate([traj[i], traj[i + 1]])
            delta = positions[i + 1] - positions[i]
            for sign in (1.0, -1.0):
                for k in range(3):
                    gradient = sign * np.concatenate([-jacobians[i][k], jacobians[i + 1][k]])
                    constraints.add_ineq(AffExpr.linearization(
                        sign * delta[k] - self._max_displacement, gradient, variables, x0,
                    ))
        return constraints

    def get_vars(self) -> list[Var]:
        return [
            v for i in range(self._first_step, self._last_step + 1)
            for v in self._vars.row(i)
        ]


class CartPoseError:
    """Weighted pose error of a link against a fixed world target."""

    def __init__(
        self,
        kinematics: PinocchioKinematics,
        world_to_base: np.ndarray,
        variables: Sequence[Var],
        link: str,
        target: np.ndarray,
        pos_coeffs: np.ndarray,
        rot_coeffs: np.ndarray,
        tcp: np.ndarray | None = None,
    ):
        if not kinematics.has_link(link):
            raise ValueError(f"Unknown link '{link}'")
        self.kin = kinematics
        self.world_to_base = np.asarray(world_to_base, dtype=np.float64)
        self.vars = list(variables)
        self.link = link
        self.target = np.asarray(target, dtype=np.float64)
        self.weights = np.concatenate([pos_coeffs, rot_coeffs]).astype(np.float64)
        self.tcp = np.eye(4) if tcp is None else np.asarray(tcp, dtype=np.float64)

    def __call__(self, q: np.ndarray) -> np.ndarray:
        pose = self.world_to_base @ self.kin.calc_fwd_kin(q)[self.link] @ self.tcp
        return self.weights * pose_error(pose, self.target)

    def linearize(self, x: np.ndarray) -> list[AffExpr]:
        """One affine expression per error component, central differences."""
        q0 = get_vec(x, self.vars)
        err0 = self(q0)
        jacobian = np.zeros((len(err0), len(q0)))
        for j in range(len(q0)):
            dq = np.zeros_like(q0)
            dq[j] = _POSE_JAC_EPS
            jacobian[:, j] = (self(q0 + dq) - self(q0 - dq)) / (2 * _POSE_JAC_EPS)
        return [
            AffExpr.linearization(err0[k], jacobian[k], self.vars, q0)
            for k in range(len(err0))
        ]


class StaticCartPoseCost(Cost):
    """Weighted L1 norm of a link's pose error at one timestep."""

    def __init__(self, error: CartPoseError, name: str = "static_cart_pose"):
        super().__init__(name)
        self._error = error

    def value(self, x: np.ndarray) -> float:
        return float(np.sum(np.abs(self._error(get_vec(x, self._error.vars)))))

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexObjective:
        objective = ConvexObjective(model)
        for aff in self._error.linearize(x):
            objective.add_abs(aff, 1.0)
        return objective

    def get_vars(self) -> list[Var]:
        return list(self._error.vars)


class StaticCartPoseConstraint(Constraint):
    """Weighted pose error of a link held at zero at one timestep."""

    constraint_type = ConstraintType.EQ

    def __init__(self, error: CartPoseError, name: str = "static_cart_pose"):
        super().__init__(name)
        self._error = error

    def value(self, x: np.ndarray) -> np.ndarray:
        return self._error(get_vec(x, self._error.vars))

    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        constraints = ConvexConstraints(model)
        for aff in self._error.linearize(x):
            constraints.add_eq(aff)
        return constraints

    def get_vars(self) -> list[Var]:
        return list(self._error.vars)
