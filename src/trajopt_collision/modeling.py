"""Decision variables, affine expressions and convex subproblem terms.

This is the surface the trust-region solver consumes: costs produce a
:class:`ConvexObjective` and constraints produce :class:`ConvexConstraints`,
both built from :class:`AffExpr` objects linearized at the current iterate.
Only piecewise-linear terms are supported so every subproblem is a linear
program.
"""

import abc
import enum
from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class Var:
    """Handle to one entry of the flat decision vector."""

    index: int
    name: str = ""


class VarArray:
    """Grid of decision variables, one row per timestep.

    The flat decision vector is the row-major flattening of the grid.
    """

    def __init__(self, n_steps: int, n_dof: int, joint_names=None) -> None:
        joint_names = joint_names or [f"j{j}" for j in range(n_dof)]
        self._vars = [
            [Var(i * n_dof + j, f"{joint_names[j]}_{i}") for j in range(n_dof)]
            for i in range(n_steps)
        ]
        self.n_steps = n_steps
        self.n_dof = n_dof

    @property
    def shape(self) -> tuple[int, int]:
        return self.n_steps, self.n_dof

    @property
    def size(self) -> int:
        return self.n_steps * self.n_dof

    def row(self, i: int) -> list[Var]:
        return list(self._vars[i])

    def at(self, i: int, j: int) -> Var:
        return self._vars[i][j]

    def flat(self) -> list[Var]:
        return [v for row in self._vars for v in row]


def var_indices(variables: Sequence[Var]) -> np.ndarray:
    return np.array([v.index for v in variables], dtype=np.intp)


def get_vec(x: np.ndarray, variables: Sequence[Var]) -> np.ndarray:
    """Extract the values of ``variables`` from the flat vector ``x``."""
    return np.asarray(x, dtype=np.float64)[var_indices(variables)]


def get_traj(x: np.ndarray, variables: VarArray) -> np.ndarray:
    """Reshape the flat vector into an ``(n_steps, n_dof)`` trajectory."""
    return np.asarray(x, dtype=np.float64).reshape(variables.shape)


class AffExpr:
    """Affine expression ``constant + coeffs . x[vars]``."""

    def __init__(
        self,
        constant: float = 0.0,
        coeffs: Sequence[float] | np.ndarray = (),
        variables: Sequence[Var] = (),
    ) -> None:
        self.constant = float(constant)
        self.coeffs = np.asarray(coeffs, dtype=np.float64).ravel()
        self.vars = tuple(variables)
        if len(self.coeffs) != len(self.vars):
            raise ValueError(
                f"{len(self.coeffs)} coefficients for {len(self.vars)} variables"
            )

    @classmethod
    def linearization(
        cls,
        d0: float,
        gradient: np.ndarray,
        variables: Sequence[Var],
        x0: np.ndarray,
    ) -> "AffExpr":
        """First-order model ``d0 + gradient . (x - x0)`` over ``variables``."""
        gradient = np.asarray(gradient, dtype=np.float64)
        return cls(d0 - float(gradient @ x0), gradient, variables)

    def value(self, x: np.ndarray) -> float:
        if not self.vars:
            return self.constant
        return self.constant + float(self.coeffs @ get_vec(x, self.vars))

    def __neg__(self) -> "AffExpr":
        return AffExpr(-self.constant, -self.coeffs, self.vars)

    def __add__(self, other: float) -> "AffExpr":
        if isinstance(other, AffExpr):
            return AffExpr(
                self.constant + other.constant,
                np.concatenate([self.coeffs, other.coeffs]),
                self.vars + other.vars,
            )
        return AffExpr(self.constant + float(other), self.coeffs, self.vars)

    __radd__ = __add__

    def __sub__(self, other: float) -> "AffExpr":
        return self + (-other)

    def __rsub__(self, other: float) -> "AffExpr":
        return (-self) + other

    def __mul__(self, scale: float) -> "AffExpr":
        scale = float(scale)
        return AffExpr(self.constant * scale, self.coeffs * scale, self.vars)

    __rmul__ = __mul__

    def __repr__(self) -> str:
        terms = " + ".join(
            f"{c:.4g}*{v.name or v.index}" for c, v in zip(self.coeffs, self.vars)
        )
        return f"AffExpr({self.constant:.4g}{' + ' + terms if terms else ''})"


class ConvexModel:
    """Container the convex terms of one subproblem register against."""

    def __init__(self, n_vars: int) -> None:
        self.n_vars = n_vars
        self.objectives: list["ConvexObjective"] = []
        self.constraints: list["ConvexConstraints"] = []


class ConvexObjective:
    """Sum of piecewise-linear terms ``coeff * pos(aff)`` and ``coeff * |aff|``."""

    def __init__(self, model: ConvexModel) -> None:
        self.model = model
        self.hinges: list[tuple[float, AffExpr]] = []
        self.abs_terms: list[tuple[float, AffExpr]] = []
        model.objectives.append(self)

    def add_hinge(self, aff: AffExpr, coeff: float) -> None:
        self.hinges.append((float(coeff), aff))

    def add_abs(self, aff: AffExpr, coeff: float) -> None:
        self.abs_terms.append((float(coeff), aff))

    def value(self, x: np.ndarray) -> float:
        out = 0.0
        for coeff, aff in self.hinges:
            out += coeff * max(0.0, aff.value(x))
        for coeff, aff in self.abs_terms:
            out += coeff * abs(aff.value(x))
        return out


class ConvexConstraints:
    """Affine constraints ``ineq <= 0`` and ``eq == 0``."""

    def __init__(self, model: ConvexModel) -> None:
        self.model = model
        self.ineqs: list[AffExpr] = []
        self.eqs: list[AffExpr] = []
        model.constraints.append(self)

    def add_ineq(self, aff: AffExpr) -> None:
        self.ineqs.append(aff)

    def add_eq(self, aff: AffExpr) -> None:
        self.eqs.append(aff)

    def violations(self, x: np.ndarray) -> np.ndarray:
        ineq = [max(0.0, aff.value(x)) for aff in self.ineqs]
        eq = [abs(aff.value(x)) for aff in self.eqs]
        return np.array(ineq + eq, dtype=np.float64)


class ConstraintType(enum.Enum):
    EQ = "eq"
    INEQ = "ineq"


class Cost(abc.ABC):
    """Differentiable cost term consumed by the SQP solver."""

    def __init__(self, name: str = "unnamed") -> None:
        self.name = name

    @abc.abstractmethod
    def value(self, x: np.ndarray) -> float:
        """Exact cost at ``x``."""

    @abc.abstractmethod
    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexObjective:
        """Convex approximation around ``x``."""

    @abc.abstractmethod
    def get_vars(self) -> list[Var]:
        """Variables the cost depends on."""


class Constraint(abc.ABC):
    """Constraint term; the sign convention is ``value(x) <= 0`` for
    inequality constraints and ``value(x) == 0`` for equality constraints.
    """

    constraint_type = ConstraintType.INEQ

    def __init__(self, name: str = "unnamed") -> None:
        self.name = name

    @abc.abstractmethod
    def value(self, x: np.ndarray) -> np.ndarray:
        """Exact constraint values at ``x``."""

    @abc.abstractmethod
    def convex(self, x: np.ndarray, model: ConvexModel) -> ConvexConstraints:
        """Affine approximation around ``x``."""

    @abc.abstractmethod
    def get_vars(self) -> list[Var]:
        """Variables the constraint depends on."""

    def violations(self, x: np.ndarray) -> np.ndarray:
        values = np.asarray(self.value(x), dtype=np.float64)
        if self.constraint_type is ConstraintType.EQ:
            return np.abs(values)
        return np.maximum(values, 0.0)

    def violation(self, x: np.ndarray) -> float:
        """Sum of the violations at ``x``."""
        return float(np.sum(self.violations(x)))
