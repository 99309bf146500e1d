"""Trust-region sequential convex optimization over a TrajOptProb.

Each iteration linearizes every cost and constraint at the current
trajectory, then solves the resulting linear program inside a box trust
region. Constraints enter the merit function as an l1 penalty::

    merit(x) = sum(costs) + merit_coeff * sum(constraint violations)

A step is accepted when the exact merit improvement is a large enough
fraction of the improvement the convex model predicted. When the inner
loop converges with constraints still violated, the penalty coefficient
is increased and the loop restarts.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from scipy import sparse
from scipy.optimize import linprog

from .contact_managers import check_trajectory
from .modeling import AffExpr, ConvexModel, get_traj, var_indices
from .problem import TrajOptProb

logger = logging.getLogger(__name__)


@dataclass
class OptimizerConfig:
    """Configuration for the trust-region SQP solver.

    Attributes:
        improve_ratio_threshold: Minimum exact/approximate merit improvement
            ratio for a step to be accepted.
        min_trust_box_size: Inner loop stops once the box is this small.
        min_approx_improve: Inner loop stops once the model predicts less
            improvement than this.
        min_approx_improve_frac: Same, relative to the current merit.
        max_iter: Maximum total number of convex subproblems.
        trust_shrink_ratio: Box scaling after a rejected step.
        trust_expand_ratio: Box scaling after an accepted step.
        cnt_tolerance: Constraint violation treated as satisfied.
        max_merit_coeff_increases: Penalty increases before giving up.
        merit_coeff_increase_ratio: Penalty scaling per increase.
        max_time: Wall-clock limit [s].
        initial_merit_error_coeff: Starting penalty coefficient.
        initial_trust_box_size: Starting half-width of the trust box.
    """

    improve_ratio_threshold: float = 0.25
    min_trust_box_size: float = 1e-4
    min_approx_improve: float = 1e-4
    min_approx_improve_frac: float = -np.inf
    max_iter: int = 50
    trust_shrink_ratio: float = 0.1
    trust_expand_ratio: float = 1.5
    cnt_tolerance: float = 1e-4
    max_merit_coeff_increases: int = 5
    merit_coeff_increase_ratio: float = 10.0
    max_time: float = np.inf
    initial_merit_error_coeff: float = 10.0
    initial_trust_box_size: float = 1e-1

    @classmethod
    def from_dict(cls, data: dict) -> "OptimizerConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown optimizer parameters: {unknown}")
        return cls(**data)


class OptStatus(enum.Enum):
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"
    PENALTY_ITERATION_LIMIT = "penalty_iteration_limit"
    TIME_LIMIT = "time_limit"
    FAILED = "failed"


@dataclass
class OptResults:
    """Final state of a solve.

    Attributes:
        x: Flat decision vector.
        status: Termination reason.
        cost_vals: Exact value of each cost at ``x``.
        cnt_viols: Summed violation of each constraint at ``x``.
        n_func_evals: Number of exact merit evaluations.
        n_qp_solves: Number of convex subproblems solved.
        wall_time: Solve wall time [s].
    """

    x: np.ndarray
    status: OptStatus
    cost_vals: np.ndarray = field(default_factory=lambda: np.zeros(0))
    cnt_viols: np.ndarray = field(default_factory=lambda: np.zeros(0))
    n_func_evals: int = 0
    n_qp_solves: int = 0
    wall_time: float = 0.0

    @property
    def total_cost(self) -> float:
        return float(np.sum(self.cost_vals))


Callback = Callable[[TrajOptProb, OptResults], None]


def _merit(cost_vals: np.ndarray, cnt_viols: np.ndarray, merit_coeff: float) -> float:
    return float(np.sum(cost_vals) + merit_coeff * np.sum(cnt_viols))


class _LinearProgram:
    """Epigraph form of one convex model.

    Every hinge ``c * max(0, a(x))`` becomes ``c * t`` with ``t >= 0`` and
    ``t >= a(x)``; every ``c * |a(x)|`` additionally gets ``t >= -a(x)``.
    """

    def __init__(self, n_vars: int):
        self.n_vars = n_vars
        self._rows: list[int] = []
        self._cols: list[int] = []
        self._data: list[float] = []
        self._rhs: list[float] = []
        self._slack_costs: list[float] = []

    def _new_slack(self, coeff: float) -> int:
        self._slack_costs.append(coeff)
        return self.n_vars + len(self._slack_costs) - 1

    def _add_row(self, aff: AffExpr, sign: float, slack: int) -> None:
        # sign * aff(x) - t <= 0
        row = len(self._rhs)
        cols = var_indices(aff.vars)
        self._rows.extend([row] * (len(cols) + 1))
        self._cols.extend(cols.tolist() + [slack])
        self._data.extend((sign * aff.coeffs).tolist() + [-1.0])
        self._rhs.append(-sign * aff.constant)

    def add_hinge(self, aff: AffExpr, coeff: float) -> None:
        self._add_row(aff, 1.0, self._new_slack(coeff))

    def add_abs(self, aff: AffExpr, coeff: float) -> None:
        slack = self._new_slack(coeff)
        self._add_row(aff, 1.0, slack)
        self._add_row(aff, -1.0, slack)

    def add_model(self, model: ConvexModel, merit_coeff: float) -> None:
        for objective in model.objectives:
            for coeff, aff in objective.hinges:
                self.add_hinge(aff, coeff)
            for coeff, aff in objective.abs_terms:
                self.add_abs(aff, coeff)
        for constraints in model.constraints:
            for aff in constraints.ineqs:
                self.add_hinge(aff, merit_coeff)
            for aff in constraints.eqs:
                self.add_abs(aff, merit_coeff)

    def solve(self, lower: np.ndarray, upper: np.ndarray) -> np.ndarray | None:
        """Minimize over the box ``[lower, upper]``; None if the LP fails."""
        n_slack = len(self._slack_costs)
        n_total = self.n_vars + n_slack
        c = np.concatenate([np.zeros(self.n_vars), self._slack_costs])
        bounds = list(zip(lower, upper)) + [(0.0, None)] * n_slack
        if self._rhs:
            A_ub = sparse.coo_matrix(
                (self._data, (self._rows, self._cols)),
                shape=(len(self._rhs), n_total),
            ).tocsr()
            b_ub = np.array(self._rhs)
        else:
            A_ub, b_ub = None, None
        result = linprog(c, A_ub=A_ub, b_ub=b_ub, bounds=bounds, method="highs")
        if result.status != 0:
            logger.warning("Linear subproblem failed: %s", result.message)
            return None
        return result.x[:self.n_vars]


class BasicTrustRegionSQP:
    """Sequential linear programming with a box trust region.

    Usage:
        prob = construct_problem(pci)
        solver = BasicTrustRegionSQP(prob, OptimizerConfig(max_iter=100))
        solver.initialize(prob.init_traj.ravel())
        results = solver.optimize()
    """

    def __init__(self, prob: TrajOptProb, config: OptimizerConfig | None = None):
        self.prob = prob
        self.config = config or OptimizerConfig()
        self.callbacks: list[Callback] = []
        self.results = OptResults(
            x=prob.init_traj.ravel().copy(), status=OptStatus.FAILED,
        )
        self.trust_box_size = self.config.initial_trust_box_size
        self.merit_error_coeff = self.config.initial_merit_error_coeff

    def initialize(self, x: np.ndarray) -> None:
        x = np.asarray(x, dtype=np.float64).ravel()
        if x.shape[0] != self.prob.num_vars:
            raise ValueError(
                f"Initial vector has {x.shape[0]} entries, expected {self.prob.num_vars}"
            )
        self.results.x = np.clip(x, self.prob.lower_bounds, self.prob.upper_bounds)

    def add_callback(self, callback: Callback) -> None:
        self.callbacks.append(callback)

    def _evaluate(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        self.results.n_func_evals += 1
        cost_vals = np.array([cost.value(x) for cost in self.prob.costs])
        cnt_viols = np.array([cnt.violation(x) for cnt in self.prob.constraints])
        return cost_vals, cnt_viols

    def _convexify(self, x: np.ndarray) -> ConvexModel:
        model = ConvexModel(self.prob.num_vars)
        for cost in self.prob.costs:
            cost.convex(x, model)
        for cnt in self.prob.constraints:
            cnt.convex(x, model)
        return model

    def _model_merit(self, model: ConvexModel, x: np.ndarray) -> float:
        value = sum(objective.value(x) for objective in model.objectives)
        viol = sum(float(np.sum(c.violations(x))) for c in model.constraints)
        return value + self.merit_error_coeff * viol

    def _trust_box(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        lower = np.maximum(self.prob.lower_bounds, x - self.trust_box_size)
        upper = np.minimum(self.prob.upper_bounds, x + self.trust_box_size)
        return lower, upper

    def _log_iteration(self, cost_vals, cnt_viols, approx_improve, exact_improve):
        names = [c.name for c in self.prob.costs] + [c.name for c in self.prob.constraints]
        values = list(cost_vals) + list(cnt_viols)
        for name, value in zip(names, values):
            logger.debug("  %-24s %10.4g", name, value)
        logger.info(
            "  merit improve: approx %.4g, exact %.4g, trust box %.3g, merit coeff %.3g",
            approx_improve, exact_improve, self.trust_box_size, self.merit_error_coeff,
        )

    def optimize(self) -> OptResults:
        """Run the solver from the current ``results.x``.

        Returns:
            OptResults at the last accepted iterate.
        """
        cfg = self.config
        t_start = time.time()
        x = self.results.x.copy()
        cost_vals, cnt_viols = self._evaluate(x)
        n_qp = 0
        status = OptStatus.FAILED

        for merit_increases in range(cfg.max_merit_coeff_increases + 1):
            inner_status = None
            while inner_status is None:
                if n_qp >= cfg.max_iter:
                    status = OptStatus.ITERATION_LIMIT
                    break
                if time.time() - t_start > cfg.max_time:
                    status = OptStatus.TIME_LIMIT
                    break

                self.results.x = x
                self.results.cost_vals = cost_vals
                self.results.cnt_viols = cnt_viols
                for callback in self.callbacks:
                    callback(self.prob, self.results)

                model = self._convexify(x)
                program = _LinearProgram(self.prob.num_vars)
                program.add_model(model, self.merit_error_coeff)

                while self.trust_box_size >= cfg.min_trust_box_size:
                    new_x = program.solve(*self._trust_box(x))
                    n_qp += 1
                    if new_x is None:
                        status = OptStatus.FAILED
                        inner_status = OptStatus.FAILED
                        break

                    old_merit = _merit(cost_vals, cnt_viols, self.merit_error_coeff)
                    approx_improve = old_merit - self._model_merit(model, new_x)
                    new_cost_vals, new_cnt_viols = self._evaluate(new_x)
                    new_merit = _merit(new_cost_vals, new_cnt_viols, self.merit_error_coeff)
                    exact_improve = old_merit - new_merit
                    self._log_iteration(new_cost_vals, new_cnt_viols, approx_improve, exact_improve)

                    if approx_improve < -1e-5:
                        logger.warning(
                            "Convex model predicts a merit increase of %.3g", -approx_improve,
                        )
                    if approx_improve < cfg.min_approx_improve:
                        logger.info("Converged: approximate improvement below threshold")
                        inner_status = OptStatus.CONVERGED
                        break
                    if old_merit > 0 and approx_improve / old_merit < cfg.min_approx_improve_frac:
                        logger.info("Converged: relative approximate improvement below threshold")
                        inner_status = OptStatus.CONVERGED
                        break
                    ratio = exact_improve / approx_improve
                    if exact_improve < 0 or ratio < cfg.improve_ratio_threshold:
                        self.trust_box_size *= cfg.trust_shrink_ratio
                        logger.debug("Step rejected, trust box %.3g", self.trust_box_size)
                    else:
                        x, cost_vals, cnt_viols = new_x, new_cost_vals, new_cnt_viols
                        self.trust_box_size *= cfg.trust_expand_ratio
                        logger.debug("Step accepted, trust box %.3g", self.trust_box_size)
                        break
                    if n_qp >= cfg.max_iter:
                        break

                if inner_status is None and self.trust_box_size < cfg.min_trust_box_size:
                    logger.info("Converged: trust region too small")
                    inner_status = OptStatus.CONVERGED

            if inner_status is not OptStatus.CONVERGED:
                break
            if cnt_viols.size == 0 or np.max(cnt_viols) < cfg.cnt_tolerance:
                status = OptStatus.CONVERGED
                break
            if merit_increases == cfg.max_merit_coeff_increases:
                status = OptStatus.PENALTY_ITERATION_LIMIT
                break
            self.merit_error_coeff *= cfg.merit_coeff_increase_ratio
            self.trust_box_size = max(
                self.trust_box_size,
                cfg.min_trust_box_size / cfg.trust_shrink_ratio * 1.5,
            )
            logger.info(
                "Constraints violated (max %.4g), merit coeff -> %.3g",
                np.max(cnt_viols), self.merit_error_coeff,
            )

        self.results.x = x
        self.results.cost_vals = cost_vals
        self.results.cnt_viols = cnt_viols
        self.results.status = status
        self.results.n_qp_solves = n_qp
        self.results.wall_time = time.time() - t_start
        logger.info("Optimization finished: %s", status.value)
        logger.info("  Total cost: %.4g", self.results.total_cost)
        logger.info("  Subproblems: %d", n_qp)
        logger.info("  Wall time: %.2fs", self.results.wall_time)
        return self.results


@dataclass
class TrajOptResult:
    """Named summary of a solved trajectory problem."""

    cost_names: list[str]
    cost_vals: np.ndarray
    cnt_names: list[str]
    cnt_viols: np.ndarray
    traj: np.ndarray
    status: OptStatus

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "costs": dict(zip(self.cost_names, map(float, self.cost_vals))),
            "constraint_violations": dict(zip(self.cnt_names, map(float, self.cnt_viols))),
            "trajectory": self.traj.tolist(),
        }


def optimize_problem(
    prob: TrajOptProb,
    config: OptimizerConfig | None = None,
    plotter=None,
) -> TrajOptResult:
    """Solve ``prob`` from its initial trajectory.

    Args:
        prob: Constructed problem.
        config: Solver parameters.
        plotter: Optional :class:`~trajopt_collision.plotting.Visualization`
            redrawn at every iteration.
    """
    solver = BasicTrustRegionSQP(prob, config)
    solver.initialize(prob.init_traj.ravel())
    if plotter is not None:
        solver.add_callback(plot_callback(plotter))
    results = solver.optimize()
    return TrajOptResult(
        cost_names=[cost.name for cost in prob.costs],
        cost_vals=results.cost_vals,
        cnt_names=[cnt.name for cnt in prob.constraints],
        cnt_viols=results.cnt_viols,
        traj=get_traj(results.x, prob.vars),
        status=results.status,
    )


def plot_callback(plotter) -> Callback:
    """Callback drawing the trajectory and every plottable term's contacts."""

    def callback(prob: TrajOptProb, results: OptResults) -> None:
        plotter.clear()
        plotter.plot_trajectory(prob.env, get_traj(results.x, prob.vars))
        for term in list(prob.costs) + list(prob.constraints):
            plot = getattr(term, "plot", None)
            if plot is not None:
                plot(plotter, results.x)
        plotter.show()

    return callback


def trajectory_is_collision_free(prob: TrajOptProb, x: np.ndarray, continuous: bool = True) -> bool:
    """True if no swept (or per-step) contact is at or below zero distance."""
    contacts = check_trajectory(prob.env, get_traj(x, prob.vars), continuous=continuous)
    return not any(step for step in contacts)
