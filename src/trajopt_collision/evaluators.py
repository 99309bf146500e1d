"""Collision evaluators: geometry queries linearized in the joint variables.

An evaluator is bound to the decision variables of one configuration
(discrete check) or of two configurations (swept check). It memoizes the
contacts of recent configurations so the cost and the constraint built on
the same evaluator see one geometry query per configuration.
"""

import abc
import logging
from typing import Sequence

import numpy as np

from .cache import Cache
from .contact_managers import ContactResult, ContactTestType
from .environment import AdjacencyMap, AdjacencyMapPair, Environment
from .errors import CollisionTermError
from .kinematics import (
    PinocchioKinematics,
    jacobian_change_base,
    jacobian_change_ref_point,
)
from .modeling import AffExpr, Var, get_vec
from .safety_margin import SafetyMarginData

logger = logging.getLogger(__name__)

CACHE_CAPACITY = 10

# Added to the largest safety margin so contacts just outside every margin
# still enter the convex model before the step that would reach them.
DEFAULT_SAFETY_MARGIN_BUFFER = 0.05


class CollisionEvaluator(abc.ABC):
    """Base class for discrete and continuous collision evaluators."""

    def __init__(
        self,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        safety_margin_buffer: float = DEFAULT_SAFETY_MARGIN_BUFFER,
    ):
        """Bind the evaluator to a scene snapshot.

        Args:
            manip: Manipulator kinematics.
            env: Collision scene.
            adjacency_map: Collision links that move with the manipulator.
            world_to_base: World -> manipulator base transform (4, 4).
            safety_margin_data: Margins and coefficients for this term.
            safety_margin_buffer: Extra query distance beyond the largest
                margin [m].

        Raises:
            CollisionTermError: If the manipulator carries no collision
                geometry or a safety margin pair names an unknown object.
        """
        if len(adjacency_map) == 0:
            raise CollisionTermError(
                "Manipulator has no enabled collision geometry"
            )
        unknown = sorted(
            name for name in safety_margin_data.link_names()
            if not env.has_collision_object(name)
        )
        if unknown:
            raise CollisionTermError(
                f"Safety margin pairs reference unknown collision objects: {unknown}"
            )

        self._manip = manip
        self._env = env
        self._adjacency_map = adjacency_map
        self._world_to_base = np.array(world_to_base, dtype=np.float64)
        self._safety_margin_data = safety_margin_data
        self._contact_distance = safety_margin_data.max_margin + safety_margin_buffer
        self.cache: Cache[int, tuple[bytes, tuple[ContactResult, ...]]] = Cache(
            CACHE_CAPACITY,
        )
        self.query_count = 0

    @property
    def safety_margin_data(self) -> SafetyMarginData:
        return self._safety_margin_data

    @property
    def contact_distance(self) -> float:
        """Contact-distance threshold handed to the contact manager."""
        return self._contact_distance

    @abc.abstractmethod
    def calc_collisions(self, x: np.ndarray) -> tuple[ContactResult, ...]:
        """Run the geometry query for the configuration(s) bound in ``x``.

        Does not consult the cache.
        """

    @abc.abstractmethod
    def calc_dist_expressions(self, x: np.ndarray) -> list[AffExpr]:
        """Linearize every contact distance around ``x``."""

    @abc.abstractmethod
    def plot(self, plotter, x: np.ndarray) -> None:
        """Render the contacts at ``x``."""

    @abc.abstractmethod
    def get_vars(self) -> list[Var]:
        """Decision variables this evaluator depends on."""

    def get_collisions_cached(self, x: np.ndarray) -> tuple[ContactResult, ...]:
        """Contacts at ``x``, reusing a previous query of the same values.

        The key is a hash of the evaluator's own variables, not the full
        trajectory. A hash match is accepted only when the stored values
        are bit-identical.
        """
        key_bytes = get_vec(x, self.get_vars()).tobytes()
        fingerprint = hash(key_bytes)
        entry = self.cache.get(fingerprint)
        if entry is not None:
            stored_bytes, contacts = entry
            if stored_bytes == key_bytes:
                return contacts
            logger.debug("Fingerprint collision, recomputing contacts")

        contacts = self.calc_collisions(x)
        self.cache.put(fingerprint, (key_bytes, contacts))
        return contacts

    def calc_dists(self, x: np.ndarray) -> np.ndarray:
        """Contact distances at ``x`` without linearization."""
        return np.array(
            [contact.distance for contact in self.get_collisions_cached(x)],
            dtype=np.float64,
        )

    def _count_query(self, contacts: Sequence[ContactResult]) -> tuple[ContactResult, ...]:
        self.query_count += 1
        logger.debug(
            "%s query %d: %d contacts",
            type(self).__name__, self.query_count, len(contacts),
        )
        return tuple(contacts)

    def _link_poses(self, dofvals: np.ndarray) -> dict[str, np.ndarray]:
        """World poses of every active collision link at ``dofvals``."""
        fwd_kin = self._manip.calc_fwd_kin(dofvals)
        return {
            name: self._world_to_base @ fwd_kin[pair.link_name] @ pair.transform
            for name, pair in self._link_pairs()
        }

    def _link_pairs(self) -> list[tuple[str, AdjacencyMapPair]]:
        return [
            (name, self._adjacency_map.get(name))
            for name in self._adjacency_map.active_link_names
        ]

    def _point_jacobian(
        self,
        dofvals: np.ndarray,
        fwd_kin: dict[str, np.ndarray],
        pair: AdjacencyMapPair,
        point: np.ndarray,
    ) -> np.ndarray:
        """Linear Jacobian (3, n_dof) of a world point rigidly fixed to a link.

        ``fwd_kin`` holds the link poses at ``dofvals``.
        """
        jacobian = jacobian_change_base(
            self._manip.calc_jacobian(dofvals, pair.link_name),
            self._world_to_base,
        )
        link_pose = self._world_to_base @ fwd_kin[pair.link_name]
        jacobian = jacobian_change_ref_point(jacobian, point - link_pose[:3, 3])
        return jacobian[:3]

    def _contact_gradient(
        self,
        contact: ContactResult,
        dofvals: np.ndarray,
        fwd_kin: dict[str, np.ndarray],
        points: Sequence[np.ndarray],
    ) -> np.ndarray:
        """Distance gradient w.r.t. ``dofvals``; points are on A and on B.

        Moving A along the normal (toward B) closes the gap, moving B along
        it opens the gap.
        """
        gradient = np.zeros(len(dofvals))
        for side, sign in ((0, -1.0), (1, 1.0)):
            pair = self._adjacency_map.get(contact.link_names[side])
            if pair is None:
                continue
            jacobian = self._point_jacobian(dofvals, fwd_kin, pair, points[side])
            gradient += sign * (contact.normal @ jacobian)
        if not np.any(gradient):
            logger.debug(
                "Zero distance gradient for contact %s", contact.link_names,
            )
        return gradient


class SingleTimestepCollisionEvaluator(CollisionEvaluator):
    """Discrete collision checks at one configuration."""

    def __init__(
        self,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        variables: Sequence[Var],
        safety_margin_buffer: float = DEFAULT_SAFETY_MARGIN_BUFFER,
    ):
        super().__init__(
            manip, env, adjacency_map, world_to_base, safety_margin_data,
            safety_margin_buffer,
        )
        if len(variables) != manip.n_dof:
            raise CollisionTermError(
                f"Expected {manip.n_dof} variables, got {len(variables)}"
            )
        self._vars = list(variables)
        self._contact_manager = env.get_discrete_contact_manager()
        self._contact_manager.set_active_collision_objects(
            adjacency_map.active_link_names,
        )
        self._contact_manager.set_contact_distance_threshold(self._contact_distance)
        self._contact_manager.set_is_contact_allowed_fn(
            safety_margin_data.is_contact_allowed,
        )
        self._contact_manager.set_rigid_body_groups(adjacency_map.rigid_body_groups())

    def get_vars(self) -> list[Var]:
        return list(self._vars)

    def calc_collisions(self, x: np.ndarray) -> tuple[ContactResult, ...]:
        dofvals = get_vec(x, self._vars)
        self._contact_manager.set_collision_objects_transform(self._link_poses(dofvals))
        return self._count_query(self._contact_manager.contact_test(ContactTestType.ALL))

    def calc_dist_expressions(self, x: np.ndarray) -> list[AffExpr]:
        contacts = self.get_collisions_cached(x)
        dofvals = get_vec(x, self._vars)
        fwd_kin = self._manip.calc_fwd_kin(dofvals)
        exprs = []
        for contact in contacts:
            gradient = self._contact_gradient(
                contact, dofvals, fwd_kin, contact.nearest_points,
            )
            exprs.append(
                AffExpr.linearization(contact.distance, gradient, self._vars, dofvals)
            )
        return exprs

    def plot(self, plotter, x: np.ndarray) -> None:
        contacts = self.get_collisions_cached(x)
        plotter.plot_contact_results(contacts, self._safety_margin_data)


class CastCollisionEvaluator(CollisionEvaluator):
    """Swept-volume collision checks between two configurations.

    The two configurations need not be consecutive timesteps.
    """

    def __init__(
        self,
        manip: PinocchioKinematics,
        env: Environment,
        adjacency_map: AdjacencyMap,
        world_to_base: np.ndarray,
        safety_margin_data: SafetyMarginData,
        vars0: Sequence[Var],
        vars1: Sequence[Var],
        safety_margin_buffer: float = DEFAULT_SAFETY_MARGIN_BUFFER,
    ):
        super().__init__(
            manip, env, adjacency_map, world_to_base, safety_margin_data,
            safety_margin_buffer,
        )
        if len(vars0) != manip.n_dof or len(vars1) != manip.n_dof:
            raise CollisionTermError(
                f"Expected {manip.n_dof} variables per configuration, got "
                f"{len(vars0)} and {len(vars1)}"
            )
        self._vars0 = list(vars0)
        self._vars1 = list(vars1)
        self._contact_manager = env.get_continuous_contact_manager()
        self._contact_manager.set_active_collision_objects(
            adjacency_map.active_link_names,
        )
        self._contact_manager.set_contact_distance_threshold(self._contact_distance)
        self._contact_manager.set_is_contact_allowed_fn(
            safety_margin_data.is_contact_allowed,
        )
        self._contact_manager.set_rigid_body_groups(adjacency_map.rigid_body_groups())

    def get_vars(self) -> list[Var]:
        return self._vars0 + self._vars1

    def calc_collisions(self, x: np.ndarray) -> tuple[ContactResult, ...]:
        dofvals0 = get_vec(x, self._vars0)
        dofvals1 = get_vec(x, self._vars1)
        self._contact_manager.set_collision_objects_transform(
            self._link_poses(dofvals0), self._link_poses(dofvals1),
        )
        return self._count_query(self._contact_manager.contact_test(ContactTestType.ALL))

    def calc_dist_expressions(self, x: np.ndarray) -> list[AffExpr]:
        contacts = self.get_collisions_cached(x)
        dofvals0 = get_vec(x, self._vars0)
        dofvals1 = get_vec(x, self._vars1)
        dofvals = np.concatenate([dofvals0, dofvals1])
        fwd_kin0 = self._manip.calc_fwd_kin(dofvals0)
        fwd_kin1 = self._manip.calc_fwd_kin(dofvals1)
        exprs = []
        for contact in contacts:
            t = float(np.clip(contact.cc_time, 0.0, 1.0))
            points0 = [points[0] for points in contact.cc_nearest_points]
            points1 = [points[1] for points in contact.cc_nearest_points]
            gradient0 = self._contact_gradient(contact, dofvals0, fwd_kin0, points0)
            gradient1 = self._contact_gradient(contact, dofvals1, fwd_kin1, points1)
            gradient = np.concatenate([(1.0 - t) * gradient0, t * gradient1])
            exprs.append(
                AffExpr.linearization(contact.distance, gradient, self.get_vars(), dofvals)
            )
        return exprs

    def plot(self, plotter, x: np.ndarray) -> None:
        contacts = self.get_collisions_cached(x)
        plotter.plot_contact_results(contacts, self._safety_margin_data)


def make_adjacency_map(env: Environment) -> AdjacencyMap:
    """Adjacency map of the manipulator at the environment's current state."""
    return AdjacencyMap(
        env,
        env.kinematics.active_link_names,
        env.get_link_transforms(),
    )
