"""Analytic contact managers for sphere and capsule geometry.

Every collision shape is a sphere swept along a segment (a sphere when the
segment is degenerate), so all pairwise distances reduce to a closest-point
query between two segments.

The discrete manager reports contacts at a single set of link poses. The
continuous manager reports the closest approach while every active link
moves linearly from its start pose to its end pose; it reports the
interpolation fraction at which that approach happens.

Conventions:
    distance > 0 means separated, < 0 means penetrating.
    normal points from link_names[0] to link_names[1].
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import numpy as np

from .errors import CollisionQueryError, CollisionTermError

logger = logging.getLogger(__name__)

EPS = 1e-12

# Used when two shape centers coincide and no separating direction exists.
_DEGENERATE_NORMAL = np.array([0.0, 0.0, 1.0])


class ContactTestType(enum.Enum):
    FIRST = "first"
    CLOSEST = "closest"
    ALL = "all"


class ContinuousCollisionType(enum.Enum):
    NONE = "none"
    TIME0 = "time0"
    TIME1 = "time1"
    BETWEEN = "between"


@dataclass(frozen=True, eq=False)
class ContactResult:
    """One pairwise contact between two collision objects.

    Attributes:
        distance: Signed distance [m], negative when penetrating.
        link_names: Names of the two objects (A, B).
        shape_ids: Index of the contacting shape within each object.
        nearest_points: Witness points on A and on B, world frame.
        normal: Unit vector from A to B, world frame.
        cc_type: Where along the sweep the closest approach occurs.
        cc_time: Interpolation fraction of the closest approach in [0, 1],
            -1 for discrete contacts.
        cc_nearest_points: Per object, the witness point at the start and
            at the end of the sweep. Empty for discrete contacts.
    """

    distance: float
    link_names: tuple[str, str]
    shape_ids: tuple[int, int]
    nearest_points: tuple[np.ndarray, np.ndarray]
    normal: np.ndarray
    cc_type: ContinuousCollisionType = ContinuousCollisionType.NONE
    cc_time: float = -1.0
    cc_nearest_points: tuple = ()


def closest_points_segments(
    p1: np.ndarray, p2: np.ndarray,
    p3: np.ndarray, p4: np.ndarray,
) -> tuple[float, float, np.ndarray, np.ndarray]:
    """Closest points between segment p1-p2 and segment p3-p4.

    Returns:
        Tuple of (s, t, c1, c2) where ``c1 = p1 + s * (p2 - p1)`` and
        ``c2 = p3 + t * (p4 - p3)``.
    """
    d1 = p2 - p1
    d2 = p4 - p3
    r = p1 - p3

    a = float(np.dot(d1, d1))
    e = float(np.dot(d2, d2))
    f = float(np.dot(d2, r))

    if a <= EPS and e <= EPS:
        return 0.0, 0.0, p1.copy(), p3.copy()

    if a <= EPS:
        t = float(np.clip(f / e, 0, 1))
        return 0.0, t, p1.copy(), p3 + t * d2

    c = float(np.dot(d1, r))

    if e <= EPS:
        s = float(np.clip(-c / a, 0, 1))
        return s, 0.0, p1 + s * d1, p3.copy()

    b = float(np.dot(d1, d2))
    denom = a * e - b * b

    s = float(np.clip((b * f - c * e) / denom, 0, 1)) if abs(denom) > EPS else 0.0
    t = (b * s + f) / e

    if t < 0:
        t = 0.0
        s = float(np.clip(-c / a, 0, 1))
    elif t > 1:
        t = 1.0
        s = float(np.clip((b - c) / a, 0, 1))

    return s, float(t), p1 + s * d1, p3 + t * d2


def _normal_between(center_a: np.ndarray, center_b: np.ndarray) -> tuple[np.ndarray, float]:
    delta = center_b - center_a
    length = float(np.linalg.norm(delta))
    if length <= EPS:
        logger.debug("Coincident shape centers, using default contact normal")
        return _DEGENERATE_NORMAL.copy(), 0.0
    return delta / length, length


class _ContactManager:
    """State shared by the discrete and continuous managers."""

    def __init__(
        self,
        geometry: Mapping[str, Sequence],
        transforms: Mapping[str, np.ndarray],
        allowed_pairs: set[frozenset] | None = None,
    ):
        self._geometry = {name: list(shapes) for name, shapes in geometry.items()}
        self._transforms = {
            name: np.array(pose) for name, pose in transforms.items()
            if name in self._geometry
        }
        self._allowed = set(allowed_pairs or ())
        self._active: list[str] = []
        self._threshold = 0.0
        self._is_contact_allowed_fn: Callable[[str, str], bool] | None = None
        self._rigid_groups: dict[str, str] = {}

    @property
    def collision_object_names(self) -> list[str]:
        return list(self._geometry)

    @property
    def active_collision_objects(self) -> list[str]:
        return list(self._active)

    @property
    def contact_distance_threshold(self) -> float:
        return self._threshold

    def set_active_collision_objects(self, names: Sequence[str]) -> None:
        """Restrict queries to pairs involving at least one of ``names``."""
        unknown = [name for name in names if name not in self._geometry]
        if unknown:
            raise CollisionTermError(f"Unknown collision objects: {unknown}")
        self._active = list(names)

    def set_contact_distance_threshold(self, distance: float) -> None:
        """Report only contacts closer than ``distance``."""
        self._threshold = float(distance)

    def set_is_contact_allowed_fn(self, fn: Callable[[str, str], bool] | None) -> None:
        """Callback returning True for pairs whose contacts are ignored."""
        self._is_contact_allowed_fn = fn

    def set_rigid_body_groups(self, groups: Mapping[str, str]) -> None:
        """Objects mapped to the same group move as one rigid body.

        Their relative distance is constant, so pairs within a group are
        never queried.
        """
        self._rigid_groups = dict(groups)

    def _same_rigid_body(self, link_a: str, link_b: str) -> bool:
        group_a = self._rigid_groups.get(link_a)
        return group_a is not None and group_a == self._rigid_groups.get(link_b)

    def _candidate_pairs(self) -> list[tuple[str, str]]:
        if not self._active:
            raise CollisionQueryError("No active collision objects are set")
        pairs = []
        for i, link_a in enumerate(self._active):
            for link_b in self._geometry:
                if link_b == link_a:
                    continue
                if link_b in self._active and self._active.index(link_b) < i:
                    continue
                if frozenset((link_a, link_b)) in self._allowed:
                    continue
                if self._same_rigid_body(link_a, link_b):
                    continue
                if self._is_contact_allowed_fn and self._is_contact_allowed_fn(link_a, link_b):
                    continue
                pairs.append((link_a, link_b))
        return pairs

    def _pose(self, name: str) -> np.ndarray:
        try:
            return self._transforms[name]
        except KeyError as e:
            raise CollisionQueryError(f"No transform set for '{name}'") from e

    @staticmethod
    def _select(
        contacts: list[ContactResult],
        test_type: ContactTestType,
    ) -> list[ContactResult]:
        if test_type is ContactTestType.CLOSEST and contacts:
            return [min(contacts, key=lambda c: c.distance)]
        return contacts


class DiscreteContactManager(_ContactManager):
    """Distance queries at a single set of object poses."""

    def set_collision_objects_transform(self, poses: Mapping[str, np.ndarray]) -> None:
        """Update world poses of collision objects."""
        for name, pose in poses.items():
            if name not in self._geometry:
                raise CollisionQueryError(f"Unknown collision object '{name}'")
            self._transforms[name] = np.asarray(pose, dtype=np.float64)

    def contact_test(
        self,
        test_type: ContactTestType = ContactTestType.ALL,
    ) -> list[ContactResult]:
        """Report all contacts at or below the distance threshold.

        Raises:
            CollisionQueryError: If no active objects are set or a pose is
                missing.
        """
        results = []
        for link_a, link_b in self._candidate_pairs():
            pose_a, pose_b = self._pose(link_a), self._pose(link_b)
            pair_results = []
            for ia, shape_a in enumerate(self._geometry[link_a]):
                a0, a1 = shape_a.transformed(pose_a)
                for ib, shape_b in enumerate(self._geometry[link_b]):
                    b0, b1 = shape_b.transformed(pose_b)
                    _, _, center_a, center_b = closest_points_segments(a0, a1, b0, b1)
                    normal, length = _normal_between(center_a, center_b)
                    distance = length - shape_a.radius - shape_b.radius
                    if distance > self._threshold:
                        continue
                    pair_results.append(ContactResult(
                        distance=distance,
                        link_names=(link_a, link_b),
                        shape_ids=(ia, ib),
                        nearest_points=(
                            center_a + shape_a.radius * normal,
                            center_b - shape_b.radius * normal,
                        ),
                        normal=normal,
                    ))
            if test_type is ContactTestType.FIRST and pair_results:
                return pair_results[:1]
            results.extend(self._select(pair_results, test_type))
        return results


class ContinuousContactManager(_ContactManager):
    """Swept-volume queries between a start and an end pose per active link.

    Active objects must be built from spheres: a sphere whose center moves
    linearly sweeps a capsule, which keeps the query exact. Static objects
    may use any shape.
    """

    def __init__(self, geometry, transforms, allowed_pairs=None):
        super().__init__(geometry, transforms, allowed_pairs)
        self._transforms_end = dict(self._transforms)

    def set_active_collision_objects(self, names: Sequence[str]) -> None:
        super().set_active_collision_objects(names)
        for name in names:
            if not all(shape.is_sphere for shape in self._geometry[name]):
                raise CollisionTermError(
                    f"Continuous collision checking requires sphere geometry "
                    f"on moving object '{name}'"
                )

    def set_collision_objects_transform(
        self,
        poses_start: Mapping[str, np.ndarray],
        poses_end: Mapping[str, np.ndarray] | None = None,
    ) -> None:
        """Update start and end world poses; static objects omit the end."""
        poses_end = poses_start if poses_end is None else poses_end
        for name in poses_start:
            if name not in self._geometry:
                raise CollisionQueryError(f"Unknown collision object '{name}'")
            if name not in poses_end:
                raise CollisionQueryError(f"No end pose given for '{name}'")
            self._transforms[name] = np.asarray(poses_start[name], dtype=np.float64)
            self._transforms_end[name] = np.asarray(poses_end[name], dtype=np.float64)

    def _pose_end(self, name: str) -> np.ndarray:
        try:
            return self._transforms_end[name]
        except KeyError as e:
            raise CollisionQueryError(f"No end transform set for '{name}'") from e

    def contact_test(
        self,
        test_type: ContactTestType = ContactTestType.ALL,
    ) -> list[ContactResult]:
        """Report swept contacts at or below the distance threshold."""
        results = []
        for link_a, link_b in self._candidate_pairs():
            pose_a0, pose_a1 = self._pose(link_a), self._pose_end(link_a)
            pose_b0, pose_b1 = self._pose(link_b), self._pose_end(link_b)
            pair_results = []
            for ia, shape_a in enumerate(self._geometry[link_a]):
                ca0, _ = shape_a.transformed(pose_a0)
                ca1, _ = shape_a.transformed(pose_a1)
                for ib, shape_b in enumerate(self._geometry[link_b]):
                    contact = self._sweep_pair(
                        link_a, link_b, ia, ib, shape_a, shape_b,
                        ca0, ca1, pose_b0, pose_b1,
                    )
                    if contact is not None:
                        pair_results.append(contact)
            if test_type is ContactTestType.FIRST and pair_results:
                return pair_results[:1]
            results.extend(self._select(pair_results, test_type))
        return results

    def _sweep_pair(
        self, link_a, link_b, ia, ib, shape_a, shape_b,
        ca0, ca1, pose_b0, pose_b1,
    ) -> ContactResult | None:
        if shape_b.is_sphere:
            cb0, _ = shape_b.transformed(pose_b0)
            cb1, _ = shape_b.transformed(pose_b1)
            # Both centers move with the same interpolation fraction.
            r0 = cb0 - ca0
            dr = (cb1 - cb0) - (ca1 - ca0)
            dd = float(np.dot(dr, dr))
            t = float(np.clip(-np.dot(r0, dr) / dd, 0, 1)) if dd > EPS else 0.0
        else:
            if link_b in self._active:
                raise CollisionQueryError(
                    f"Moving object '{link_b}' has non-sphere geometry"
                )
            b0, b1 = shape_b.transformed(pose_b0)
            t, _, _, center_b = closest_points_segments(ca0, ca1, b0, b1)
            cb0 = cb1 = None

        center_a = ca0 + t * (ca1 - ca0)
        if cb0 is not None:
            center_b = cb0 + t * (cb1 - cb0)
        normal, length = _normal_between(center_a, center_b)
        distance = length - shape_a.radius - shape_b.radius
        if distance > self._threshold:
            return None

        if t <= EPS:
            cc_type = ContinuousCollisionType.TIME0
        elif t >= 1.0 - EPS:
            cc_type = ContinuousCollisionType.TIME1
        else:
            cc_type = ContinuousCollisionType.BETWEEN

        offset_a = shape_a.radius * normal
        offset_b = shape_b.radius * normal
        if cb0 is None:
            witness_b = (center_b - offset_b, center_b - offset_b)
        else:
            witness_b = (cb0 - offset_b, cb1 - offset_b)
        return ContactResult(
            distance=distance,
            link_names=(link_a, link_b),
            shape_ids=(ia, ib),
            nearest_points=(center_a + offset_a, center_b - offset_b),
            normal=normal,
            cc_type=cc_type,
            cc_time=t,
            cc_nearest_points=((ca0 + offset_a, ca1 + offset_a), witness_b),
        )


def moving_collision_links(env) -> list[str]:
    """Enabled collision objects carried by the manipulator."""
    kinematics = env.kinematics
    return [
        name for name in env.get_enabled_geometry()
        if kinematics.has_link(name) and kinematics.parent_active_link(name) is not None
    ]


def check_trajectory(
    env,
    traj: np.ndarray,
    continuous: bool = False,
    threshold: float = 0.0,
) -> list[list[ContactResult]]:
    """Check a whole trajectory for contacts closer than ``threshold``.

    Args:
        env: Environment holding the scene.
        traj: Joint trajectory (n_steps, n_dof).
        continuous: Check the swept volume between consecutive steps.
        threshold: Report contacts with distance <= threshold [m].

    Returns:
        One list of contacts per step (discrete) or per segment
        (continuous).
    """
    traj = np.atleast_2d(np.asarray(traj, dtype=np.float64))
    active = moving_collision_links(env)
    if continuous:
        manager = env.get_continuous_contact_manager()
    else:
        manager = env.get_discrete_contact_manager()
    manager.set_active_collision_objects(active)
    manager.set_rigid_body_groups(
        {name: env.kinematics.parent_active_link(name) for name in active},
    )
    manager.set_contact_distance_threshold(threshold)

    found = []
    if continuous:
        for i in range(len(traj) - 1):
            poses0 = env.get_link_transforms(traj[i])
            poses1 = env.get_link_transforms(traj[i + 1])
            manager.set_collision_objects_transform(
                {name: poses0[name] for name in active},
                {name: poses1[name] for name in active},
            )
            found.append(manager.contact_test())
    else:
        for q in traj:
            poses = env.get_link_transforms(q)
            manager.set_collision_objects_transform(
                {name: poses[name] for name in active},
            )
            found.append(manager.contact_test())

    n_contacts = sum(len(contacts) for contacts in found)
    logger.debug("Trajectory check found %d contacts", n_contacts)
    return found
