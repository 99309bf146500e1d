"""Collision scene: link geometry, static obstacles and the adjacency map."""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np

from .contact_managers import ContinuousContactManager, DiscreteContactManager
from .errors import CollisionTermError
from .kinematics import PinocchioKinematics

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CollisionShape:
    """Sphere swept along a segment, expressed in its link frame.

    A sphere is the degenerate case ``p0 == p1``; otherwise the shape is a
    capsule.

    Attributes:
        radius: Radius [m].
        p0: First segment end point (3,) [m].
        p1: Second segment end point (3,) [m].
    """

    radius: float
    p0: np.ndarray = field(default_factory=lambda: np.zeros(3))
    p1: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        if self.radius < 0.0:
            raise ValueError(f"Negative shape radius {self.radius}")
        object.__setattr__(self, "p0", np.asarray(self.p0, dtype=np.float64))
        object.__setattr__(self, "p1", np.asarray(self.p1, dtype=np.float64))

    @classmethod
    def sphere(cls, radius: float, center=(0.0, 0.0, 0.0)) -> "CollisionShape":
        return cls(float(radius), np.array(center), np.array(center))

    @classmethod
    def capsule(cls, radius: float, p0, p1) -> "CollisionShape":
        return cls(float(radius), np.array(p0), np.array(p1))

    @property
    def is_sphere(self) -> bool:
        return bool(np.array_equal(self.p0, self.p1))

    def transformed(self, pose: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Segment end points in the frame ``pose`` maps into."""
        rotation, translation = pose[:3, :3], pose[:3, 3]
        return rotation @ self.p0 + translation, rotation @ self.p1 + translation

    @classmethod
    def from_dict(cls, data: Mapping) -> "CollisionShape":
        kind = data.get("type", "sphere")
        if kind == "sphere":
            return cls.sphere(data["radius"], data.get("center", (0.0, 0.0, 0.0)))
        if kind == "capsule":
            return cls.capsule(data["radius"], data["p0"], data["p1"])
        raise ValueError(f"Unknown collision shape type '{kind}'")


def translation_pose(xyz) -> np.ndarray:
    pose = np.eye(4)
    pose[:3, 3] = xyz
    return pose


class Environment:
    """Robot and static world geometry used by the contact managers.

    The environment is mutable while a scene is set up. Evaluators take a
    snapshot (fresh contact managers and link transforms) when they are
    constructed.
    """

    def __init__(
        self,
        kinematics: PinocchioKinematics,
        base_pose: np.ndarray | None = None,
    ):
        """Initialize an empty scene.

        Args:
            kinematics: Manipulator kinematics.
            base_pose: World -> manipulator base transform (4, 4).
        """
        self.kinematics = kinematics
        self.base_pose = np.eye(4) if base_pose is None else np.array(base_pose)
        self._geometry: dict[str, list[CollisionShape]] = {}
        self._obstacle_poses: dict[str, np.ndarray] = {}
        self._allowed: dict[frozenset, str] = {}
        self._disabled: set[str] = set()
        self._joint_values = np.zeros(kinematics.n_dof)

    @classmethod
    def from_dict(
        cls,
        kinematics: PinocchioKinematics,
        data: Mapping,
    ) -> "Environment":
        """Build a scene from its JSON description.

        Example::

            {"base_xyz": [0, 0, 0],
             "links": {"boxbot_link": [{"type": "sphere", "radius": 0.1}]},
             "obstacles": {"post": {"xyz": [0, 0, 0],
                                    "shapes": [{"type": "sphere",
                                                "radius": 0.2}]}},
             "allowed_collisions": [["a", "b"]],
             "disabled_links": ["box_attached"],
             "state": {"boxbot_x_joint": -1.9}}
        """
        env = cls(kinematics, translation_pose(data.get("base_xyz", (0, 0, 0))))
        for link_name, shapes in data.get("links", {}).items():
            env.add_link_geometry(
                link_name, [CollisionShape.from_dict(s) for s in shapes],
            )
        for name, obstacle in data.get("obstacles", {}).items():
            env.add_obstacle(
                name,
                [CollisionShape.from_dict(s) for s in obstacle["shapes"]],
                translation_pose(obstacle.get("xyz", (0, 0, 0))),
            )
        for link_a, link_b in data.get("allowed_collisions", []):
            env.add_allowed_collision(link_a, link_b)
        for link_name in data.get("disabled_links", []):
            env.set_link_collision_enabled(link_name, False)
        if "state" in data:
            env.set_state(data["state"])
        return env

    @property
    def joint_values(self) -> np.ndarray:
        return self._joint_values.copy()

    @property
    def collision_object_names(self) -> list[str]:
        return list(self._geometry)

    def has_collision_object(self, name: str) -> bool:
        return name in self._geometry

    def add_link_geometry(self, link_name: str, shapes: Sequence[CollisionShape]) -> None:
        """Attach collision shapes to a robot link."""
        if not self.kinematics.has_link(link_name):
            raise CollisionTermError(f"Link '{link_name}' is not in the robot model")
        if link_name in self._obstacle_poses:
            raise CollisionTermError(f"'{link_name}' is already a static obstacle")
        self._geometry.setdefault(link_name, []).extend(shapes)

    def add_obstacle(
        self,
        name: str,
        shapes: Sequence[CollisionShape],
        pose: np.ndarray | None = None,
    ) -> None:
        """Add a static object with a fixed world pose."""
        if self.kinematics.has_link(name):
            raise CollisionTermError(
                f"Obstacle name '{name}' collides with a robot link name"
            )
        self._geometry.setdefault(name, []).extend(shapes)
        self._obstacle_poses[name] = np.eye(4) if pose is None else np.array(pose)

    def add_allowed_collision(self, link_a: str, link_b: str, reason: str = "") -> None:
        """Never report contacts between the two objects."""
        self._allowed[frozenset((link_a, link_b))] = reason

    def is_collision_allowed(self, link_a: str, link_b: str) -> bool:
        return frozenset((link_a, link_b)) in self._allowed

    def set_link_collision_enabled(self, name: str, enabled: bool) -> None:
        if enabled:
            self._disabled.discard(name)
        else:
            self._disabled.add(name)

    def set_state(self, joint_values: Mapping[str, float] | np.ndarray) -> None:
        """Set the current joint state, by name or as a full vector."""
        if isinstance(joint_values, Mapping):
            names = self.kinematics.joint_names
            for joint_name, value in joint_values.items():
                if joint_name not in names:
                    raise KeyError(f"Unknown joint '{joint_name}'")
                self._joint_values[names.index(joint_name)] = float(value)
        else:
            values = np.asarray(joint_values, dtype=np.float64).ravel()
            if values.shape != self._joint_values.shape:
                raise ValueError(
                    f"Expected {self._joint_values.shape[0]} joint values"
                )
            self._joint_values = values.copy()

    def get_link_transforms(self, q: np.ndarray | None = None) -> dict[str, np.ndarray]:
        """World poses of every robot link and obstacle."""
        q = self._joint_values if q is None else q
        transforms = {
            name: self.base_pose @ pose
            for name, pose in self.kinematics.calc_fwd_kin(q).items()
        }
        transforms.update(
            {name: pose.copy() for name, pose in self._obstacle_poses.items()}
        )
        return transforms

    def get_enabled_geometry(self) -> dict[str, list[CollisionShape]]:
        return {
            name: list(shapes)
            for name, shapes in self._geometry.items()
            if name not in self._disabled and shapes
        }

    def get_discrete_contact_manager(self) -> DiscreteContactManager:
        """New discrete manager holding the current scene."""
        return DiscreteContactManager(
            self.get_enabled_geometry(),
            self.get_link_transforms(),
            set(self._allowed),
        )

    def get_continuous_contact_manager(self) -> ContinuousContactManager:
        """New continuous manager holding the current scene."""
        return ContinuousContactManager(
            self.get_enabled_geometry(),
            self.get_link_transforms(),
            set(self._allowed),
        )


@dataclass(frozen=True, eq=False)
class AdjacencyMapPair:
    """Driven link carrying a collision link, and the attachment transform.

    ``transform`` maps the collision link frame into ``link_name``'s frame.
    """

    link_name: str
    transform: np.ndarray


class AdjacencyMap:
    """Collision links that move with the manipulator.

    Every enabled collision object rigidly attached to one of the active
    links is mapped to that active link. Static objects are absent and so
    never contribute a gradient.
    """

    def __init__(
        self,
        env: Environment,
        active_link_names: Sequence[str],
        link_transforms: Mapping[str, np.ndarray],
    ):
        active = set(active_link_names)
        kinematics = env.kinematics
        self._pairs: dict[str, AdjacencyMapPair] = {}
        for name in env.get_enabled_geometry():
            parent = kinematics.parent_active_link(name) if kinematics.has_link(name) else None
            if parent is None or parent not in active:
                continue
            transform = np.linalg.inv(link_transforms[parent]) @ link_transforms[name]
            self._pairs[name] = AdjacencyMapPair(parent, transform)
        logger.debug("Adjacency map active links: %s", list(self._pairs))

    @property
    def active_link_names(self) -> list[str]:
        return list(self._pairs)

    def get(self, link_name: str) -> AdjacencyMapPair | None:
        return self._pairs.get(link_name)

    def rigid_body_groups(self) -> dict[str, str]:
        """Collision link -> driven link carrying it."""
        return {name: pair.link_name for name, pair in self._pairs.items()}

    def __contains__(self, link_name: object) -> bool:
        return link_name in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)
