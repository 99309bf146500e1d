"""Pinocchio-based forward kinematics and Jacobians for a manipulator.

All poses and Jacobians are expressed in the manipulator base frame.
Jacobian convention: rows are [linear; angular] and the linear part is
the velocity of the link origin, matching Pinocchio's LOCAL_WORLD_ALIGNED
frame.
"""

from pathlib import Path

import numpy as np
import pinocchio as pin


class PinocchioKinematics:
    """Forward kinematics and Jacobians of a serial manipulator.

    Links are the BODY frames of the Pinocchio model. A link is *active*
    when it is the first body carried by one of the manipulator joints;
    bodies attached through fixed joints are mapped back to their nearest
    active ancestor via :meth:`parent_active_link`.
    """

    def __init__(self, model: pin.Model):
        """Initialize kinematics with a Pinocchio model.

        Args:
            model: Pinocchio model. ``nq`` must equal ``nv``.

        Raises:
            ValueError: If the model has joints with ``nq != nv``.
        """
        if model.nq != model.nv:
            raise ValueError(
                f"Only joints with nq == nv are supported (nq={model.nq}, "
                f"nv={model.nv})"
            )
        self.model = model
        self.data = model.createData()

        self._link_frame_ids: dict[str, int] = {}
        self._link_joint: dict[str, int] = {}
        self._active_link_of_joint: dict[int, str] = {}
        for frame_id, frame in enumerate(model.frames):
            if frame.type != pin.FrameType.BODY:
                continue
            self._link_frame_ids[frame.name] = frame_id
            self._link_joint[frame.name] = frame.parentJoint
            if frame.parentJoint > 0:
                self._active_link_of_joint.setdefault(
                    frame.parentJoint, frame.name,
                )

    @classmethod
    def from_urdf_string(cls, urdf: str) -> "PinocchioKinematics":
        """Create kinematics from a URDF document."""
        return cls(pin.buildModelFromXML(urdf))

    @classmethod
    def from_urdf_file(cls, path: str | Path) -> "PinocchioKinematics":
        """Create kinematics from a URDF file."""
        return cls(pin.buildModelFromUrdf(str(path)))

    @property
    def n_dof(self) -> int:
        """Number of joint coordinates."""
        return self.model.nq

    @property
    def joint_names(self) -> list[str]:
        """Joint names in configuration-vector order."""
        return [self.model.names[j] for j in range(1, self.model.njoints)]

    @property
    def lower_limits(self) -> np.ndarray:
        return np.asarray(self.model.lowerPositionLimit, dtype=np.float64).copy()

    @property
    def upper_limits(self) -> np.ndarray:
        return np.asarray(self.model.upperPositionLimit, dtype=np.float64).copy()

    @property
    def link_names(self) -> list[str]:
        """All links of the model, fixed and moving."""
        return list(self._link_frame_ids)

    @property
    def active_link_names(self) -> list[str]:
        """Links driven directly by a manipulator joint, in joint order."""
        return [
            self._active_link_of_joint[j]
            for j in sorted(self._active_link_of_joint)
        ]

    def has_link(self, link_name: str) -> bool:
        return link_name in self._link_frame_ids

    def parent_active_link(self, link_name: str) -> str | None:
        """Active link that rigidly carries ``link_name``.

        Returns None for links that do not move with the manipulator.
        """
        joint = self._link_joint.get(link_name, 0)
        if joint == 0:
            return None
        return self._active_link_of_joint[joint]

    def _check_q(self, q: np.ndarray) -> np.ndarray:
        q = np.asarray(q, dtype=np.float64).ravel()
        if q.shape[0] != self.n_dof:
            raise ValueError(
                f"Expected {self.n_dof} joint values, got {q.shape[0]}"
            )
        return q

    def calc_fwd_kin(self, q: np.ndarray) -> dict[str, np.ndarray]:
        """Compute the pose of every link.

        Args:
            q: Joint positions (n_dof,).

        Returns:
            Mapping of link name to 4x4 homogeneous transform (base -> link).
        """
        q = self._check_q(q)
        pin.framesForwardKinematics(self.model, self.data, q)
        return {
            name: self.data.oMf[frame_id].homogeneous.copy()
            for name, frame_id in self._link_frame_ids.items()
        }

    def calc_jacobian(self, q: np.ndarray, link_name: str) -> np.ndarray:
        """Compute the Jacobian of a link origin.

        Args:
            q: Joint positions (n_dof,).
            link_name: Link to differentiate.

        Returns:
            Jacobian (6, n_dof), rows [linear; angular], base frame.

        Raises:
            KeyError: If the link does not exist.
        """
        q = self._check_q(q)
        frame_id = self._link_frame_ids[link_name]
        return pin.computeFrameJacobian(
            self.model, self.data, q, frame_id, pin.LOCAL_WORLD_ALIGNED,
        ).copy()


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix with ``skew(v) @ w == cross(v, w)``."""
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ])


def jacobian_change_base(jacobian: np.ndarray, transform: np.ndarray) -> np.ndarray:
    """Rotate a [linear; angular] Jacobian into another frame."""
    rotation = transform[:3, :3]
    return np.vstack([rotation @ jacobian[:3], rotation @ jacobian[3:]])


def jacobian_change_ref_point(
    jacobian: np.ndarray,
    ref_point: np.ndarray,
) -> np.ndarray:
    """Move the linear part of a Jacobian to a point offset from its origin.

    ``ref_point`` is the offset from the current reference point, expressed
    in the Jacobian's frame.
    """
    out = jacobian.copy()
    out[:3] -= skew(ref_point) @ jacobian[3:]
    return out


def pose_from_xyz_wxyz(xyz, wxyz=(1.0, 0.0, 0.0, 0.0)) -> np.ndarray:
    """Homogeneous transform from a position and a (w, x, y, z) quaternion."""
    w, x, y, z = (float(v) for v in wxyz)
    pose = np.eye(4)
    pose[:3, :3] = pin.Quaternion(w, x, y, z).normalized().toRotationMatrix()
    pose[:3, 3] = xyz
    return pose


def pose_error(pose: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Error (6,) of ``pose`` against ``target``: [position; rotation].

    The rotation part is the axis-angle vector of ``target^-1 * pose``.
    """
    rotation = target[:3, :3].T @ pose[:3, :3]
    return np.concatenate([pose[:3, 3] - target[:3, 3], pin.log3(rotation)])
