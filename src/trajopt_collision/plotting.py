"""Top-down (x-y) plots of the collision scene and contact results."""

import logging
from pathlib import Path
from typing import Protocol, Sequence

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.axes import Axes
from matplotlib.patches import Circle, Polygon

from .contact_managers import ContactResult
from .safety_margin import SafetyMarginData

logger = logging.getLogger(__name__)


class Visualization(Protocol):
    """Drawing surface used by collision terms and the solver callback."""

    def clear(self) -> None:
        ...

    def plot_trajectory(self, env, traj: np.ndarray) -> None:
        ...

    def plot_contact_results(
        self,
        contacts: Sequence[ContactResult],
        safety_margin_data: SafetyMarginData,
    ) -> None:
        ...

    def show(self) -> None:
        ...


def _capsule_outline(p0: np.ndarray, p1: np.ndarray, radius: float, n: int = 16) -> np.ndarray:
    """Planar outline (2n, 2) of a capsule projected onto x-y."""
    a, b = p0[:2], p1[:2]
    axis = b - a
    angle = np.arctan2(axis[1], axis[0]) if np.linalg.norm(axis) > 0.0 else 0.0
    half = np.linspace(-np.pi / 2, np.pi / 2, n)
    cap_b = b + radius * np.stack([np.cos(angle + half), np.sin(angle + half)], axis=1)
    cap_a = a + radius * np.stack(
        [np.cos(angle + np.pi + half), np.sin(angle + np.pi + half)], axis=1,
    )
    return np.vstack([cap_b, cap_a])


class MatplotlibPlotter:
    """Draws the scene projected onto the x-y plane.

    Frames are saved to ``output_dir`` when given, otherwise shown
    interactively.

    Attributes:
        fig: Matplotlib figure.
        ax: Axes every call draws on.
        frame: Number of frames shown so far.
    """

    def __init__(
        self,
        output_dir: str | Path | None = None,
        figsize: tuple[float, float] = (6.0, 6.0),
        limits: tuple[float, float, float, float] | None = None,
    ):
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.limits = limits
        self.fig, self.ax = plt.subplots(figsize=figsize)
        self.frame = 0
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    def clear(self) -> None:
        self.ax.cla()

    def plot_scene(self, env, q: np.ndarray | None = None, alpha: float = 0.6) -> None:
        """Draw every enabled collision object at joint values ``q``."""
        transforms = env.get_link_transforms(q)
        for name, shapes in env.get_enabled_geometry().items():
            moving = env.kinematics.has_link(name)
            color = "tab:blue" if moving else "tab:gray"
            for shape in shapes:
                p0, p1 = shape.transformed(transforms[name])
                if shape.is_sphere:
                    patch = Circle(p0[:2], shape.radius, alpha=alpha, color=color)
                else:
                    patch = Polygon(
                        _capsule_outline(p0, p1, shape.radius), alpha=alpha, color=color,
                    )
                self.ax.add_patch(patch)

    def plot_trajectory(self, env, traj: np.ndarray) -> None:
        """Draw the scene at the first step and ghosts of the moving links."""
        traj = np.atleast_2d(traj)
        self.plot_scene(env, traj[0])
        for q in traj[1:]:
            transforms = env.get_link_transforms(q)
            for name, shapes in env.get_enabled_geometry().items():
                if not env.kinematics.has_link(name):
                    continue
                for shape in shapes:
                    p0, _ = shape.transformed(transforms[name])
                    self.ax.add_patch(
                        Circle(p0[:2], shape.radius, fill=False, color="tab:blue", alpha=0.3)
                    )
        self._finish_axes()

    def plot_contact_results(
        self,
        contacts: Sequence[ContactResult],
        safety_margin_data: SafetyMarginData,
    ) -> None:
        """Draw each contact as a segment between its nearest points.

        Red marks a pair inside its safety margin, green one outside it.
        """
        for contact in contacts:
            margin, _ = safety_margin_data.lookup(*contact.link_names)
            color = "tab:red" if contact.distance < margin else "tab:green"
            p_a, p_b = (np.asarray(p) for p in contact.nearest_points)
            self.ax.plot([p_a[0], p_b[0]], [p_a[1], p_b[1]], color=color, linewidth=1.5)
            self.ax.plot(p_a[0], p_a[1], "o", color=color, markersize=3)
        self._finish_axes()

    def _finish_axes(self) -> None:
        self.ax.set_aspect("equal")
        self.ax.set_xlabel("x [m]")
        self.ax.set_ylabel("y [m]")
        self.ax.grid(True)
        if self.limits is not None:
            self.ax.set_xlim(*self.limits[:2])
            self.ax.set_ylim(*self.limits[2:])
        else:
            self.ax.autoscale_view()

    def show(self) -> None:
        self.frame += 1
        if self.output_dir is not None:
            path = self.output_dir / f"frame_{self.frame:03d}.png"
            self.fig.savefig(path)
            logger.debug("Saved %s", path)
        elif plt.get_backend().lower() == "agg":
            logger.warning("No interactive matplotlib backend; pass output_dir to save frames")
        else:
            plt.pause(0.001)

    def close(self) -> None:
        plt.close(self.fig)


def plot_axes(ax: Axes, traj: np.ndarray, joint_names: Sequence[str]) -> None:
    """Joint values over timesteps on ``ax``."""
    for j, name in enumerate(joint_names):
        ax.plot(np.arange(len(traj)), traj[:, j], marker="o", label=name)
    ax.set_xlabel("Timestep")
    ax.set_ylabel("Joint value")
    ax.grid(True)
    ax.legend()
