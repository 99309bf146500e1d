"""Shared pytest fixtures."""

import json
from pathlib import Path

import matplotlib
import numpy as np
import pytest

matplotlib.use("Agg")

DATA_DIR = Path(__file__).resolve().parent.parent / "data"

# Two revolute joints about z with unit-length links, plus a tool link fixed
# to the end of the second link.
PLANAR_ARM_URDF = """<?xml version="1.0"?>
<robot name="planar_arm">
  <link name="base_link"/>
  <link name="link1">
    <inertial>
      <mass value="1.0"/>
      <origin xyz="0.5 0 0"/>
      <inertia ixx="0.01" ixy="0" ixz="0" iyy="0.01" iyz="0" izz="0.01"/>
    </inertial>
  </link>
  <link name="link2">
    <inertial>
      <mass value="1.0"/>
      <origin xyz="0.5 0 0"/>
      <inertia ixx="0.01" ixy="0" ixz="0" iyy="0.01" iyz="0" izz="0.01"/>
    </inertial>
  </link>
  <link name="tool"/>
  <joint name="joint1" type="revolute">
    <parent link="base_link"/>
    <child link="link1"/>
    <origin xyz="0 0 0" rpy="0 0 0"/>
    <axis xyz="0 0 1"/>
    <limit lower="-3.14" upper="3.14" effort="10" velocity="1.0"/>
  </joint>
  <joint name="joint2" type="revolute">
    <parent link="link1"/>
    <child link="link2"/>
    <origin xyz="1.0 0 0" rpy="0 0 0"/>
    <axis xyz="0 0 1"/>
    <limit lower="-3.14" upper="3.14" effort="10" velocity="1.0"/>
  </joint>
  <joint name="tool_joint" type="fixed">
    <parent link="link2"/>
    <child link="tool"/>
    <origin xyz="1.0 0 0" rpy="0 0 0"/>
  </joint>
</robot>
"""


@pytest.fixture
def boxbot_kin():
    """PinocchioKinematics for the two-prismatic-joint boxbot."""
    try:
        from trajopt_collision import PinocchioKinematics
        return PinocchioKinematics.from_urdf_file(DATA_DIR / "boxbot.urdf")
    except ImportError:
        pytest.skip("pinocchio not available")


@pytest.fixture
def planar_kin():
    """PinocchioKinematics for a planar two-link revolute arm."""
    try:
        from trajopt_collision import PinocchioKinematics
        return PinocchioKinematics.from_urdf_string(PLANAR_ARM_URDF)
    except ImportError:
        pytest.skip("pinocchio not available")


@pytest.fixture
def box_cast_config() -> dict:
    """Problem description for the boxbot sweeping past a post."""
    with open(DATA_DIR / "box_cast_test.json") as f:
        return json.load(f)


@pytest.fixture
def boxbot_env(boxbot_kin, box_cast_config):
    """Boxbot scene at the start pose (-1.9, 0)."""
    from trajopt_collision import Environment
    return Environment.from_dict(boxbot_kin, box_cast_config["scene"])


@pytest.fixture
def point_env(boxbot_kin):
    """Boxbot with one sphere on boxbot_link next to a static sphere.

    With q = (0, 0) the spheres (radius 0.1 each) are 0.19 apart center to
    center, so the signed distance is -0.01.
    """
    from trajopt_collision import CollisionShape, Environment
    from trajopt_collision.environment import translation_pose

    env = Environment(boxbot_kin)
    env.add_link_geometry("boxbot_link", [CollisionShape.sphere(0.1)])
    env.add_obstacle(
        "ball", [CollisionShape.sphere(0.1)], translation_pose([0.19, 0.0, 0.0]),
    )
    return env


@pytest.fixture
def planar_env(planar_kin):
    """Planar arm with a sphere on the tool and a static capsule post."""
    from trajopt_collision import CollisionShape, Environment
    from trajopt_collision.environment import translation_pose

    env = Environment(planar_kin)
    env.add_link_geometry("tool", [CollisionShape.sphere(0.1)])
    env.add_link_geometry("link2", [CollisionShape.sphere(0.1, (0.5, 0.0, 0.0))])
    env.add_obstacle(
        "post",
        [CollisionShape.capsule(0.2, (0.0, 0.0, -0.5), (0.0, 0.0, 0.5))],
        translation_pose([1.2, 1.2, 0.0]),
    )
    return env


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)
