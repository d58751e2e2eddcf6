import logging

import numpy as np

from .geometry import PoseStamped, quaternion_to_rotation, rotation_to_quaternion

logger = logging.getLogger(__name__)


def pose_rows(pose_seq):
    """
    Flattens PoseStamped samples into (timestamps, N x 7 [tx,ty,tz,qx,qy,qz,qw]).
    """
    timestamps = np.array([p.timestamp for p in pose_seq], dtype=float)
    rows = np.zeros((len(pose_seq), 7))
    for i, pose in enumerate(pose_seq):
        rows[i, :3] = pose.translation
        rows[i, 3:] = rotation_to_quaternion(pose.rotation)
    return timestamps, rows


class TrajWriter:
    """TUM trajectory writer, one `timestamp tx ty tz qx qy qz qw` line per pose."""

    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, timestamps, poses):
        """
        Args:
            timestamps (array_like): N timestamps.
            poses (np.ndarray): N x 7 rows [tx, ty, tz, qx, qy, qz, qw].
        """
        if len(timestamps) != len(poses):
            raise ValueError("Timestamps and poses must have the same length.")
        if not isinstance(poses, np.ndarray) or poses.ndim != 2 or poses.shape[1] != 7:
            raise ValueError("Poses must be an N x 7 numpy array.")

        with open(self.filepath, 'w') as f:
            for ts, pose in zip(timestamps, poses):
                f.write(f"{ts:.9f} " + " ".join(f"{v:.9f}" for v in pose) + "\n")
        logger.debug("Wrote %d poses to %s", len(timestamps), self.filepath)

    def write_pose_sequence(self, pose_seq):
        """Writes an iterable of PoseStamped (a list or a spline sampling)."""
        pose_seq = list(pose_seq)
        timestamps, rows = pose_rows(pose_seq)
        self.write(timestamps, rows)


class TrajReader:
    """Reads TUM trajectory files written by TrajWriter (or any TUM tool)."""

    def __init__(self, filepath):
        self.filepath = filepath

    def read(self):
        """
        Returns:
            list: PoseStamped per non-empty, non-comment line.

        Raises:
            ValueError: If a line does not hold 8 numbers or has a zero quaternion.
        """
        poses = []
        with open(self.filepath, 'r') as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                fields = line.split()
                if len(fields) != 8:
                    raise ValueError(f"{self.filepath}:{line_no}: expected 8 fields, got {len(fields)}.")
                try:
                    values = [float(v) for v in fields]
                except ValueError:
                    raise ValueError(f"{self.filepath}:{line_no}: non-numeric field.") from None
                rotation = quaternion_to_rotation(values[4:])
                poses.append(PoseStamped(rotation, values[1:4], values[0]))
        logger.debug("Read %d poses from %s", len(poses), self.filepath)
        return poses


class PLYWriter:
    """ASCII PLY point cloud writer, used to dump sampled trajectory positions."""

    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, points, colors=None):
        """
        Writes points (N x 3 float) and optional uint8 colors (N x 3) to a PLY file.
        """
        if not isinstance(points, np.ndarray) or points.ndim != 2 or points.shape[1] != 3:
            raise ValueError("Points must be an N x 3 numpy array.")
        if colors is not None:
            if not isinstance(colors, np.ndarray) or colors.shape != points.shape:
                raise ValueError("Colors must be an N x 3 numpy array, matching the number of points.")
            if colors.dtype != np.uint8:
                raise ValueError("Colors must be uint8.")

        with open(self.filepath, 'w') as f:
            f.write("ply\nformat ascii 1.0\n")
            f.write(f"element vertex {points.shape[0]}\n")
            f.write("property float x\nproperty float y\nproperty float z\n")
            if colors is not None:
                f.write("property uchar red\nproperty uchar green\nproperty uchar blue\n")
            f.write("end_header\n")
            for i in range(points.shape[0]):
                line = f"{points[i, 0]:.6f} {points[i, 1]:.6f} {points[i, 2]:.6f}"
                if colors is not None:
                    line += f" {colors[i, 0]} {colors[i, 1]} {colors[i, 2]}"
                f.write(line + "\n")

    def write_pose_sequence(self, pose_seq):
        """Positions of the poses, colored from blue (first) to red (last)."""
        pose_seq = list(pose_seq)
        points = np.array([p.translation for p in pose_seq], dtype=float).reshape(-1, 3)
        ramp = np.linspace(0.0, 1.0, len(pose_seq))
        colors = np.zeros((len(pose_seq), 3), dtype=np.uint8)
        colors[:, 0] = np.round(255 * ramp).astype(np.uint8)
        colors[:, 2] = np.round(255 * (1.0 - ramp)).astype(np.uint8)
        self.write(points, colors)
