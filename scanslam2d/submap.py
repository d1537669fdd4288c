"""Submaps: a group of keyframes with their own occupancy grid and likelihood field."""

from __future__ import annotations

from scanslam2d.frame import Frame
from scanslam2d.geometry import SE2
from scanslam2d.likelihood_field import LikelihoodField
from scanslam2d.occupancy_map import GridMethod, OccupancyMap

_FRAMES_FROM_OTHER = 10


class Submap:
    """A local map at pose T_w_s holding keyframes, an occupancy grid and a field.

    The world pose of each frame is the submap pose times the frame's pose
    in the submap.
    """

    def __init__(self, pose: SE2) -> None:
        self._pose = pose
        self.id = 0
        self.frames: list[Frame] = []
        self.likelihood = LikelihoodField()
        self.occu_map = OccupancyMap()
        self.occu_map.set_pose(pose)
        self.likelihood.set_pose(pose)

    @property
    def pose(self) -> SE2:
        """The submap pose in the world."""
        return self._pose

    def set_occu_from_other_submap(self, other: Submap) -> None:
        """Seed the grid with the last frames of ``other`` and rebuild the field."""
        frames = other.frames
        count = len(frames)
        if count >= _FRAMES_FROM_OTHER:
            for index in range(count - _FRAMES_FROM_OTHER, count):
                if index > 0:
                    self.occu_map.add_lidar_frame(frames[index])
        self.likelihood.set_field_image_from_occu_map(self.occu_map.occupancy_grid())

    def match_scan(self, frame: Frame) -> bool:
        """Align ``frame`` to this submap, updating its submap and world poses."""
        self.likelihood.set_source_scan(frame.scan)
        frame.pose_submap = self.likelihood.align_g2o(frame.pose_submap)
        frame.pose = self._pose * frame.pose_submap
        return True

    def has_outside_points(self) -> bool:
        """Whether the last added scan had points outside the grid."""
        return self.occu_map.has_outside_points()

    def add_scan_in_occupancy_map(self, frame: Frame) -> None:
        """Add ``frame`` to the grid and rebuild the likelihood field."""
        self.occu_map.add_lidar_frame(frame, GridMethod.MODEL_POINTS)
        self.likelihood.set_field_image_from_occu_map(self.occu_map.occupancy_grid())

    def add_key_frame(self, frame: Frame) -> None:
        """Attach a keyframe to this submap."""
        self.frames.append(frame)

    def update_frame_pose_world(self) -> None:
        """Recompute the world pose of every keyframe from the submap pose."""
        for frame in self.frames:
            frame.pose = self._pose * frame.pose_submap

    def set_pose(self, pose: SE2) -> None:
        """Move the submap, its grid and its field to ``pose``."""
        self._pose = pose
        self.occu_map.set_pose(pose)
        self.likelihood.set_pose(pose)

    def num_frames(self) -> int:
        """Number of keyframes."""
        return len(self.frames)