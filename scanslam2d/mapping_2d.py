"""Incremental 2D lidar mapping with submaps and optional loop closure."""

from __future__ import annotations

import logging
import math
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from scanslam2d.frame import Frame, Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.loop_closing import LoopClosing
from scanslam2d.submap import Submap

logger = logging.getLogger(__name__)

_KEYFRAME_POS_TH = 0.3  # metres moved since the last keyframe
_KEYFRAME_ANG_TH = 15 * math.pi / 180  # radians turned since the last keyframe
_MAX_FRAMES_PER_SUBMAP = 50
_SUBMAP_RESOLUTION = 20.0  # pixels per metre in a submap grid
_SUBMAP_SIZE = 50.0  # metres covered by one submap
_SUBMAP_PIXELS = 1000
_UNKNOWN = 127

_FREE_CURRENT = (235, 250, 230)
_FREE_OTHER = (255, 255, 255)
_OCCUPIED_CURRENT = (230, 20, 30)
_OCCUPIED_OTHER = (0, 0, 0)


class Mapping2D:
    """Builds submaps from a stream of scans, matching each scan to the current submap."""

    def __init__(self, with_loop_closing: bool = True, output_dir=None) -> None:
        self._output_dir = Path(output_dir) if output_dir is not None else None
        if self._output_dir is not None:
            self._output_dir.mkdir(parents=True, exist_ok=True)

        self._frame_id = 0
        self._keyframe_id = 0
        self._submap_id = 0
        self._first_scan = True
        self._current_frame: Frame | None = None
        self._last_frame: Frame | None = None
        self._motion_guess = SE2()
        self._last_keyframe: Frame | None = None

        self._current_submap = Submap(SE2())
        self._all_submaps: list[Submap] = [self._current_submap]

        self._loop_closing: LoopClosing | None = None
        if with_loop_closing:
            debug_path = self._output_dir / "loops.txt" if self._output_dir is not None else None
            self._loop_closing = LoopClosing(debug_path)
            self._loop_closing.add_new_submap(self._current_submap)

    @property
    def current_submap(self) -> Submap:
        """The submap that new scans are matched against."""
        return self._current_submap

    def submaps(self) -> list[Submap]:
        """All submaps built so far, in order of creation."""
        return list(self._all_submaps)

    def process_scan(self, scan: Scan2d) -> bool:
        """Match a single-echo scan to the map and add it as a keyframe when it moved enough."""
        frame = Frame(scan=scan, id=self._frame_id)
        self._frame_id += 1
        self._current_frame = frame

        if self._last_frame is not None:
            frame.pose = self._last_frame.pose * self._motion_guess
            frame.pose_submap = self._last_frame.pose_submap

        # The first scan has nothing to match against.
        if not self._first_scan:
            self._current_submap.match_scan(frame)
        self._first_scan = False

        if self._is_key_frame():
            self._add_key_frame()
            self._current_submap.add_scan_in_occupancy_map(frame)

            if self._loop_closing is not None:
                self._loop_closing.add_new_frame(frame)

            if (
                self._current_submap.has_outside_points()
                or self._current_submap.num_frames() > _MAX_FRAMES_PER_SUBMAP
            ):
                self._expand_submap()

        if self._last_frame is not None:
            self._motion_guess = self._last_frame.pose.inverse() * frame.pose
        self._last_frame = frame
        return True

    def _is_key_frame(self) -> bool:
        if self._last_keyframe is None:
            return True
        delta = self._last_keyframe.pose.inverse() * self._current_frame.pose
        return (
            float(np.linalg.norm(delta.translation())) > _KEYFRAME_POS_TH
            or abs(delta.theta) > _KEYFRAME_ANG_TH
        )

    def _add_key_frame(self) -> None:
        logger.info("add keyframe %d", self._keyframe_id)
        frame = self._current_frame
        frame.keyframe_id = self._keyframe_id
        self._keyframe_id += 1
        self._current_submap.add_key_frame(frame)
        self._last_keyframe = frame

    def _expand_submap(self) -> None:
        if self._loop_closing is not None:
            self._loop_closing.add_finished_submap(self._current_submap)

        last_submap = self._current_submap
        if self._output_dir is not None:
            Image.fromarray(last_submap.occu_map.black_white()).save(
                self._output_dir / f"submap_{last_submap.id}.png"
            )

        frame = self._current_frame
        self._current_submap = Submap(frame.pose)
        frame.pose_submap = SE2()

        self._submap_id += 1
        self._current_submap.id = self._submap_id
        self._current_submap.add_key_frame(frame)
        # Carry the last frames over so the new submap does not start empty.
        self._current_submap.set_occu_from_other_submap(last_submap)
        self._current_submap.add_scan_in_occupancy_map(frame)
        self._all_submaps.append(self._current_submap)

        if self._loop_closing is not None:
            self._loop_closing.add_new_submap(self._current_submap)

        pose = self._current_submap.pose
        logger.info(
            "create submap %d with pose: %g %g, %g", self._current_submap.id, pose.x, pose.y, pose.theta
        )

    def show_global_map(self, max_size: int = 500) -> np.ndarray:
        """Render all submaps into one RGB image whose longer side is ``max_size`` pixels."""
        if not self._all_submaps:
            return np.zeros((0, 0, 3), dtype=np.uint8)

        half = _SUBMAP_SIZE / 2
        centers = np.array([m.pose.translation() for m in self._all_submaps])
        top_left = centers.min(axis=0) - half
        bottom_right = centers.max(axis=0) + half

        global_center = (top_left + bottom_right) / 2.0
        phy_width, phy_height = bottom_right - top_left
        resolution = max_size / (phy_width if phy_width > phy_height else phy_height)

        c = global_center.copy()
        snapped = np.trunc(global_center * resolution)
        global_center = snapped / resolution

        width = int((bottom_right[0] - top_left[0]) * resolution + 0.5)
        height = int((bottom_right[1] - top_left[1]) * resolution + 0.5)
        center_image = np.array([width // 2, height // 2], dtype=float)

        output = np.full((height, width, 3), _UNKNOWN, dtype=np.uint8)
        self._render_grids(output, center_image, resolution, c)

        def to_map(point) -> tuple[float, float]:
            p = (np.asarray(point, dtype=float) - global_center) * resolution + center_image
            return float(p[0]), float(p[1])

        image = Image.fromarray(output)
        draw = ImageDraw.Draw(image)
        font = ImageFont.load_default()
        for m in self._all_submaps:
            pose = m.pose
            center_map = to_map(pose.translation())
            x_map = to_map(pose.transform([1.0, 0.0]))
            y_map = to_map(pose.transform([0.0, 1.0]))
            draw.line([center_map, x_map], fill=(0, 0, 255), width=2)
            draw.line([center_map, y_map], fill=(0, 255, 0), width=2)
            draw.text((center_map[0] + 10, center_map[1] - 10), str(m.id), fill=(255, 0, 0), font=font)

            for frame in m.frames:
                px, py = to_map(frame.pose.translation())
                draw.ellipse([px - 1, py - 1, px + 1, py + 1], outline=(0, 0, 255), width=1)

        if self._loop_closing is not None:
            for first_id, second_id in self._loop_closing.loops():
                c1 = to_map(self._all_submaps[first_id].pose.translation())
                c2 = to_map(self._all_submaps[second_id].pose.translation())
                draw.line([c1, c2], fill=(255, 0, 0), width=2)

        return np.array(image)

    def _render_grids(self, output: np.ndarray, center_image: np.ndarray, resolution: float, c) -> None:
        height, width = output.shape[:2]
        xs, ys = np.meshgrid(np.arange(width, dtype=float), np.arange(height, dtype=float))
        pixels = np.column_stack((xs.ravel(), ys.ravel()))
        world = (pixels - center_image) / resolution + c
        done = np.zeros(len(world), dtype=bool)
        flat = output.reshape(-1, 3)

        for m in self._all_submaps:
            pending = ~done
            if not pending.any():
                break
            local = m.pose.inverse().transform(world)
            pt = np.trunc(local * _SUBMAP_RESOLUTION + _SUBMAP_PIXELS / 2).astype(np.int64)
            inside = (
                pending
                & (pt[:, 0] >= 0)
                & (pt[:, 0] < _SUBMAP_PIXELS)
                & (pt[:, 1] >= 0)
                & (pt[:, 1] < _SUBMAP_PIXELS)
            )
            values = np.full(len(world), _UNKNOWN, dtype=np.int64)
            grid = m.occu_map.occupancy_grid()
            values[inside] = grid[pt[inside, 1], pt[inside, 0]]

            is_current = m is self._current_submap
            free = inside & (values > _UNKNOWN)
            occupied = inside & (values < _UNKNOWN)
            flat[free] = _FREE_CURRENT if is_current else _FREE_OTHER
            flat[occupied] = _OCCUPIED_CURRENT if is_current else _OCCUPIED_OTHER
            done |= free | occupied