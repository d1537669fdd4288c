"""Occupancy grid built from 2D lidar frames."""

from __future__ import annotations

import math
from enum import Enum
from functools import lru_cache

import numpy as np

from scanslam2d.frame import Frame, Scan2d
from scanslam2d.geometry import SE2, normalize_angle

IMAGE_SIZE = 1000
UNKNOWN = 127
_OCCUPIED_LIMIT = 117
_FREE_LIMIT = 137
_CLOSEST_TH = 0.2  # cells closer than this to the sensor are always free
_ENDPOINT_CLOSE_TH = 0.1  # free radius when a direction has no measurement
_RESOLUTION = 20.0  # pixels per metre
_INV_RESOLUTION = np.float32(0.05)  # metres per pixel
_MODEL_SIZE = 400  # half size of the fill template in pixels
_RANGE_JUMP = 0.3


class GridMethod(Enum):
    """How free space between the sensor and the end points is filled."""

    MODEL_POINTS = "model_points"
    BRESENHAM = "bresenham"


@lru_cache(maxsize=1)
def _model() -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Offsets, ranges (metres) and angles of the square fill template."""
    span = np.arange(-_MODEL_SIZE, _MODEL_SIZE + 1, dtype=np.int64)
    dx, dy = np.meshgrid(span, span, indexing="ij")
    dx = dx.ravel()
    dy = dy.ravel()
    ranges = (np.sqrt((dx * dx + dy * dy).astype(float)) * _INV_RESOLUTION).astype(np.float32)
    angles = np.arctan2(dy.astype(float), dx.astype(float))
    for arr in (dx, dy, ranges, angles):
        arr.setflags(write=False)
    return dx, dy, ranges, angles


def _bresenham_cells(p1, p2) -> list[tuple[int, int]]:
    """Cells on the line from ``p1`` to ``p2``, both end points excluded."""
    x, y = int(p1[0]), int(p1[1])
    x2, y2 = int(p2[0]), int(p2[1])
    dx, dy = x2 - x, y2 - y
    ux = 1 if dx > 0 else -1
    uy = 1 if dy > 0 else -1
    dx, dy = abs(dx), abs(dy)
    cells = []
    if dx > dy:
        e = -dx
        for _ in range(dx):
            x += ux
            e += 2 * dy
            if e >= 0:
                y += uy
                e -= 2 * dx
            if (x, y) != (x2, y2):
                cells.append((x, y))
    else:
        e = -dy
        for _ in range(dy):
            y += uy
            e += 2 * dx
            if e >= 0:
                x += ux
                e -= 2 * dy
            if (x, y) != (x2, y2):
                cells.append((x, y))
    return cells


def _keys(xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    return np.asarray(xs, dtype=np.int64) * (1 << 32) + np.asarray(ys, dtype=np.int64)


def _wrap(angles: np.ndarray) -> np.ndarray:
    wrapped = np.remainder(angles + math.pi, 2.0 * math.pi) - math.pi
    return np.where(wrapped <= -math.pi, wrapped + 2.0 * math.pi, wrapped)


class OccupancyMap:
    """An 8-bit grid: 127 unknown, lower values occupied, higher values free."""

    def __init__(self) -> None:
        self._grid = np.full((IMAGE_SIZE, IMAGE_SIZE), UNKNOWN, dtype=np.uint8)
        self._pose = SE2()
        self._center = np.array([IMAGE_SIZE // 2, IMAGE_SIZE // 2], dtype=float)
        self._has_outside = False

    def occupancy_grid(self) -> np.ndarray:
        """The raw grid, shared with the map."""
        return self._grid

    def black_white(self) -> np.ndarray:
        """RGB image: unknown grey, occupied black, free white."""
        image = np.full((IMAGE_SIZE, IMAGE_SIZE, 3), UNKNOWN, dtype=np.uint8)
        image[self._grid < UNKNOWN] = 0
        image[self._grid > UNKNOWN] = 255
        return image

    def set_pose(self, pose: SE2) -> None:
        """Set the pose of the map centre in the world."""
        self._pose = pose

    def has_outside_points(self) -> bool:
        """Whether the last frame had end points outside the grid."""
        return self._has_outside

    def resolution(self) -> float:
        """Pixels per metre."""
        return _RESOLUTION

    def set_point(self, pt, occupy: bool) -> None:
        """Move one cell a step towards occupied or free, within the limits."""
        xs = np.array([int(pt[0])])
        ys = np.array([int(pt[1])])
        if occupy:
            self._mark_occupied(xs, ys)
        else:
            self._mark_free(xs, ys)

    def bresenham_filling(self, p1, p2) -> None:
        """Mark the cells strictly between ``p1`` and ``p2`` as free."""
        cells = np.array(_bresenham_cells(p1, p2), dtype=np.int64).reshape(-1, 2)
        self._mark_free(cells[:, 0], cells[:, 1])

    def find_range_in_angle(self, angle: float, scan: Scan2d) -> float:
        """Range measured by ``scan`` in direction ``angle``, or 0 when there is none."""
        result = self._ranges_in_angles(np.array([normalize_angle(angle)]), scan)
        return float(result[0])

    def add_lidar_frame(self, frame: Frame, method: GridMethod = GridMethod.BRESENHAM) -> None:
        """Add the scan of ``frame``, seen from its world pose, to the grid."""
        scan = frame.scan
        if scan is None:
            raise ValueError("frame has no scan")
        # The frame's submap pose may belong to another submap, so recompute it.
        theta = float(np.float32((self._pose.inverse() * frame.pose).theta))
        self._has_outside = False

        polar = np.array(list(scan.valid_points()), dtype=float).reshape(-1, 2)
        if len(polar):
            local = np.column_stack((polar[:, 0] * np.cos(polar[:, 1]), polar[:, 0] * np.sin(polar[:, 1])))
            ends = np.unique(self._world_to_image(frame.pose.transform(local)), axis=0)
        else:
            ends = np.empty((0, 2), dtype=np.int64)
        start = self._world_to_image(frame.pose.translation())

        if method is GridMethod.MODEL_POINTS:
            self._fill_with_model(start, theta, scan, ends)
        else:
            cells = [cell for end in ends for cell in _bresenham_cells(start, end)]
            arr = np.array(cells, dtype=np.int64).reshape(-1, 2)
            self._mark_free(arr[:, 0], arr[:, 1])

        self._mark_occupied(ends[:, 0], ends[:, 1])

    def _world_to_image(self, points) -> np.ndarray:
        pts = self._pose.inverse().transform(points) * _RESOLUTION + self._center
        return np.trunc(pts).astype(np.int64)

    def _fill_with_model(self, start: np.ndarray, theta: float, scan: Scan2d, ends: np.ndarray) -> None:
        dx, dy, model_ranges, model_angles = _model()
        px = start[0] + dx
        py = start[1] + dy
        close = model_ranges < _CLOSEST_TH
        measured = self._ranges_in_angles(_wrap(model_angles - theta), scan)
        invalid = (measured < scan.range_min) | (measured > scan.range_max)
        near_sensor = invalid & (model_ranges < _ENDPOINT_CLOSE_TH)
        ahead = ~invalid & (measured > model_ranges)
        if len(ends):
            ahead &= ~np.isin(_keys(px, py), _keys(ends[:, 0], ends[:, 1]))
        free = close | near_sensor | ahead
        self._mark_free(px[free], py[free])

    def _ranges_in_angles(self, angles: np.ndarray, scan: Scan2d) -> np.ndarray:
        increment = scan.angle_increment
        if increment == 0:
            raise ValueError("scan angle increment must not be zero")
        angles = _wrap(np.asarray(angles, dtype=float))
        ranges = np.asarray(scan.ranges, dtype=float)
        count = len(ranges)
        if count == 0:
            return np.zeros_like(angles)

        valid = (angles >= scan.angle_min) & (angles <= scan.angle_max)
        pos = (angles - scan.angle_min) / increment
        idx = np.trunc(np.where(valid, pos, 0.0)).astype(np.int64)
        valid &= (idx >= 0) & (idx < count)
        idx = np.where(valid, idx, 0)
        nxt = idx + 1
        last = nxt >= count
        nxt = np.minimum(nxt, count - 1)
        s = pos - idx
        r1 = ranges[idx]
        r2 = ranges[nxt]

        def out_of_limits(r: np.ndarray) -> np.ndarray:
            return (r < scan.range_min) | (r > scan.range_max)

        result = np.where(np.abs(r1 - r2) > _RANGE_JUMP, np.where(s > 0.5, r2, r1), r1 * (1 - s) + r2 * s)
        result = np.where(out_of_limits(r1), r2, result)
        result = np.where(out_of_limits(r2), r1, result)
        result = np.where(last, r1, result)
        return np.where(valid, result, 0.0)

    def _inside(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        rows, cols = self._grid.shape
        return (xs >= 0) & (ys >= 0) & (xs < cols) & (ys < rows)

    def _counts(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        rows, cols = self._grid.shape
        flat = ys * cols + xs
        return np.bincount(flat, minlength=rows * cols).reshape(rows, cols)

    def _mark_free(self, xs, ys) -> None:
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        inside = self._inside(xs, ys)
        if not inside.any():
            return
        counts = self._counts(xs[inside], ys[inside])
        grid = self._grid.astype(np.int64)
        raised = np.where(grid < _FREE_LIMIT, np.minimum(grid + counts, _FREE_LIMIT), grid)
        self._grid[...] = raised.astype(np.uint8)

    def _mark_occupied(self, xs, ys) -> None:
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        inside = self._inside(xs, ys)
        if not inside.all():
            self._has_outside = True
        if not inside.any():
            return
        counts = self._counts(xs[inside], ys[inside])
        grid = self._grid.astype(np.int64)
        lowered = np.where(grid > _OCCUPIED_LIMIT, np.maximum(grid - counts, _OCCUPIED_LIMIT), grid)
        self._grid[...] = lowered.astype(np.uint8)