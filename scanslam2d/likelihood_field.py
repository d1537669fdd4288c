"""Single-resolution likelihood field registration of 2D scans."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.optimizer import LikelihoodFieldEdge, optimize_pose

logger = logging.getLogger(__name__)

FIELD_SIZE = 1000
FIELD_MAX = 30.0
_RESOLUTION = 20.0
_MODEL_HALF_SIZE = 20
_OCCU_BORDER = 25
_FOV_MARGIN = 30 * math.pi / 180.0
_RANGE_TH = 15.0
_RK_DELTA = 0.8


@dataclass(frozen=True)
class ModelPoint:
    """One offset of the field template and its distance residual."""

    dx: int
    dy: int
    residual: float


def build_model(half_size: int = _MODEL_HALF_SIZE) -> list[ModelPoint]:
    """Template of all offsets in a square of the given half size."""
    return [
        ModelPoint(x, y, math.sqrt(x * x + y * y))
        for x in range(-half_size, half_size + 1)
        for y in range(-half_size, half_size + 1)
    ]


def _model_arrays(model: list[ModelPoint]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    return (
        np.array([m.dx for m in model], dtype=float),
        np.array([m.dy for m in model], dtype=float),
        np.array([m.residual for m in model], dtype=np.float32),
    )


def stamp_model(field: np.ndarray, xs, ys, model: list[ModelPoint]) -> None:
    """Lower ``field`` to the template residuals around each point (xs, ys) in place."""
    xs = np.asarray(xs, dtype=float).reshape(-1, 1)
    ys = np.asarray(ys, dtype=float).reshape(-1, 1)
    if xs.size == 0:
        return
    mdx, mdy, mres = _model_arrays(model)
    xx = np.trunc(xs + mdx).astype(int).ravel()
    yy = np.trunc(ys + mdy).astype(int).ravel()
    res = np.broadcast_to(mres, (xs.shape[0], mres.size)).ravel()
    rows, cols = field.shape
    keep = (xx >= 0) & (xx < cols) & (yy >= 0) & (yy < rows)
    np.minimum.at(field, (yy[keep], xx[keep]), res[keep])


def field_to_image(field: np.ndarray) -> np.ndarray:
    """Grey RGB image of a field, 0 as black and the maximum as white."""
    grey = (field * 255.0 / FIELD_MAX).astype(np.uint8)
    return np.repeat(grey[:, :, None], 3, axis=2)


def source_beams(scan: Scan2d, max_range: float | None = None) -> list[tuple[float, float]]:
    """Valid (range, angle) beams, leaving out 30 degrees at either end of the scan."""
    return [
        (r, a)
        for r, a in scan.valid_points()
        if (max_range is None or r <= max_range)
        and not (a < scan.angle_min + _FOV_MARGIN or a > scan.angle_max - _FOV_MARGIN)
    ]


class LikelihoodField:
    """Distance field around a target scan or occupancy map, used to align scans."""

    def __init__(self) -> None:
        self._model = build_model()
        self._field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        self._pose = SE2()
        self._target: Scan2d | None = None
        self._source: Scan2d | None = None
        self._has_outside = False
        self.resolution = _RESOLUTION

    @property
    def field(self) -> np.ndarray:
        """The raw float field."""
        return self._field

    def set_target_scan(self, scan: Scan2d) -> None:
        """Build the field around the end points of ``scan``."""
        self._target = scan
        self._field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        polar = np.array(list(scan.valid_points()), dtype=float).reshape(-1, 2)
        xs = polar[:, 0] * np.cos(polar[:, 1]) * self.resolution + FIELD_SIZE / 2
        ys = polar[:, 0] * np.sin(polar[:, 1]) * self.resolution + FIELD_SIZE / 2
        stamp_model(self._field, xs, ys, self._model)

    def set_source_scan(self, scan: Scan2d) -> None:
        """Set the scan to be aligned."""
        self._source = scan

    def set_field_image_from_occu_map(self, occu_map: np.ndarray) -> None:
        """Build the field around the occupied cells (value < 127) of a grid image."""
        self._field = np.full((FIELD_SIZE, FIELD_SIZE), FIELD_MAX, dtype=np.float32)
        grid = np.asarray(occu_map)
        rows, cols = grid.shape[:2]
        inner = grid[_OCCU_BORDER : rows - _OCCU_BORDER, _OCCU_BORDER : cols - _OCCU_BORDER]
        ys, xs = np.nonzero(inner < 127)
        stamp_model(self._field, xs + _OCCU_BORDER, ys + _OCCU_BORDER, self._model)

    def _require_source(self) -> Scan2d:
        if self._source is None:
            raise RuntimeError("source scan is not set")
        return self._source

    def align_gauss_newton(self, init_pose: SE2) -> SE2 | None:
        """Gauss-Newton alignment; the estimated pose, or None with too few points."""
        source = self._require_source()
        beams = source_beams(source)
        polar = np.array(beams, dtype=float).reshape(-1, 2)
        ranges = polar[:, 0]
        angles = polar[:, 1]
        local = np.column_stack((ranges * np.cos(angles), ranges * np.sin(angles)))
        field = self._field
        border = 20
        rows, cols = field.shape
        res = self.resolution
        pose = init_pose
        last_cost = 0.0
        self._has_outside = False
        for iteration in range(10):
            pf = (pose.transform(local) * res + 500.0).astype(int) if len(local) else np.empty((0, 2), int)
            inside = (
                (pf[:, 0] >= border) & (pf[:, 0] < cols - border) & (pf[:, 1] >= border) & (pf[:, 1] < rows - border)
            )
            if not inside.all():
                self._has_outside = True
            effective = int(inside.sum())
            if effective < 20:
                return None
            px, py = pf[inside, 0], pf[inside, 1]
            dx = 0.5 * (field[py, px + 1].astype(float) - field[py, px - 1])
            dy = 0.5 * (field[py + 1, px].astype(float) - field[py - 1, px])
            phi = angles[inside] + pose.theta
            r = ranges[inside]
            jac = np.column_stack(
                (res * dx, res * dy, -res * dx * r * np.sin(phi) + res * dy * r * np.cos(phi))
            )
            err = field[py, px].astype(float)
            hessian = jac.T @ jac
            bias = -jac.T @ err
            try:
                step = np.linalg.solve(hessian, bias)
            except np.linalg.LinAlgError:
                break
            if np.isnan(step[0]):
                break
            cost = float(err @ err) / effective
            if iteration > 0 and cost >= last_cost:
                break
            logger.info("iter %d cost = %g, effect num: %d", iteration, cost, effective)
            pose = pose.oplus(step)
            last_cost = cost
        return pose

    def align_g2o(self, init_pose: SE2) -> SE2:
        """Robust Levenberg-Marquardt alignment; returns the estimated pose."""
        source = self._require_source()
        self._has_outside = False
        edges = []
        for r, a in source_beams(source, _RANGE_TH):
            edge = LikelihoodFieldEdge(self._field, r, a, self.resolution)
            if edge.is_outside(init_pose):
                self._has_outside = True
                continue
            edges.append(edge)
        return optimize_pose(init_pose, edges, _RK_DELTA, 10)

    def get_field_image(self) -> np.ndarray:
        """The field as a grey RGB image."""
        return field_to_image(self._field)

    def has_outside_points(self) -> bool:
        """Whether the last alignment saw points outside the field."""
        return self._has_outside

    def set_pose(self, pose: SE2) -> None:
        """Set the pose of the field centre in the world."""
        self._pose = pose