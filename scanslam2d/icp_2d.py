"""Scan-to-scan registration with point-to-point and point-to-line ICP."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from scipy.spatial import cKDTree

from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2

logger = logging.getLogger(__name__)

_ITERATIONS = 10
_MIN_EFFECTIVE_POINTS = 20
_MAX_POINT_DIST2 = 0.01  # squared nearest-neighbour distance, point to point
_MAX_LINE_DIST2 = 0.3  # squared neighbour distance, point to line
_LINE_NEIGHBOURS = 5
_MIN_LINE_POINTS = 3


def fit_line_2d(points) -> np.ndarray:
    """Fit a line a*x + b*y + c = 0 with a unit normal (a, b) to at least two points."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(pts) < 2:
        raise ValueError("a line needs at least two points")
    centroid = pts.mean(axis=0)
    _, _, vt = np.linalg.svd(pts - centroid)
    normal = vt[-1]
    return np.array([normal[0], normal[1], -float(normal @ centroid)])


def _polar(scan: Scan2d) -> tuple[np.ndarray, np.ndarray]:
    polar = np.array(list(scan.valid_points()), dtype=float).reshape(-1, 2)
    return polar[:, 0], polar[:, 1]


def _cartesian(ranges: np.ndarray, angles: np.ndarray) -> np.ndarray:
    return np.column_stack((ranges * np.cos(angles), ranges * np.sin(angles)))


_Terms = tuple[np.ndarray, np.ndarray, float, int]


class Icp2d:
    """Registers a source scan against a target scan.

    Set the target first, which builds its k-d tree, then the source, then
    call one of the align methods.
    """

    def __init__(self) -> None:
        self._target_scan: Scan2d | None = None
        self._source_scan: Scan2d | None = None
        self._target_points = np.empty((0, 2))
        self._kdtree: cKDTree | None = None

    def set_target(self, target: Scan2d) -> None:
        """Use ``target`` as the reference scan."""
        self._target_scan = target
        self._target_points = _cartesian(*_polar(target))
        self._kdtree = cKDTree(self._target_points) if len(self._target_points) else None

    def set_source(self, source: Scan2d) -> None:
        """Use ``source`` as the scan to be registered."""
        self._source_scan = source

    def align_gauss_newton(self, init_pose: SE2) -> SE2 | None:
        """Point-to-point Gauss-Newton ICP; the estimated pose, or None on too few matches."""
        return self._align(init_pose, self._point_to_point_terms)

    def align_gauss_newton_point_to_plane(self, init_pose: SE2) -> SE2 | None:
        """Point-to-line Gauss-Newton ICP; the estimated pose, or None on too few matches."""
        return self._align(init_pose, self._point_to_line_terms)

    def _align(self, init_pose: SE2, build_terms: Callable[..., _Terms]) -> SE2 | None:
        if self._target_scan is None:
            raise RuntimeError("target scan is not set")
        if self._source_scan is None:
            raise RuntimeError("source scan is not set")

        ranges, angles = _polar(self._source_scan)
        pose = init_pose
        last_cost = 0.0
        for iteration in range(_ITERATIONS):
            hessian, bias, cost, effective = build_terms(pose, ranges, angles)
            if effective < _MIN_EFFECTIVE_POINTS:
                return None
            try:
                dx = np.linalg.solve(hessian, bias)
            except np.linalg.LinAlgError:
                break
            if np.isnan(dx[0]):
                break
            cost /= effective
            if iteration > 0 and cost >= last_cost:
                break
            logger.info("iter %d cost = %g, effect num: %d", iteration, cost, effective)
            pose = pose.oplus(dx)
            last_cost = cost

        logger.info("estimated pose: %g %g, theta: %g", pose.x, pose.y, pose.theta)
        return pose

    def _point_to_point_terms(self, pose: SE2, ranges: np.ndarray, angles: np.ndarray) -> _Terms:
        if self._kdtree is None or len(ranges) == 0:
            return np.zeros((3, 3)), np.zeros(3), 0.0, 0
        world = pose.transform(_cartesian(ranges, angles))
        dist, idx = self._kdtree.query(world, k=1)
        keep = dist**2 < _MAX_POINT_DIST2
        count = int(keep.sum())
        errors = world[keep] - self._target_points[idx[keep]]
        phi = angles[keep] + pose.theta
        r = ranges[keep]
        jac = np.zeros((count, 3, 2))
        jac[:, 0, 0] = 1.0
        jac[:, 1, 1] = 1.0
        jac[:, 2, 0] = -r * np.sin(phi)
        jac[:, 2, 1] = r * np.cos(phi)
        hessian = np.einsum("nij,nkj->ik", jac, jac)
        bias = -np.einsum("nij,nj->i", jac, errors)
        cost = float(np.sum(errors * errors))
        return hessian, bias, cost, count

    def _point_to_line_terms(self, pose: SE2, ranges: np.ndarray, angles: np.ndarray) -> _Terms:
        hessian = np.zeros((3, 3))
        bias = np.zeros(3)
        cost = 0.0
        effective = 0
        if self._kdtree is None or len(ranges) == 0:
            return hessian, bias, cost, effective

        world = pose.transform(_cartesian(ranges, angles))
        k = min(_LINE_NEIGHBOURS, len(self._target_points))
        dist, idx = self._kdtree.query(world, k=k)
        dist = np.asarray(dist).reshape(len(world), -1)
        idx = np.asarray(idx).reshape(len(world), -1)

        for point, r, angle, dists, neighbours in zip(world, ranges, angles, dist, idx):
            close = neighbours[dists**2 < _MAX_LINE_DIST2]
            if len(close) < _MIN_LINE_POINTS:
                continue
            a, b, c = fit_line_2d(self._target_points[close])
            phi = angle + pose.theta
            jac = np.array([a, b, -a * r * np.sin(phi) + b * r * np.cos(phi)])
            error = a * point[0] + b * point[1] + c
            hessian += np.outer(jac, jac)
            bias += -jac * error
            cost += error * error
            effective += 1
        return hessian, bias, cost, effective