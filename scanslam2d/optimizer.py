"""Small least-squares machinery for planar pose estimation.

It offers robust kernels, a likelihood-field edge, a relative-pose edge, and
Levenberg-Marquardt solvers for a single pose and for a pose graph.
"""

from __future__ import annotations

import math
from typing import Callable, Mapping, Sequence

import numpy as np

from scanslam2d.geometry import SE2

_IMAGE_BORDER = 10
_NUMERIC_EPS = 1e-6


def get_pixel_value(image: np.ndarray, x: float, y: float) -> float:
    """Bilinearly interpolated value of ``image`` at column ``x``, row ``y``.

    Coordinates outside the image are clamped to its edge.
    """
    rows, cols = image.shape[:2]
    ix, iy = math.floor(x), math.floor(y)
    fx, fy = x - ix, y - iy
    ix = min(max(ix, 0), cols - 2)
    iy = min(max(iy, 0), rows - 2)
    return float(
        (1 - fx) * (1 - fy) * image[iy, ix]
        + fx * (1 - fy) * image[iy, ix + 1]
        + (1 - fx) * fy * image[iy + 1, ix]
        + fx * fy * image[iy + 1, ix + 1]
    )


class HuberKernel:
    """Huber robust cost on a squared error."""

    def __init__(self, delta: float) -> None:
        self.delta = float(delta)

    def robustify(self, chi2: float) -> tuple[float, float]:
        """Return (robust cost, weight) for a squared error."""
        dsqr = self.delta * self.delta
        if chi2 <= dsqr:
            return chi2, 1.0
        root = math.sqrt(chi2)
        return 2.0 * root * self.delta - dsqr, self.delta / root


class CauchyKernel:
    """Cauchy robust cost on a squared error."""

    def __init__(self, delta: float) -> None:
        self.delta = float(delta)

    def robustify(self, chi2: float) -> tuple[float, float]:
        """Return (robust cost, weight) for a squared error."""
        dsqr = self.delta * self.delta
        aux = chi2 / dsqr + 1.0
        return dsqr * math.log(aux), 1.0 / aux


class LikelihoodFieldEdge:
    """Unary edge: the field value under one beam end point is the error.

    When the end point falls near the image border the edge drops to level 1
    and contributes nothing.
    """

    def __init__(self, field_image: np.ndarray, range_value: float, angle: float, resolution: float = 10.0) -> None:
        self.field_image = field_image
        self.range_value = float(range_value)
        self.angle = float(angle)
        self.resolution = float(resolution)
        self.level = 0

    def _local_point(self) -> np.ndarray:
        return np.array([self.range_value * math.cos(self.angle), self.range_value * math.sin(self.angle)])

    def _center(self) -> np.ndarray:
        rows, cols = self.field_image.shape[:2]
        return np.array([rows // 2, cols // 2], dtype=float)

    def _inside(self, px: float, py: float) -> bool:
        rows, cols = self.field_image.shape[:2]
        return (
            _IMAGE_BORDER <= px < cols - _IMAGE_BORDER and _IMAGE_BORDER <= py < rows - _IMAGE_BORDER
        )

    def _image_point(self, pose: SE2) -> np.ndarray:
        pw = pose.transform(self._local_point())
        return pw * self.resolution + self._center() - 0.5

    def is_outside(self, pose: SE2) -> bool:
        """Whether the beam end point lies outside the usable part of the field."""
        pw = pose.transform(self._local_point())
        pf = (pw * self.resolution + self._center()).astype(int)
        return not self._inside(pf[0], pf[1])

    def error(self, pose: SE2) -> float:
        """Field value at the beam end point, or 0 (and level 1) outside."""
        px, py = self._image_point(pose)
        if self._inside(px, py):
            return get_pixel_value(self.field_image, px, py)
        self.level = 1
        return 0.0

    def jacobian(self, pose: SE2) -> np.ndarray:
        """Derivative of the error with respect to (x, y, theta)."""
        px, py = self._image_point(pose)
        if not self._inside(px, py):
            self.level = 1
            return np.zeros(3)
        img = self.field_image
        dx = 0.5 * (get_pixel_value(img, px + 1, py) - get_pixel_value(img, px - 1, py))
        dy = 0.5 * (get_pixel_value(img, px, py + 1) - get_pixel_value(img, px, py - 1))
        phi = self.angle + pose.theta
        res, r = self.resolution, self.range_value
        return np.array([res * dx, res * dy, -res * dx * r * math.sin(phi) + res * dy * r * math.cos(phi)])

    def chi2(self, pose: SE2) -> float:
        """Squared error with unit information."""
        e = self.error(pose)
        return e * e


class RelativePoseEdge:
    """Binary edge between two poses: error = log(T1^-1 * T2 * Z^-1)."""

    def __init__(self, id1, id2, measurement: SE2, information=None, kernel=None) -> None:
        self.id1 = id1
        self.id2 = id2
        self.measurement = measurement
        self.information = np.eye(3) if information is None else np.asarray(information, dtype=float)
        self.kernel = kernel
        self.level = 0

    def error(self, pose1: SE2, pose2: SE2) -> np.ndarray:
        """The 3-vector residual."""
        return (pose1.inverse() * pose2 * self.measurement.inverse()).log()

    def chi2(self, pose1: SE2, pose2: SE2) -> float:
        """Information-weighted squared error."""
        e = self.error(pose1, pose2)
        return float(e @ self.information @ e)


def _levenberg(state, linearize: Callable, cost: Callable, apply: Callable, iterations: int):
    hessian, grad, current = linearize(state)
    lam = None
    nu = 2.0
    for _ in range(iterations):
        if lam is None:
            lam = 1e-5 * max(float(np.max(np.diag(hessian))), 1e-12)
        improved = False
        for _attempt in range(10):
            try:
                dx = np.linalg.solve(hessian + lam * np.eye(len(grad)), -grad)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            candidate = apply(state, dx)
            new_cost = cost(candidate)
            predicted = float(dx @ (lam * dx - grad))
            rho = (current - new_cost) / predicted if predicted > 0 else -1.0
            if rho > 0 and math.isfinite(new_cost):
                state = candidate
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                hessian, grad, current = linearize(state)
                improved = True
                break
            lam *= nu
            nu *= 2.0
        if not improved:
            break
    return state


def optimize_pose(
    pose: SE2, edges: Sequence[LikelihoodFieldEdge], kernel_delta: float | None = None, iterations: int = 10
) -> SE2:
    """Refine one pose against unary field edges with an optional Huber kernel."""
    kernel = HuberKernel(kernel_delta) if kernel_delta is not None else None

    def weigh(chi2: float) -> tuple[float, float]:
        return kernel.robustify(chi2) if kernel else (chi2, 1.0)

    def linearize(p: SE2):
        hessian = np.zeros((3, 3))
        grad = np.zeros(3)
        total = 0.0
        for edge in edges:
            e = edge.error(p)
            jac = edge.jacobian(p)
            rho, weight = weigh(e * e)
            hessian += weight * np.outer(jac, jac)
            grad += weight * jac * e
            total += rho
        return hessian, grad, total

    def cost(p: SE2) -> float:
        return sum(weigh(edge.chi2(p))[0] for edge in edges)

    if not edges:
        return pose
    return _levenberg(pose, linearize, cost, lambda p, dx: p.oplus(dx), iterations)


def optimize_pose_graph(
    poses: Mapping[object, SE2], edges: Sequence[RelativePoseEdge], iterations: int = 10
) -> dict:
    """Optimise a graph of poses linked by relative-pose edges; returns new poses.

    Edges whose ``level`` is not 0 are ignored.
    """
    ids = sorted(poses)
    index = {vid: i for i, vid in enumerate(ids)}
    active = [e for e in edges if e.level == 0]

    def weigh(edge: RelativePoseEdge, chi2: float) -> tuple[float, float]:
        return edge.kernel.robustify(chi2) if edge.kernel else (chi2, 1.0)

    def apply(state: dict, dx: np.ndarray) -> dict:
        return {vid: state[vid].oplus(dx[3 * index[vid] : 3 * index[vid] + 3]) for vid in ids}

    def cost(state: dict) -> float:
        return sum(weigh(e, e.chi2(state[e.id1], state[e.id2]))[0] for e in active)

    def linearize(state: dict):
        size = 3 * len(ids)
        hessian = np.zeros((size, size))
        grad = np.zeros(size)
        total = 0.0
        for edge in active:
            p1, p2 = state[edge.id1], state[edge.id2]
            e = edge.error(p1, p2)
            jac = np.zeros((3, size))
            for k, step in enumerate(np.eye(3) * _NUMERIC_EPS):
                for vid, which in ((edge.id1, 0), (edge.id2, 1)):
                    a_plus = (p1.oplus(step), p2) if which == 0 else (p1, p2.oplus(step))
                    a_minus = (p1.oplus(-step), p2) if which == 0 else (p1, p2.oplus(-step))
                    diff = edge.error(*a_plus) - edge.error(*a_minus)
                    jac[:, 3 * index[vid] + k] += diff / (2 * _NUMERIC_EPS)
            chi2 = float(e @ edge.information @ e)
            rho, weight = weigh(edge, chi2)
            hessian += weight * jac.T @ edge.information @ jac
            grad += weight * jac.T @ edge.information @ e
            total += rho
        return hessian, grad, total

    state = dict(poses)
    if not active:
        return state
    return _levenberg(state, linearize, cost, apply, iterations)