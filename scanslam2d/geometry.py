"""Rigid motions in the plane."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

_SMALL_ANGLE = 1e-10


def normalize_angle(angle: float) -> float:
    """Wrap an angle in radians into the interval (-pi, pi]."""
    wrapped = math.remainder(float(angle), 2.0 * math.pi)
    if wrapped <= -math.pi:
        wrapped += 2.0 * math.pi
    return wrapped


@dataclass(frozen=True)
class SE2:
    """A planar rigid transform: rotation by ``theta`` followed by translation."""

    x: float = 0.0
    y: float = 0.0
    theta: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))
        object.__setattr__(self, "theta", normalize_angle(self.theta))

    @classmethod
    def from_log(cls, xi) -> SE2:
        """Build a transform from its tangent vector (upsilon_x, upsilon_y, theta)."""
        ux, uy, theta = (float(v) for v in xi)
        if abs(theta) < _SMALL_ANGLE:
            sin_by_theta = 1.0 - theta * theta / 6.0
            one_minus_cos_by_theta = 0.5 * theta
        else:
            sin_by_theta = math.sin(theta) / theta
            one_minus_cos_by_theta = (1.0 - math.cos(theta)) / theta
        return cls(
            sin_by_theta * ux - one_minus_cos_by_theta * uy,
            one_minus_cos_by_theta * ux + sin_by_theta * uy,
            theta,
        )

    def translation(self) -> np.ndarray:
        """The translation part as a 2-vector."""
        return np.array([self.x, self.y])

    def _rotation(self) -> np.ndarray:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return np.array([[c, -s], [s, c]])

    def inverse(self) -> SE2:
        """The inverse transform."""
        c, s = math.cos(self.theta), math.sin(self.theta)
        return SE2(-(c * self.x + s * self.y), s * self.x - c * self.y, -self.theta)

    def log(self) -> np.ndarray:
        """The tangent vector (upsilon_x, upsilon_y, theta) of this transform."""
        theta = self.theta
        half = 0.5 * theta
        if abs(theta) < _SMALL_ANGLE:
            half_by_tan = 1.0 - theta * theta / 12.0
        else:
            half_by_tan = half * math.sin(theta) / (1.0 - math.cos(theta))
        return np.array(
            [
                half_by_tan * self.x + half * self.y,
                -half * self.x + half_by_tan * self.y,
                theta,
            ]
        )

    def transform(self, point) -> np.ndarray:
        """Apply the transform to one point of shape (2,) or to points of shape (N, 2)."""
        pts = np.asarray(point, dtype=float)
        if pts.shape[-1:] != (2,):
            raise ValueError(f"expected points with 2 coordinates, got shape {pts.shape}")
        return pts @ self._rotation().T + self.translation()

    def __mul__(self, other):
        if isinstance(other, SE2):
            c, s = math.cos(self.theta), math.sin(self.theta)
            return SE2(
                self.x + c * other.x - s * other.y,
                self.y + s * other.x + c * other.y,
                self.theta + other.theta,
            )
        try:
            pts = np.asarray(other, dtype=float)
        except (TypeError, ValueError):
            return NotImplemented
        if pts.shape[-1:] != (2,):
            return NotImplemented
        return self.transform(pts)

    def oplus(self, update) -> SE2:
        """Add (dx, dy) to the translation and right-multiply the rotation by exp(dtheta)."""
        dx, dy, dtheta = (float(v) for v in update)
        return SE2(self.x + dx, self.y + dy, self.theta + dtheta)