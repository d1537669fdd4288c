"""Coarse-to-fine likelihood field registration against an occupancy map."""

from __future__ import annotations

import logging

import numpy as np

from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.likelihood_field import FIELD_MAX, build_model, field_to_image, source_beams, stamp_model
from scanslam2d.optimizer import LikelihoodFieldEdge, optimize_pose

logger = logging.getLogger(__name__)

_SIZES = (125, 250, 500, 1000)
_RESOLUTIONS = (2.5, 5.0, 10.0, 20.0)
_RATIOS = (0.125, 0.25, 0.5, 1.0)
_RK_DELTA = (0.2, 0.3, 0.6, 0.8)
_RANGE_TH = 15.0
_OCCU_BORDER = 25
_MIN_INLIERS = 100
_INLIER_RATIO_TH = 0.4


class MRLikelihoodField:
    """A pyramid of likelihood fields built from one occupancy map."""

    def __init__(self) -> None:
        self._model = build_model()
        self._fields = [np.full((s, s), FIELD_MAX, dtype=np.float32) for s in _SIZES]
        self._pose = SE2()
        self._source: Scan2d | None = None
        self.num_inliers: list[int] = []
        self.inlier_ratios: list[float] = []

    @property
    def fields(self) -> list[np.ndarray]:
        """The raw float fields, coarsest first."""
        return self._fields

    def set_field_image_from_occu_map(self, occu_map: np.ndarray) -> None:
        """Add the occupied cells (value < 127) of a grid image to every level."""
        grid = np.asarray(occu_map)
        rows, cols = grid.shape[:2]
        inner = grid[_OCCU_BORDER : rows - _OCCU_BORDER, _OCCU_BORDER : cols - _OCCU_BORDER]
        ys, xs = np.nonzero(inner < 127)
        xs = xs + _OCCU_BORDER
        ys = ys + _OCCU_BORDER
        for field, ratio in zip(self._fields, _RATIOS):
            stamp_model(field, xs * ratio, ys * ratio, self._model)

    def align_g2o(self, init_pose: SE2) -> SE2 | None:
        """Align level by level; the estimated pose, or None if any level fails."""
        self.num_inliers = []
        self.inlier_ratios = []
        pose = init_pose
        for level in range(self.levels()):
            pose = self._align_in_level(level, pose)
            if pose is None:
                return None
        for level, (n, ratio) in enumerate(zip(self.num_inliers, self.inlier_ratios)):
            logger.info("level %d inliers: %d, ratio: %g", level, n, ratio)
        return pose

    def _align_in_level(self, level: int, init_pose: SE2) -> SE2 | None:
        if self._source is None:
            raise RuntimeError("source scan is not set")
        field = self._fields[level]
        edges = []
        for r, a in source_beams(self._source, _RANGE_TH):
            edge = LikelihoodFieldEdge(field, r, a, _RESOLUTIONS[level])
            if not edge.is_outside(init_pose):
                edges.append(edge)
        if not edges:
            return None

        pose = optimize_pose(init_pose, edges, _RK_DELTA[level], 10)
        chi2 = [e.chi2(pose) for e in edges]
        inliers = sum(1 for e, c in zip(edges, chi2) if e.level == 0 and c < _RK_DELTA[level])
        ratio = inliers / len(edges)
        self.num_inliers.append(inliers)
        self.inlier_ratios.append(ratio)
        if inliers > _MIN_INLIERS and ratio > _INLIER_RATIO_TH:
            return pose
        return None

    def get_field_images(self) -> list[np.ndarray]:
        """Grey RGB images of every level, coarsest first."""
        return [field_to_image(f) for f in self._fields]

    def set_pose(self, pose: SE2) -> None:
        """Set the centre pose, usually that of the submap."""
        self._pose = pose

    def set_source_scan(self, scan: Scan2d) -> None:
        """Set the scan to be aligned."""
        self._source = scan

    def resolution(self, level: int = 0) -> float:
        """Pixels per metre at ``level``."""
        return _RESOLUTIONS[level]

    def levels(self) -> int:
        """Number of pyramid levels."""
        return len(_SIZES)