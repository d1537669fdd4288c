"""Drawing helpers for 2D lidar scans."""

from __future__ import annotations

import math

import numpy as np

from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2

_FOV_MARGIN = 30 * math.pi / 180.0


def draw_circle(image: np.ndarray, center, radius: int, color, thickness: int = 1) -> np.ndarray:
    """Draw a circle outline (or a filled disc for negative thickness) into ``image``."""
    cx, cy = (int(round(float(c))) for c in center)
    height, width = image.shape[:2]
    reach = int(radius) + max(int(thickness), 1)
    x0, x1 = max(cx - reach, 0), min(cx + reach + 1, width)
    y0, y1 = max(cy - reach, 0), min(cy + reach + 1, height)
    if x0 >= x1 or y0 >= y1:
        return image
    ys, xs = np.mgrid[y0:y1, x0:x1]
    dist = np.hypot(xs - cx, ys - cy)
    if thickness < 0:
        mask = dist <= radius
    else:
        mask = np.abs(dist - radius) <= max(thickness, 1) / 2.0
    image[y0:y1, x0:x1][mask] = color
    return image


def visualize_2d_scan(
    scan: Scan2d,
    pose: SE2,
    image: np.ndarray | None = None,
    color=(255, 0, 0),
    image_size: int = 800,
    resolution: float = 20.0,
    pose_submap: SE2 | None = None,
) -> np.ndarray:
    """Draw a scan seen from ``pose`` into an image of the submap at ``pose_submap``.

    A white image of ``image_size`` pixels is created when ``image`` is None.
    Beams within 30 degrees of either end of the scan are left out. The
    image, drawn into in place, is returned.
    """
    if pose_submap is None:
        pose_submap = SE2()
    if image is None:
        image = np.full((image_size, image_size, 3), 255, dtype=np.uint8)

    half = image_size // 2
    submap_inv = pose_submap.inverse()
    beams = [
        (r, a)
        for r, a in scan.valid_points()
        if not (a < scan.angle_min + _FOV_MARGIN or a > scan.angle_max - _FOV_MARGIN)
    ]
    if beams:
        polar = np.array(beams, dtype=float)
        local = np.column_stack((polar[:, 0] * np.cos(polar[:, 1]), polar[:, 0] * np.sin(polar[:, 1])))
        in_submap = submap_inv.transform(pose.transform(local))
        pixels = (in_submap * resolution + half).astype(int)
        height, width = image.shape[:2]
        inside = (
            (pixels[:, 0] >= 0) & (pixels[:, 0] < width) & (pixels[:, 1] >= 0) & (pixels[:, 1] < height)
        )
        pixels = pixels[inside]
        image[pixels[:, 1], pixels[:, 0]] = color

    pose_in_image = submap_inv.transform(pose.translation()) * float(resolution) + np.array([half, half])
    draw_circle(image, pose_in_image, 5, color, 2)
    return image