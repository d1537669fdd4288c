import math

import numpy as np
import pytest

from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.multi_resolution_likelihood_field import MRLikelihoodField


def _scan(beams=400):
    inc = 2 * math.pi / beams
    return Scan2d(-math.pi, -math.pi + inc * (beams - 1), inc, 0.1, 30.0, [3.0] * beams)


def test_levels_and_resolutions():
    mr = MRLikelihoodField()
    assert mr.levels() == 4
    assert [mr.resolution(i) for i in range(4)] == [2.5, 5, 10, 20]
    assert mr.resolution() == 2.5


def test_field_image_sizes():
    images = MRLikelihoodField().get_field_images()
    assert [img.shape[0] for img in images] == [125, 250, 500, 1000]
    assert images[0][0, 0].tolist() == [255, 255, 255]


def test_occupied_cell_appears_on_every_level():
    grid = np.full((1000, 1000), 127, dtype=np.uint8)
    grid[400, 800] = 0
    mr = MRLikelihoodField()
    mr.set_field_image_from_occu_map(grid)
    assert mr.fields[3][400, 800] == 0.0
    assert mr.fields[2][200, 400] == 0.0
    assert mr.fields[0][50, 100] == 0.0
    assert mr.fields[3][400, 801] == pytest.approx(1.0)


def test_empty_map_rejects_alignment():
    mr = MRLikelihoodField()
    mr.set_field_image_from_occu_map(np.full((1000, 1000), 127, dtype=np.uint8))
    mr.set_source_scan(_scan())
    assert mr.align_g2o(SE2()) is None
    assert mr.num_inliers == [0]


def test_missing_source_raises():
    with pytest.raises(RuntimeError):
        MRLikelihoodField().align_g2o(SE2())