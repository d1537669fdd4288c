import math

import numpy as np
import pytest

from scanslam2d.frame import Frame, Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.occupancy_map import GridMethod, OccupancyMap


def _fan_scan(ranges):
    return Scan2d(
        angle_min=-1.0,
        angle_max=-1.0 + 0.25 * (len(ranges) - 1),
        angle_increment=0.25,
        range_min=0.1,
        range_max=40.0,
        ranges=list(ranges),
    )


def test_new_map_is_unknown():
    occ = OccupancyMap()
    grid = occ.occupancy_grid()
    assert grid.shape == (1000, 1000)
    assert (grid == 127).all()
    assert occ.resolution() == 20.0
    assert occ.has_outside_points() is False


def test_set_point_is_clamped():
    occ = OccupancyMap()
    for _ in range(20):
        occ.set_point((3, 4), True)
        occ.set_point((7, 8), False)
    grid = occ.occupancy_grid()
    assert grid[4, 3] == 117
    assert grid[8, 7] == 137


def test_set_point_outside_marks_only_occupied():
    occ = OccupancyMap()
    occ.set_point((-1, 5), False)
    assert occ.has_outside_points() is False
    occ.set_point((1000, 0), True)
    assert occ.has_outside_points() is True
    assert (occ.occupancy_grid() == 127).all()


def test_bresenham_horizontal_excludes_ends():
    occ = OccupancyMap()
    occ.bresenham_filling((10, 10), (15, 10))
    grid = occ.occupancy_grid()
    assert list(grid[10, 11:15]) == [128, 128, 128, 128]
    assert grid[10, 10] == 127
    assert grid[10, 15] == 127


def test_bresenham_steep_line():
    occ = OccupancyMap()
    occ.bresenham_filling((10, 10), (12, 16))
    grid = occ.occupancy_grid()
    assert int((grid == 128).sum()) == 5
    assert grid[16, 12] == 127
    assert grid[10, 10] == 127


def test_find_range_interpolates():
    occ = OccupancyMap()
    scan = Scan2d(0.0, 0.3, 0.1, 0.1, 40.0, [1.0, 1.2, 1.4, 1.6])
    assert occ.find_range_in_angle(0.05, scan) == pytest.approx(1.1)
    assert occ.find_range_in_angle(0.05 + 2 * math.pi, scan) == pytest.approx(1.1)
    assert occ.find_range_in_angle(0.5, scan) == 0.0
    assert occ.find_range_in_angle(-0.2, scan) == 0.0


def test_find_range_picks_nearest_on_jump():
    occ = OccupancyMap()
    scan = Scan2d(0.0, 0.1, 0.1, 0.1, 40.0, [1.0, 2.0])
    assert occ.find_range_in_angle(0.07, scan) == pytest.approx(2.0)
    assert occ.find_range_in_angle(0.02, scan) == pytest.approx(1.0)


def test_find_range_skips_invalid_neighbour():
    occ = OccupancyMap()
    scan = Scan2d(0.0, 0.1, 0.1, 0.1, 40.0, [1.0, 50.0])
    assert occ.find_range_in_angle(0.07, scan) == pytest.approx(1.0)


def test_find_range_rejects_zero_increment():
    occ = OccupancyMap()
    with pytest.raises(ValueError):
        occ.find_range_in_angle(0.0, Scan2d(0.0, 1.0, 0.0, 0.1, 40.0, [1.0]))


def test_black_white_colours():
    occ = OccupancyMap()
    occ.set_point((1, 2), True)
    occ.set_point((3, 4), False)
    image = occ.black_white()
    assert image.shape == (1000, 1000, 3)
    assert list(image[2, 1]) == [0, 0, 0]
    assert list(image[4, 3]) == [255, 255, 255]
    assert list(image[0, 0]) == [127, 127, 127]


def test_bresenham_frame():
    occ = OccupancyMap()
    occ.add_lidar_frame(Frame(scan=_fan_scan([5.0] * 9)), GridMethod.BRESENHAM)
    grid = occ.occupancy_grid()
    assert grid[500, 600] == 126
    assert grid[500, 550] == 128
    assert grid[300, 500] == 127
    assert occ.has_outside_points() is False


def test_default_method_is_bresenham():
    a, b = OccupancyMap(), OccupancyMap()
    scan = _fan_scan([5.0] * 9)
    a.add_lidar_frame(Frame(scan=scan))
    b.add_lidar_frame(Frame(scan=scan), GridMethod.BRESENHAM)
    assert np.array_equal(a.occupancy_grid(), b.occupancy_grid())


def test_model_points_frame():
    occ = OccupancyMap()
    occ.add_lidar_frame(Frame(scan=_fan_scan([5.0] * 9)), GridMethod.MODEL_POINTS)
    grid = occ.occupancy_grid()
    assert grid[500, 600] == 126
    assert grid[500, 550] == 128
    assert grid[500, 505] == 128
    assert grid[497, 500] == 128
    assert grid[490, 500] == 127
    assert grid[500, 700] == 127


def test_far_endpoint_is_outside():
    occ = OccupancyMap()
    occ.add_lidar_frame(Frame(scan=_fan_scan([30.0] * 9)))
    assert occ.has_outside_points() is True


def test_map_pose_shifts_cells():
    occ = OccupancyMap()
    occ.set_pose(SE2(1.0, 0.0, 0.0))
    occ.add_lidar_frame(Frame(scan=_fan_scan([5.0] * 9)))
    grid = occ.occupancy_grid()
    assert grid[500, 580] == 126
    assert grid[500, 600] == 127


def test_frame_without_scan_raises():
    with pytest.raises(ValueError):
        OccupancyMap().add_lidar_frame(Frame())