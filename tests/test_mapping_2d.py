import math

import numpy as np
from PIL import Image

from scanslam2d.frame import Scan2d
from scanslam2d.mapping_2d import Mapping2D


def room_scan(half=4.0, beams=180, far_beam=None):
    inc = 2 * math.pi / beams
    angles = [-math.pi + i * inc for i in range(beams)]
    ranges = [half / max(abs(math.cos(a)), abs(math.sin(a))) for a in angles]
    if far_beam is not None:
        ranges[far_beam] = 28.0
    return Scan2d(-math.pi, -math.pi + (beams - 1) * inc, inc, 0.1, 30.0, ranges)


def test_first_scan_becomes_keyframe():
    mapping = Mapping2D(with_loop_closing=False)
    assert mapping.process_scan(room_scan()) is True
    submaps = mapping.submaps()
    assert len(submaps) == 1
    assert submaps[0].num_frames() == 1
    frame = submaps[0].frames[0]
    assert frame.keyframe_id == 0
    assert frame.id == 0
    assert (frame.pose.x, frame.pose.y, frame.pose.theta) == (0.0, 0.0, 0.0)


def test_repeated_scan_is_not_a_new_keyframe():
    mapping = Mapping2D(with_loop_closing=False)
    scan = room_scan()
    mapping.process_scan(scan)
    mapping.process_scan(scan)
    submap = mapping.current_submap
    assert submap.num_frames() == 1
    assert len(mapping.submaps()) == 1


def test_global_map_shape_follows_max_size():
    mapping = Mapping2D(with_loop_closing=False)
    assert mapping.show_global_map().shape == (500, 500, 3)
    assert mapping.show_global_map(1000).shape == (1000, 1000, 3)


def test_empty_global_map_is_grey_away_from_axes():
    mapping = Mapping2D(with_loop_closing=False)
    image = mapping.show_global_map()
    assert tuple(image[0, 0]) == (127, 127, 127)
    assert tuple(image[499, 499]) == (127, 127, 127)


def test_global_map_draws_axes_of_submap():
    mapping = Mapping2D(with_loop_closing=False)
    image = mapping.show_global_map()
    # x axis of the submap at the origin points right, one metre is ten pixels.
    region = image[247:254, 253:258].reshape(-1, 3)
    assert any(tuple(p) == (0, 0, 255) for p in region)
    region_y = image[253:258, 247:254].reshape(-1, 3)
    assert any(tuple(p) == (0, 255, 0) for p in region_y)


def test_global_map_shows_free_and_occupied_cells_of_current_submap():
    mapping = Mapping2D(with_loop_closing=False)
    mapping.process_scan(room_scan())
    image = mapping.show_global_map()
    pixels = {tuple(p) for p in image.reshape(-1, 3)}
    assert (235, 250, 230) in pixels
    assert (230, 20, 30) in pixels


def test_outside_points_start_a_new_submap(tmp_path):
    mapping = Mapping2D(with_loop_closing=False, output_dir=tmp_path)
    mapping.process_scan(room_scan(far_beam=90))
    submaps = mapping.submaps()
    assert len(submaps) == 2
    assert [m.id for m in submaps] == [0, 1]
    assert mapping.current_submap is submaps[1]
    assert submaps[1].frames[0] is submaps[0].frames[0]
    frame = submaps[1].frames[0]
    assert (frame.pose_submap.x, frame.pose_submap.y, frame.pose_submap.theta) == (0.0, 0.0, 0.0)

    written = tmp_path / "submap_0.png"
    assert written.exists()
    with Image.open(written) as img:
        assert img.size == (1000, 1000)


def test_loop_closing_writes_debug_file(tmp_path):
    mapping = Mapping2D(with_loop_closing=True, output_dir=tmp_path)
    mapping.process_scan(room_scan())
    assert (tmp_path / "loops.txt").read_text() == ""
    assert len(mapping.submaps()) == 1


def test_global_map_colours_older_submaps_differently(tmp_path):
    mapping = Mapping2D(with_loop_closing=False, output_dir=tmp_path)
    mapping.process_scan(room_scan(far_beam=90))
    image = mapping.show_global_map()
    # Both submaps sit at the origin, so the current one wins everywhere.
    pixels = {tuple(p) for p in image.reshape(-1, 3)}
    assert (235, 250, 230) in pixels
    assert (255, 255, 255) not in pixels
    assert np.array_equal(image.shape, (500, 500, 3))