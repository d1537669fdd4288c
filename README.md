# scanslam2d

This package does 2D lidar SLAM in Python on top of NumPy, SciPy and Pillow.
Scans, poses, grids and images are plain Python and NumPy objects. Grids are
`uint8` arrays and colour images are `(H, W, 3)` `uint8` arrays, which you can
save with Pillow.

## Modules

- `scanslam2d.geometry`
  - `SE2(x, y, theta)` is a frozen planar rigid transform. It provides `inverse()`, `log()`, `SE2.from_log(xi)`, `transform(points)`, composition with `*` (`pose * other_pose` or `pose * points`) and `oplus((dx, dy, dtheta))`.
  - `normalize_angle(angle)` wraps an angle into (-pi, pi].
- `scanslam2d.frame`
  - `Scan2d` holds one sweep: angle limits and increment, range limits and `ranges`. `valid_points()` yields `(range, angle)` for every beam whose range lies within the limits.
  - `Frame` holds a scan with its `id`, `keyframe_id`, `timestamp`, world `pose` and `pose_submap`. `frame.dump(path)` writes the frame to a text file and `Frame.load(path)` reads it back.
- `scanslam2d.lidar_2d_utils`
  - `visualize_2d_scan(scan, pose, image=None, color=..., image_size=800, resolution=20.0, pose_submap=None)` draws a scan and its sensor position into an image. If `image` is None it first creates a white image. Beams within 30 degrees of either end of the scan are left out.
  - `draw_circle(...)` draws a circle into an image.
- `scanslam2d.icp_2d`
  - `Icp2d` registers a scan against another, by point-to-point ICP (`align_gauss_newton`) or by point-to-line ICP (`align_gauss_newton_point_to_plane`). Both return the estimated `SE2`, or `None` when fewer than 20 points are matched.
  - `fit_line_2d(points)` fits a line `a*x + b*y + c = 0` whose normal `(a, b)` has unit length.
- `scanslam2d.optimizer`
  - `get_pixel_value` does bilinear image lookup.
  - `HuberKernel` and `CauchyKernel` are robust kernels.
  - `LikelihoodFieldEdge` and `RelativePoseEdge` are the edge types.
  - `optimize_pose` is a Levenberg-Marquardt solver for a single pose, and `optimize_pose_graph` is one for a graph of poses.
- `scanslam2d.likelihood_field`
  - `LikelihoodField` is a 1000×1000 distance field at 20 pixels per metre. It is built around a target scan (`set_target_scan`) or around the occupied cells of a grid (`set_field_image_from_occu_map`).
  - `align_gauss_newton` returns a pose, or `None` when fewer than 20 points are usable. `align_g2o` is robust and always returns a pose.
  - `get_field_image()` renders the field in grey.
- `scanslam2d.multi_resolution_likelihood_field`
  - `MRLikelihoodField` is a four-level field pyramid with 2.5, 5, 10 and 20 pixels per metre.
  - `align_g2o` works from coarse to fine. It returns `None` if any level has no more than 100 inliers or no more than 40 % inliers.
- `scanslam2d.occupancy_map`
  - `OccupancyMap` is a 1000×1000 grid at 20 pixels per metre. The value 127 means unknown. Occupied cells count down to 117 and free cells count up to 137.
  - `add_lidar_frame(frame, method=GridMethod.BRESENHAM)` fills free space with Bresenham rays, or with a precomputed template when given `GridMethod.MODEL_POINTS`.
  - `black_white()` renders the grid: unknown grey, occupied black, free white.
- `scanslam2d.submap`
  - `Submap` holds a set of keyframes together with their own occupancy grid and likelihood field.
  - The world pose of each frame is the submap pose times the frame's `pose_submap`.
- `scanslam2d.loop_closing`
  - `LoopClosing` looks for older submaps near the current frame.
  - It matches the frame against those submaps with `MRLikelihoodField`, then runs a pose-graph optimisation that may reject loops again.
  - `loops()` returns the accepted `LoopConstraint`s.
- `scanslam2d.mapping_2d`
  - `Mapping2D` is the whole pipeline.
  - A scan becomes a keyframe after 0.3 m or 15° of motion.
  - A new submap is started when scan points fall outside the current grid or the submap holds more than 50 keyframes.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Matching two scans

```python
import numpy as np
from scanslam2d.frame import Scan2d
from scanslam2d.geometry import SE2
from scanslam2d.icp_2d import Icp2d

target = Scan2d(angle_min=-np.pi, angle_max=np.pi, angle_increment=0.01,
                range_min=0.1, range_max=30.0, ranges=[...])
source = Scan2d(...)

icp = Icp2d()
icp.set_target(target)
icp.set_source(source)
pose = icp.align_gauss_newton(SE2(0.0, 0.0, 0.0))  # None if too few matches
```

## Building a map

```python
from PIL import Image
from scanslam2d.mapping_2d import Mapping2D

mapping = Mapping2D(with_loop_closing=True, output_dir="./out")
for scan in scans:
    mapping.process_scan(scan)

Image.fromarray(mapping.show_global_map(2000)).save("global_map.png")
```

- `mapping.submaps()` returns every submap built so far.
- `mapping.current_submap` is the submap that new scans are matched against.
- With an `output_dir`, each finished submap is saved there as `submap_<id>.png`. When loop closure is enabled, the loop candidates that were checked are logged to `loops.txt` in the same directory.

## What it does not do

- It does not read recorded sensor logs or live sensors. You build `Scan2d` objects yourself and pass them in.
- It opens no windows. Every rendering is returned as a NumPy array.
- It has no command-line program.
- `process_scan` handles single-echo scans only.