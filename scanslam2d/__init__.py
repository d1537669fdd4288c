"""2D lidar SLAM: scan matching, occupancy grids, likelihood fields, submaps and loop closure."""

__version__ = "0.1.0"

__all__ = [
    "geometry",
    "frame",
    "lidar_2d_utils",
    "icp_2d",
    "optimizer",
    "likelihood_field",
    "multi_resolution_likelihood_field",
    "occupancy_map",
    "submap",
    "loop_closing",
    "mapping_2d",
]