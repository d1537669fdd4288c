[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "scanslam2d"
version = "0.1.0"
description = "2D lidar SLAM: scan matching, occupancy grids, likelihood fields, submaps and loop closure"
requires-python = ">=3.10"
keywords = ["slam", "lidar", "icp", "occupancy-grid", "likelihood-field", "pose-graph", "mapping"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["scanslam2d"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
