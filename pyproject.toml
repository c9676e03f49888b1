[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sadmapping"
version = "0.1.0"
description = "Offline point-cloud mapping back end: keyframes, pose-graph optimisation, loop closure and map export"
requires-python = ">=3.10"
keywords = ["slam", "lidar", "pose-graph", "mapping", "point-cloud", "loop-closure", "ndt"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
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
    "pyyaml",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sad-optimize = "sadmapping.optimization:main"
sad-loopclosure = "sadmapping.loopclosure:main"
sad-dump-map = "sadmapping.mapexport:dump_main"
sad-split-map = "sadmapping.mapexport:split_main"

[tool.hatch.build.targets.wheel]
packages = ["sadmapping"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 110
target-version = "py310"
