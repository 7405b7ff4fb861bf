[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "spz"
version = "1.1.0"
description = "Read and write compressed 3D Gaussian splats in the SPZ format, with PLY import and export"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["gaussian-splatting", "3d", "point-cloud", "ply", "spz", "compression"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["spz"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
