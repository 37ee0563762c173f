[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "overlaybd"
version = "0.1.0"
description = "Log-structured merge-tree block layers, segment indexes and tar-wrapped blob files for overlay block devices"
requires-python = ">=3.10"
dependencies = []
keywords = ["lsmt", "block-device", "overlay", "layers", "tar", "container-image"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["overlaybd"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
