[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "edgeagent"
version = "0.2.0"
description = "Edge device agent components: metrics scraping, local time-series storage, remote write, mounts and OS upgrade management"
requires-python = ">=3.10"
dependencies = []
keywords = ["edge", "metrics", "prometheus", "remote-write", "ostree", "monitoring", "device"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["edgeagent"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
