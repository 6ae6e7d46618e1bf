[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "minicontainer"
version = "0.1.0"
description = "A small Linux container runtime: namespaces, cgroup limits, overlay roots, a fair-share scheduler and cgroup monitoring"
requires-python = ">=3.12"
dependencies = []
keywords = ["containers", "cgroups", "namespaces", "scheduler", "overlayfs", "monitoring"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["minicontainer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
