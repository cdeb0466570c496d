[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lvh"
version = "0.1.0"
description = "Little VM helper: build VM images, build and manage kernels, and run them under QEMU"
requires-python = ">=3.10"
dependencies = []
keywords = ["qemu", "vm", "kernel", "images", "virt-customize", "guestfish"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lvh = "lvh.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["lvh"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
