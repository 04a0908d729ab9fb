[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gokrpack"
version = "0.1.0"
description = "Build-host helpers for appliance disk images: Go toolchain driving, partition tables, init generation, boot file contents and certificates"
requires-python = ">=3.10"
keywords = ["appliance", "image", "gpt", "mbr", "partition", "raspberry-pi", "sd-card"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Installation/Setup",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["gokrpack"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
