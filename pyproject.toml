[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ploopkit"
version = "1.13.2"
description = "Tools for ploop disk images: GPT handling, balloon extent maps, sysfs queries, locking and filesystem helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["ploop", "disk image", "gpt", "ext4", "fiemap", "sysfs"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
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
packages = ["ploopkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
